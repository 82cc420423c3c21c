"""Access validation.

Who may issue or cancel invitations for a family or group, and whether an
authenticated caller may redeem a given invitation. The redemption facts
computed here are advisory; acceptance re-checks everything inside its own
transaction.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from edulift.models.enums import FamilyRole, GroupRole
from edulift.models.family import Family, FamilyMember
from edulift.models.group import Group, GroupFamilyMember
from edulift.models.invitation import FamilyInvitation, GroupInvitation
from edulift.models.user import User
from edulift.services.results import Err, InvitationErrorCode, Ok, Result

LAST_ADMIN_REASON = "You are the last administrator of your current family"


@dataclass
class CurrentFamily:
    id: uuid.UUID
    name: str


@dataclass
class RedemptionFacts:
    email: str | None = None
    existing_user: bool | None = None
    user_current_family: CurrentFamily | None = None
    can_leave_current_family: bool | None = None
    cannot_leave_reason: str | None = None


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_family_membership(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    lock: bool = False,
) -> FamilyMember | None:
    """Return the user's membership row with its family loaded."""
    stmt = (
        select(FamilyMember)
        .options(joinedload(FamilyMember.family))
        .where(FamilyMember.user_id == user_id)
    )
    if lock:
        # refresh an already loaded row with what the lock now guarantees
        stmt = stmt.with_for_update(of=FamilyMember).execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def lock_family(db: AsyncSession, family_id: uuid.UUID) -> Family | None:
    """Read a family row FOR UPDATE, serializing writers on that family."""
    result = await db.execute(
        select(Family).where(Family.id == family_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def lock_group(db: AsyncSession, group_id: uuid.UUID) -> Group | None:
    result = await db.execute(
        select(Group).where(Group.id == group_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def count_family_admins(db: AsyncSession, family_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(FamilyMember.id)).where(
            FamilyMember.family_id == family_id,
            FamilyMember.role == FamilyRole.ADMIN,
        )
    )
    return result.scalar() or 0


async def get_family_admins(db: AsyncSession, family_id: uuid.UUID) -> list[User]:
    result = await db.execute(
        select(User)
        .join(FamilyMember, FamilyMember.user_id == User.id)
        .where(
            FamilyMember.family_id == family_id,
            FamilyMember.role == FamilyRole.ADMIN,
        )
        .order_by(FamilyMember.joined_at)
    )
    return list(result.scalars().all())


async def can_leave_family(
    db: AsyncSession,
    membership: FamilyMember,
) -> tuple[bool, str | None]:
    """Whether removing ``membership`` keeps the last-admin invariant."""
    if membership.role != FamilyRole.ADMIN:
        return True, None
    if await count_family_admins(db, membership.family_id) <= 1:
        return False, LAST_ADMIN_REASON
    return True, None


# ---------------------------------------------------------------------------
# Issuance authorization
# ---------------------------------------------------------------------------

async def require_family_admin(
    db: AsyncSession,
    user_id: uuid.UUID,
    family_id: uuid.UUID,
) -> Result[FamilyMember]:
    """Caller must be an ADMIN of ``family_id``."""
    membership = await get_family_membership(db, user_id)
    if (
        membership is None
        or membership.family_id != family_id
        or membership.role != FamilyRole.ADMIN
    ):
        return Err(
            InvitationErrorCode.UNAUTHORIZED,
            "Only family administrators can manage family invitations",
        )
    return Ok(membership)


async def require_group_admin(
    db: AsyncSession,
    user_id: uuid.UUID,
    group: Group,
) -> Result[FamilyMember]:
    """Caller must be an ADMIN of a family that owns or administers ``group``."""
    membership = await get_family_membership(db, user_id)
    if membership is None or membership.role != FamilyRole.ADMIN:
        return Err(
            InvitationErrorCode.UNAUTHORIZED,
            "Only family administrators can manage group invitations",
        )

    if group.family_id == membership.family_id:
        return Ok(membership)

    result = await db.execute(
        select(GroupFamilyMember).where(
            GroupFamilyMember.group_id == group.id,
            GroupFamilyMember.family_id == membership.family_id,
            GroupFamilyMember.role == GroupRole.ADMIN,
        )
    )
    if result.scalar_one_or_none() is None:
        return Err(
            InvitationErrorCode.UNAUTHORIZED,
            "Only group administrators can manage group invitations",
        )
    return Ok(membership)


async def require_family_member(
    db: AsyncSession,
    user_id: uuid.UUID,
    family_id: uuid.UUID,
) -> Result[FamilyMember]:
    membership = await get_family_membership(db, user_id)
    if membership is None or membership.family_id != family_id:
        return Err(
            InvitationErrorCode.UNAUTHORIZED,
            "You are not a member of this family",
        )
    return Ok(membership)


async def require_group_member(
    db: AsyncSession,
    user_id: uuid.UUID,
    group_id: uuid.UUID,
) -> Result[FamilyMember]:
    """Caller's family must own the group or be bound to it."""
    membership = await get_family_membership(db, user_id)
    if membership is not None:
        group = await db.get(Group, group_id)
        if group is not None and group.family_id == membership.family_id:
            return Ok(membership)
        result = await db.execute(
            select(GroupFamilyMember).where(
                GroupFamilyMember.group_id == group_id,
                GroupFamilyMember.family_id == membership.family_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            return Ok(membership)
    return Err(
        InvitationErrorCode.UNAUTHORIZED,
        "Your family is not a member of this group",
    )


# ---------------------------------------------------------------------------
# Redemption eligibility
# ---------------------------------------------------------------------------

def check_email_binding(
    invitation: FamilyInvitation | GroupInvitation,
    user: User | None,
) -> Err | None:
    """Targeted invitations can only be redeemed by the addressed account."""
    if user is None or invitation.email is None:
        return None
    if normalize_email(user.email) != normalize_email(invitation.email):
        return Err(
            InvitationErrorCode.EMAIL_MISMATCH,
            "This invitation was sent to a different email address. "
            "Please log in with the correct account or sign up.",
        )
    return None


async def _family_facts(
    db: AsyncSession,
    membership: FamilyMember,
    facts: RedemptionFacts,
) -> None:
    facts.user_current_family = CurrentFamily(
        id=membership.family.id, name=membership.family.name,
    )
    can_leave, reason = await can_leave_family(db, membership)
    facts.can_leave_current_family = can_leave
    facts.cannot_leave_reason = reason


async def family_redemption_facts(
    db: AsyncSession,
    invitation: FamilyInvitation,
    caller: User | None,
) -> Result[RedemptionFacts]:
    """Email binding plus the caller's current-family situation."""
    mismatch = check_email_binding(invitation, caller)
    if mismatch is not None:
        return mismatch

    facts = RedemptionFacts()
    if invitation.email:
        facts.email = invitation.email
        addressee = await get_user_by_email(db, invitation.email)
        facts.existing_user = addressee is not None
        if addressee is not None:
            membership = await get_family_membership(db, addressee.id)
            if membership is not None and membership.family_id != invitation.family_id:
                await _family_facts(db, membership, facts)

    if caller is not None:
        membership = await get_family_membership(db, caller.id)
        if membership is not None and membership.family_id != invitation.family_id:
            await _family_facts(db, membership, facts)

    return Ok(facts)


async def group_redemption_facts(
    db: AsyncSession,
    invitation: GroupInvitation,
    caller: User | None,
) -> Result[RedemptionFacts]:
    """Email binding only; joining a group is a family-level decision."""
    mismatch = check_email_binding(invitation, caller)
    if mismatch is not None:
        return mismatch

    facts = RedemptionFacts()
    if invitation.email:
        facts.email = invitation.email
        facts.existing_user = await get_user_by_email(db, invitation.email) is not None
    return Ok(facts)
