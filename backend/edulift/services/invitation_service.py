"""Invitation Service.

Creates, validates, accepts and cancels family and group invitations.
Every mutating operation is one transaction on the injected session:
business checks run first against freshly read (and, on PostgreSQL,
row-locked) state, the invitation is claimed with a conditional update,
and membership rows are written in the same unit. Emails and broadcasts
go out only after commit and never turn a committed transition into an
error.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edulift.config import settings
from edulift.models.enums import FamilyRole, GroupRole, InvitationKind, InvitationStatus
from edulift.models.family import Child, FamilyMember
from edulift.models.group import Group, GroupChildMember, GroupFamilyMember
from edulift.models.invitation import FamilyInvitation, GroupInvitation
from edulift.schemas.invitation import (
    AcceptFamilyInvitationResult,
    AcceptGroupInvitationResult,
    CancelInvitationResult,
    CurrentFamilyInfo,
    ExpirySweepResult,
    FamilyInvitationValidation,
    GroupInvitationValidation,
    InvitationValidation,
    UserInvitations,
    UserInvitationSummary,
)
from edulift.services import access, ledger
from edulift.services.capacity import check_family_capacity, count_family_members
from edulift.services.connection_manager import ConnectionManager
from edulift.services.email_service import (
    EmailDispatcher,
    FamilyInvitationNotice,
    GroupInvitationNotice,
)
from edulift.services.events import (
    FamilyJoinedGroup,
    MemberJoinedFamily,
    MemberLeftFamily,
    MembershipEvent,
)
from edulift.services.expiry import run_expiry_sweep
from edulift.services.invitation_codes import generate_invitation_code, normalize_code
from edulift.services.results import Err, InvitationErrorCode, Ok, Result
from edulift.types import utcnow

logger = logging.getLogger(__name__)

Invitation = FamilyInvitation | GroupInvitation


class InvitationService:
    """Membership transition coordinator for family and group invitations."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        email: EmailDispatcher,
        broadcaster: ConnectionManager,
        clock: Callable[[], datetime] = utcnow,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.db = db
        self.email = email
        self.broadcaster = broadcaster
        self.clock = clock
        self.background = background

    # -- transaction helpers -------------------------------------------------

    async def _fail(self, err: Err) -> Err:
        """Abandon the current transaction, releasing any row locks."""
        await self.db.rollback()
        return err

    @staticmethod
    async def _send_quietly(
        description: str, send: Callable[..., Awaitable[None]], *args
    ) -> None:
        try:
            await send(*args)
        except Exception:
            logger.warning("Failed to send %s", description, exc_info=True)

    async def _deliver(
        self, description: str, send: Callable[..., Awaitable[None]], *args
    ) -> None:
        """Send an email after commit, after the response when running in a request."""
        if self.background is not None:
            self.background.add_task(self._send_quietly, description, send, *args)
            return
        await self._send_quietly(description, send, *args)

    async def _publish(self, events: list[MembershipEvent]) -> None:
        for event in events:
            try:
                if isinstance(event, FamilyJoinedGroup):
                    await self.broadcaster.broadcast_group_update(event.group_id, event)
                else:
                    await self.broadcaster.broadcast_family_update(event.family_id, event)
            except Exception:
                logger.warning("Failed to broadcast %s", event.event_kind, exc_info=True)

    def _expiry_error(self, invitation: Invitation) -> Err:
        return Err(
            InvitationErrorCode.EXPIRED,
            "Invitation has expired",
            {"expires_at": invitation.expires_at.isoformat()},
        )

    @staticmethod
    def _invalid_code() -> Err:
        return Err(InvitationErrorCode.INVALID_CODE, "Invalid invitation code")

    # -- creation ------------------------------------------------------------

    async def create_family_invitation(
        self,
        family_id: uuid.UUID,
        admin_id: uuid.UUID,
        *,
        email: str | None = None,
        role: FamilyRole = FamilyRole.MEMBER,
        personal_message: str | None = None,
    ) -> Result[FamilyInvitation]:
        """Issue a PENDING invitation into ``family_id``."""
        now = self.clock()
        email = access.normalize_email(email)

        admin = await access.require_family_admin(self.db, admin_id, family_id)
        if isinstance(admin, Err):
            return await self._fail(admin)
        family = await access.lock_family(self.db, family_id)

        if email:
            existing_user = await access.get_user_by_email(self.db, email)
            if existing_user is not None:
                membership = await access.get_family_membership(self.db, existing_user.id)
                if membership is not None and membership.family_id == family_id:
                    return await self._fail(Err(
                        InvitationErrorCode.ALREADY_MEMBER,
                        "User is already a member of this family",
                        {"email": email},
                    ))

            duplicate = await ledger.find_active_for_email(
                self.db, FamilyInvitation, family_id, email, now,
            )
            if duplicate is not None:
                return await self._fail(Err(
                    InvitationErrorCode.DUPLICATE_INVITATION,
                    "An active invitation already exists for this email",
                    {"email": email, "expires_at": duplicate.expires_at.isoformat()},
                ))

        capacity = await check_family_capacity(self.db, family_id)
        if isinstance(capacity, Err):
            return await self._fail(capacity)

        invitation = FamilyInvitation(
            family_id=family_id,
            email=email,
            role=FamilyRole(role),
            code=await generate_invitation_code(self.db),
            personal_message=personal_message or None,
            status=InvitationStatus.PENDING,
            expires_at=now + timedelta(days=settings.INVITATION_EXPIRY_DAYS),
            created_by=admin_id,
            invited_by=admin_id,
            created_at=now,
        )
        self.db.add(invitation)
        await self.db.flush()
        inviter = await access.get_user(self.db, admin_id)
        await self.db.commit()

        logger.info(
            "Family invitation %s created for family %s (targeted=%s)",
            invitation.id, family_id, email is not None,
        )

        if email:
            notice = FamilyInvitationNotice(
                family_name=family.name,
                inviter_name=inviter.name,
                invite_code=invitation.code,
                role=invitation.role,
                personal_message=invitation.personal_message,
            )
            await self._deliver(
                f"family invitation {invitation.id}",
                self.email.send_family_invitation, email, notice,
            )
        return Ok(invitation)

    async def create_group_invitation(
        self,
        group_id: uuid.UUID,
        admin_id: uuid.UUID,
        *,
        target_family_id: uuid.UUID | None = None,
        email: str | None = None,
        role: GroupRole = GroupRole.MEMBER,
        personal_message: str | None = None,
    ) -> Result[GroupInvitation]:
        """Issue a PENDING invitation into ``group_id``.

        The invitation may address a family (notice goes to its admins), an
        email, or nobody, in which case anyone holding the code may redeem it.
        """
        now = self.clock()
        email = access.normalize_email(email)

        group = await access.lock_group(self.db, group_id)
        if group is None:
            return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "Group not found"))

        admin = await access.require_group_admin(self.db, admin_id, group)
        if isinstance(admin, Err):
            return await self._fail(admin)

        recipients: list[str] = []
        if target_family_id is not None:
            target_family = await access.lock_family(self.db, target_family_id)
            if target_family is None:
                return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "Target family not found"))
            if await self._family_in_group(target_family_id, group_id):
                return await self._fail(Err(
                    InvitationErrorCode.ALREADY_MEMBER,
                    "Family is already a member of this group",
                    {"family_id": str(target_family_id), "group_name": group.name},
                ))
            duplicate = await ledger.find_active_for_target_family(
                self.db, group_id, target_family_id, now,
            )
            if duplicate is not None:
                return await self._fail(Err(
                    InvitationErrorCode.DUPLICATE_INVITATION,
                    "This family already has a pending invitation to this group",
                    {"family_id": str(target_family_id), "expires_at": duplicate.expires_at.isoformat()},
                ))
            admins = await access.get_family_admins(self.db, target_family_id)
            recipients = [user.email for user in admins]

        if email:
            existing_user = await access.get_user_by_email(self.db, email)
            if existing_user is not None:
                membership = await access.get_family_membership(self.db, existing_user.id)
                if membership is not None and await self._family_in_group(membership.family_id, group_id):
                    return await self._fail(Err(
                        InvitationErrorCode.ALREADY_MEMBER,
                        "This user's family is already a member of this group",
                        {"email": email, "group_name": group.name},
                    ))
            duplicate = await ledger.find_active_for_email(
                self.db, GroupInvitation, group_id, email, now,
            )
            if duplicate is not None:
                return await self._fail(Err(
                    InvitationErrorCode.DUPLICATE_INVITATION,
                    "An active invitation already exists for this email",
                    {"email": email, "expires_at": duplicate.expires_at.isoformat()},
                ))
            if not recipients:
                recipients = [email]

        invitation = GroupInvitation(
            group_id=group_id,
            target_family_id=target_family_id,
            email=email,
            role=GroupRole(role),
            code=await generate_invitation_code(self.db),
            personal_message=personal_message or None,
            status=InvitationStatus.PENDING,
            expires_at=now + timedelta(days=settings.INVITATION_EXPIRY_DAYS),
            created_by=admin_id,
            invited_by=admin_id,
            created_at=now,
        )
        self.db.add(invitation)
        await self.db.flush()
        await self.db.commit()

        logger.info(
            "Group invitation %s created for group %s (%d recipients)",
            invitation.id, group_id, len(recipients),
        )

        for recipient in recipients:
            notice = GroupInvitationNotice(
                to=recipient,
                group_name=group.name,
                invite_code=invitation.code,
                role=invitation.role,
                personal_message=invitation.personal_message,
            )
            await self._deliver(
                f"group invitation {invitation.id}",
                self.email.send_group_invitation, notice,
            )
        return Ok(invitation)

    async def _family_in_group(self, family_id: uuid.UUID, group_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(GroupFamilyMember).where(
                GroupFamilyMember.group_id == group_id,
                GroupFamilyMember.family_id == family_id,
            )
        )
        return result.scalar_one_or_none() is not None

    # -- validation (read-only) ----------------------------------------------

    async def _caller(self, caller_id: uuid.UUID | None):
        if caller_id is None:
            return None
        return await access.get_user(self.db, caller_id)

    async def validate_family_invitation(
        self,
        code: str,
        caller_id: uuid.UUID | None = None,
    ) -> Result[FamilyInvitationValidation]:
        """Describe a family invitation without changing it.

        An overdue invitation reports EXPIRED here but keeps its PENDING
        status until the expiry sweep runs.
        """
        invitation = await ledger.get_pending_by_code(
            self.db, FamilyInvitation, normalize_code(code),
        )
        if invitation is None:
            return self._invalid_code()
        if invitation.is_expired(self.clock()):
            return self._expiry_error(invitation)

        facts = await access.family_redemption_facts(
            self.db, invitation, await self._caller(caller_id),
        )
        if isinstance(facts, Err):
            return facts
        facts = facts.value

        current_family = None
        if facts.user_current_family is not None:
            current_family = CurrentFamilyInfo(
                id=facts.user_current_family.id,
                name=facts.user_current_family.name,
            )
        return Ok(FamilyInvitationValidation(
            family_id=invitation.family_id,
            family_name=invitation.family.name,
            inviter_name=invitation.inviter.name if invitation.inviter else None,
            role=FamilyRole(invitation.role),
            personal_message=invitation.personal_message,
            email=facts.email,
            existing_user=facts.existing_user,
            user_current_family=current_family,
            can_leave_current_family=facts.can_leave_current_family,
            cannot_leave_reason=facts.cannot_leave_reason,
        ))

    async def validate_group_invitation(
        self,
        code: str,
        caller_id: uuid.UUID | None = None,
    ) -> Result[GroupInvitationValidation]:
        """Describe a group invitation without changing it."""
        invitation = await ledger.get_pending_by_code(
            self.db, GroupInvitation, normalize_code(code),
        )
        if invitation is None:
            return self._invalid_code()
        if invitation.is_expired(self.clock()):
            return self._expiry_error(invitation)

        facts = await access.group_redemption_facts(
            self.db, invitation, await self._caller(caller_id),
        )
        if isinstance(facts, Err):
            return facts
        facts = facts.value

        return Ok(GroupInvitationValidation(
            group_id=invitation.group_id,
            group_name=invitation.group.name,
            inviter_name=invitation.inviter.name if invitation.inviter else None,
            role=GroupRole(invitation.role),
            personal_message=invitation.personal_message,
            email=facts.email,
            existing_user=facts.existing_user,
            requires_auth=caller_id is None,
        ))

    async def validate_invitation_code(
        self,
        code: str,
        caller_id: uuid.UUID | None = None,
    ) -> Result[InvitationValidation]:
        """Look a code up in the family ledger, then the group ledger."""
        family = await self.validate_family_invitation(code, caller_id)
        if isinstance(family, Ok):
            return Ok(InvitationValidation(kind=InvitationKind.FAMILY, family=family.value))
        if family.code != InvitationErrorCode.INVALID_CODE:
            return family

        group = await self.validate_group_invitation(code, caller_id)
        if isinstance(group, Ok):
            return Ok(InvitationValidation(kind=InvitationKind.GROUP, group=group.value))
        return group

    # -- acceptance ----------------------------------------------------------

    async def _load_for_accept(
        self,
        model: type[FamilyInvitation] | type[GroupInvitation],
        code: str,
        user_id: uuid.UUID,
        now: datetime,
    ) -> Result[tuple[Invitation, object]]:
        invitation = await ledger.get_pending_by_code(
            self.db, model, normalize_code(code), lock=True,
        )
        if invitation is None:
            return self._invalid_code()
        if invitation.is_expired(now):
            return self._expiry_error(invitation)

        user = await access.get_user(self.db, user_id)
        if user is None:
            return Err(InvitationErrorCode.NOT_FOUND, "User not found")
        mismatch = access.check_email_binding(invitation, user)
        if mismatch is not None:
            return mismatch
        return Ok((invitation, user))

    async def _lock_families_for_switch(
        self, target_family_id: uuid.UUID, user_id: uuid.UUID
    ) -> FamilyMember | None:
        """Lock the target family and the user's current one, then their membership.

        Families are locked in id order before the membership row, matching
        the family-then-member order of ``MembershipService``.
        """
        locked: set[uuid.UUID] = set()
        current = await access.get_family_membership(self.db, user_id)
        while True:
            wanted = {target_family_id}
            if current is not None:
                wanted.add(current.family_id)
            for family_id in sorted(wanted - locked):
                await access.lock_family(self.db, family_id)
                locked.add(family_id)
            current = await access.get_family_membership(self.db, user_id, lock=True)
            if current is None or current.family_id in locked:
                return current

    async def accept_family_invitation(
        self,
        code: str,
        user_id: uuid.UUID,
        *,
        leave_current_family: bool = False,
    ) -> Result[AcceptFamilyInvitationResult]:
        """Join the invitation's family, optionally leaving the current one.

        Without ``leave_current_family`` a user who already belongs to a
        different family gets FAMILY_CONFLICT naming that family, so the
        client can ask for explicit consent and retry.
        """
        now = self.clock()
        loaded = await self._load_for_accept(FamilyInvitation, code, user_id, now)
        if isinstance(loaded, Err):
            return await self._fail(loaded)
        invitation, _user = loaded.value

        current = await self._lock_families_for_switch(invitation.family_id, user_id)
        if current is not None:
            if current.family_id == invitation.family_id:
                return await self._fail(Err(
                    InvitationErrorCode.ALREADY_MEMBER,
                    "You are already a member of this family",
                    {"family_id": str(invitation.family_id)},
                ))
            if not leave_current_family:
                return await self._fail(Err(
                    InvitationErrorCode.FAMILY_CONFLICT,
                    f"You already belong to a family: {current.family.name}",
                    {"current_family_id": str(current.family_id), "current_family_name": current.family.name},
                ))
            can_leave, reason = await access.can_leave_family(self.db, current)
            if not can_leave:
                return await self._fail(Err(
                    InvitationErrorCode.LAST_ADMIN,
                    "Cannot leave family as you are the last administrator",
                    {"family_id": str(current.family_id), "family_name": current.family.name, "reason": reason},
                ))

        capacity = await check_family_capacity(self.db, invitation.family_id)
        if isinstance(capacity, Err):
            return await self._fail(capacity)

        if not await ledger.claim(self.db, invitation, user_id, now):
            return await self._fail(self._invalid_code())

        events: list[MembershipEvent] = []
        left_family_id = None
        if current is not None:
            left_family_id = current.family_id
            await self.db.delete(current)
            # the unique user_id row must be gone before the new one is inserted
            await self.db.flush()
            events.append(MemberLeftFamily(
                family_id=left_family_id,
                user_id=user_id,
                action="leftForNewFamily",
                left_to=invitation.family_id,
            ))

        self.db.add(FamilyMember(
            family_id=invitation.family_id,
            user_id=user_id,
            role=invitation.role,
            joined_at=now,
        ))
        await self.db.flush()
        await self.db.commit()

        logger.info(
            "Family invitation %s accepted by user %s (left family %s)",
            invitation.id, user_id, left_family_id,
        )
        events.append(MemberJoinedFamily(
            family_id=invitation.family_id,
            user_id=user_id,
            role=invitation.role,
            invitation_id=invitation.id,
        ))
        await self._publish(events)

        return Ok(AcceptFamilyInvitationResult(
            invitation_id=invitation.id,
            family_id=invitation.family_id,
            role=FamilyRole(invitation.role),
            left_family_id=left_family_id,
        ))

    async def accept_group_invitation(
        self,
        code: str,
        user_id: uuid.UUID,
    ) -> Result[AcceptGroupInvitationResult]:
        """Bind the accepting user's whole family to the group.

        Only an ADMIN of that family may do this; the family's children are
        registered in the group as part of the same transaction.
        """
        now = self.clock()
        loaded = await self._load_for_accept(GroupInvitation, code, user_id, now)
        if isinstance(loaded, Err):
            return await self._fail(loaded)
        invitation, _user = loaded.value

        membership = await access.get_family_membership(self.db, user_id)
        if membership is None:
            return await self._fail(Err(
                InvitationErrorCode.FAMILY_ONBOARDING_REQUIRED,
                "Family onboarding required",
                {"group_id": str(invitation.group_id), "group_name": invitation.group.name},
            ))
        family_id = membership.family_id

        await access.lock_family(self.db, family_id)
        if await self._family_in_group(family_id, invitation.group_id):
            return await self._fail(Err(
                InvitationErrorCode.ALREADY_MEMBER,
                f"Your family is already a member of {invitation.group.name}",
                {"group_id": str(invitation.group_id), "group_name": invitation.group.name},
            ))

        if membership.role != FamilyRole.ADMIN:
            admins = await access.get_family_admins(self.db, family_id)
            admin_name = admins[0].name if admins else "your family admin"
            return await self._fail(Err(
                InvitationErrorCode.REQUIRES_ADMIN_ACTION,
                f"Only your family admin can accept this invitation. Please contact {admin_name}.",
                {"admin_name": admin_name, "family_id": str(family_id)},
            ))

        if not await ledger.claim(self.db, invitation, user_id, now):
            return await self._fail(self._invalid_code())

        self.db.add(GroupFamilyMember(
            family_id=family_id,
            group_id=invitation.group_id,
            role=invitation.role,
            added_by=user_id,
            joined_at=now,
        ))

        children = await self._children_outside_group(family_id, invitation.group_id)
        for child in children:
            self.db.add(GroupChildMember(
                child_id=child.id,
                group_id=invitation.group_id,
                added_by=user_id,
                added_at=now,
            ))
        await self.db.flush()
        members_added = await count_family_members(self.db, family_id)
        await self.db.commit()

        logger.info(
            "Group invitation %s accepted by user %s for family %s (%d members, %d children)",
            invitation.id, user_id, family_id, members_added, len(children),
        )
        await self._publish([FamilyJoinedGroup(
            group_id=invitation.group_id,
            family_id=family_id,
            user_id=user_id,
            invitation_id=invitation.id,
            members_added=members_added,
            children_added=len(children),
        )])

        return Ok(AcceptGroupInvitationResult(
            invitation_id=invitation.id,
            group_id=invitation.group_id,
            family_id=family_id,
            role=GroupRole(invitation.role),
            members_added=members_added,
            children_added=len(children),
        ))

    async def _children_outside_group(
        self, family_id: uuid.UUID, group_id: uuid.UUID
    ) -> list[Child]:
        already = select(GroupChildMember.child_id).where(GroupChildMember.group_id == group_id)
        result = await self.db.execute(
            select(Child).where(Child.family_id == family_id, Child.id.not_in(already))
        )
        return list(result.scalars().all())

    # -- cancellation --------------------------------------------------------

    async def cancel_family_invitation(
        self, invitation_id: uuid.UUID, admin_id: uuid.UUID
    ) -> Result[CancelInvitationResult]:
        invitation = await ledger.get_by_id(self.db, FamilyInvitation, invitation_id)
        if invitation is None:
            return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "Invitation not found"))

        admin = await access.require_family_admin(self.db, admin_id, invitation.family_id)
        if isinstance(admin, Err):
            return await self._fail(admin)
        return await self._cancel(invitation)

    async def cancel_group_invitation(
        self, invitation_id: uuid.UUID, admin_id: uuid.UUID
    ) -> Result[CancelInvitationResult]:
        invitation = await ledger.get_by_id(self.db, GroupInvitation, invitation_id)
        if invitation is None:
            return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "Invitation not found"))

        group = await self.db.get(Group, invitation.group_id)
        admin = await access.require_group_admin(self.db, admin_id, group)
        if isinstance(admin, Err):
            return await self._fail(admin)
        return await self._cancel(invitation)

    async def _cancel(self, invitation: Invitation) -> Result[CancelInvitationResult]:
        """PENDING -> CANCELLED; a terminal invitation is left as is."""
        invitation_id = invitation.id
        changed = await ledger.cancel(self.db, invitation)
        if changed:
            await self.db.commit()
            logger.info("%s invitation %s cancelled", invitation.kind, invitation_id)
            status = InvitationStatus.CANCELLED
        else:
            await self.db.refresh(invitation)
            status = InvitationStatus(invitation.status)
            await self.db.rollback()
        return Ok(CancelInvitationResult(
            invitation_id=invitation_id,
            status=status,
            changed=changed,
        ))

    # -- listings ------------------------------------------------------------

    async def list_pending_invitations_for_target(
        self,
        kind: InvitationKind,
        target_id: uuid.UUID,
        caller_id: uuid.UUID,
    ) -> Result[list[Invitation]]:
        """Outstanding invitations of a family or group, newest first."""
        if kind is InvitationKind.FAMILY:
            allowed = await access.require_family_member(self.db, caller_id, target_id)
        else:
            allowed = await access.require_group_member(self.db, caller_id, target_id)
        if isinstance(allowed, Err):
            return allowed
        return Ok(await ledger.list_pending_for_target(self.db, kind, target_id, self.clock()))

    async def list_invitations_for_user_email(self, user_id: uuid.UUID) -> Result[UserInvitations]:
        """Outstanding invitations addressed to the user's email."""
        user = await access.get_user(self.db, user_id)
        if user is None or not user.email:
            return Ok(UserInvitations())

        now = self.clock()
        email = access.normalize_email(user.email)
        family_rows = await ledger.list_pending_for_email(self.db, FamilyInvitation, email, now)
        group_rows = await ledger.list_pending_for_email(self.db, GroupInvitation, email, now)
        return Ok(UserInvitations(
            family_invitations=[
                UserInvitationSummary(
                    id=inv.id,
                    kind=InvitationKind.FAMILY,
                    code=inv.code,
                    role=inv.role,
                    target_id=inv.family_id,
                    target_name=inv.family.name,
                    expires_at=inv.expires_at,
                )
                for inv in family_rows
            ],
            group_invitations=[
                UserInvitationSummary(
                    id=inv.id,
                    kind=InvitationKind.GROUP,
                    code=inv.code,
                    role=inv.role,
                    target_id=inv.group_id,
                    target_name=inv.group.name,
                    expires_at=inv.expires_at,
                )
                for inv in group_rows
            ],
        ))

    async def run_expiry_sweep(self) -> ExpirySweepResult:
        return await run_expiry_sweep(self.db, self.clock())
