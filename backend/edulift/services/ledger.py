"""Invitation ledger.

Queries and status transitions over the family and group invitation
tables. Status changes are conditional updates on ``status = 'PENDING'``
so that two concurrent transitions on the same row have a single winner.
"""

import uuid
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from edulift.models.enums import InvitationKind, InvitationStatus
from edulift.models.invitation import FamilyInvitation, GroupInvitation

InvitationModel = type[FamilyInvitation] | type[GroupInvitation]

MODELS: dict[InvitationKind, InvitationModel] = {
    InvitationKind.FAMILY: FamilyInvitation,
    InvitationKind.GROUP: GroupInvitation,
}


def _target_column(model: InvitationModel):
    return model.family_id if model is FamilyInvitation else model.group_id


def _target_option(model: InvitationModel):
    return joinedload(model.family) if model is FamilyInvitation else joinedload(model.group)


async def get_pending_by_code(
    db: AsyncSession,
    model: InvitationModel,
    code: str,
    *,
    lock: bool = False,
) -> FamilyInvitation | GroupInvitation | None:
    """Look up a PENDING invitation by its normalized code, target and inviter loaded."""
    stmt = (
        select(model)
        .options(_target_option(model), joinedload(model.inviter))
        .where(model.code == code, model.status == InvitationStatus.PENDING)
    )
    if lock:
        stmt = stmt.with_for_update(of=model)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_by_id(
    db: AsyncSession,
    model: InvitationModel,
    invitation_id: uuid.UUID,
) -> FamilyInvitation | GroupInvitation | None:
    result = await db.execute(select(model).where(model.id == invitation_id))
    return result.scalar_one_or_none()


async def find_active_for_email(
    db: AsyncSession,
    model: InvitationModel,
    target_id: uuid.UUID,
    email: str,
    now: datetime,
) -> FamilyInvitation | GroupInvitation | None:
    """The outstanding (pending, unexpired) invitation for a target/email pair."""
    result = await db.execute(
        select(model).where(
            _target_column(model) == target_id,
            model.email == email,
            model.status == InvitationStatus.PENDING,
            model.expires_at > now,
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def find_active_for_target_family(
    db: AsyncSession,
    group_id: uuid.UUID,
    family_id: uuid.UUID,
    now: datetime,
) -> GroupInvitation | None:
    result = await db.execute(
        select(GroupInvitation).where(
            GroupInvitation.group_id == group_id,
            GroupInvitation.target_family_id == family_id,
            GroupInvitation.status == InvitationStatus.PENDING,
            GroupInvitation.expires_at > now,
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def claim(
    db: AsyncSession,
    invitation: FamilyInvitation | GroupInvitation,
    user_id: uuid.UUID,
    now: datetime,
) -> bool:
    """Flip PENDING -> ACCEPTED. False if another transaction got there first."""
    model = type(invitation)
    result = await db.execute(
        update(model)
        .where(model.id == invitation.id, model.status == InvitationStatus.PENDING)
        .values(
            status=InvitationStatus.ACCEPTED,
            accepted_by=user_id,
            accepted_at=now,
        )
    )
    return result.rowcount == 1


async def cancel(
    db: AsyncSession,
    invitation: FamilyInvitation | GroupInvitation,
) -> bool:
    """Flip PENDING -> CANCELLED. False if already terminal."""
    model = type(invitation)
    result = await db.execute(
        update(model)
        .where(model.id == invitation.id, model.status == InvitationStatus.PENDING)
        .values(status=InvitationStatus.CANCELLED)
    )
    return result.rowcount == 1


async def list_pending_for_target(
    db: AsyncSession,
    kind: InvitationKind,
    target_id: uuid.UUID,
    now: datetime,
) -> list[FamilyInvitation] | list[GroupInvitation]:
    model = MODELS[kind]
    result = await db.execute(
        select(model)
        .options(joinedload(model.inviter))
        .where(
            _target_column(model) == target_id,
            model.status == InvitationStatus.PENDING,
            model.expires_at > now,
        )
        .order_by(model.created_at.desc())
    )
    return list(result.scalars().all())


async def list_pending_for_email(
    db: AsyncSession,
    model: InvitationModel,
    email: str,
    now: datetime,
) -> list[FamilyInvitation] | list[GroupInvitation]:
    result = await db.execute(
        select(model)
        .options(_target_option(model))
        .where(
            model.email == email,
            model.status == InvitationStatus.PENDING,
            model.expires_at > now,
        )
        .order_by(model.created_at.desc())
    )
    return list(result.scalars().all())


async def expire_overdue(db: AsyncSession, model: InvitationModel, now: datetime) -> int:
    """Flip every PENDING invitation past its deadline to EXPIRED."""
    result = await db.execute(
        update(model)
        .where(model.status == InvitationStatus.PENDING, model.expires_at < now)
        .values(status=InvitationStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def purge_terminal(db: AsyncSession, model: InvitationModel, cutoff: datetime) -> int:
    """Delete cancelled and expired invitations created before ``cutoff``."""
    result = await db.execute(
        delete(model)
        .where(
            model.status.in_([InvitationStatus.CANCELLED, InvitationStatus.EXPIRED]),
            model.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
