"""Invitation expiry sweep and retention purge.

Both jobs are safe to run repeatedly and concurrently with redemptions:
they only touch rows whose status already makes them ineligible, or flip
PENDING rows with a conditional update.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from edulift.config import settings
from edulift.models.invitation import FamilyInvitation, GroupInvitation
from edulift.schemas.invitation import ExpirySweepResult, PurgeResult
from edulift.services import ledger
from edulift.types import utcnow

logger = logging.getLogger(__name__)


async def run_expiry_sweep(db: AsyncSession, now: datetime | None = None) -> ExpirySweepResult:
    """Mark every overdue PENDING invitation EXPIRED in both ledgers."""
    now = now or utcnow()
    result = ExpirySweepResult(
        family_invitations_expired=await ledger.expire_overdue(db, FamilyInvitation, now),
        group_invitations_expired=await ledger.expire_overdue(db, GroupInvitation, now),
    )
    await db.commit()

    if result.family_invitations_expired or result.group_invitations_expired:
        logger.info(
            "Expired %d family and %d group invitations",
            result.family_invitations_expired,
            result.group_invitations_expired,
        )
    return result


async def purge_stale_invitations(
    db: AsyncSession,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> PurgeResult:
    """Delete CANCELLED and EXPIRED invitations older than the retention window."""
    now = now or utcnow()
    days = settings.INVITATION_RETENTION_DAYS if retention_days is None else retention_days
    cutoff = now - timedelta(days=days)

    result = PurgeResult(
        family_invitations_deleted=await ledger.purge_terminal(db, FamilyInvitation, cutoff),
        group_invitations_deleted=await ledger.purge_terminal(db, GroupInvitation, cutoff),
    )
    await db.commit()

    if result.family_invitations_deleted or result.group_invitations_deleted:
        logger.info(
            "Purged %d family and %d group invitations older than %d days",
            result.family_invitations_deleted,
            result.group_invitations_deleted,
            days,
        )
    return result
