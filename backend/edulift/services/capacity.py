"""Family capacity guard."""

import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from edulift.config import settings
from edulift.models.family import FamilyMember
from edulift.services.results import Err, InvitationErrorCode, Ok, Result


async def count_family_members(db: AsyncSession, family_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(FamilyMember.id)).where(FamilyMember.family_id == family_id)
    )
    return result.scalar() or 0


async def check_family_capacity(
    db: AsyncSession,
    family_id: uuid.UUID,
    limit: int | None = None,
) -> Result[int]:
    """Return the current member count, or FAMILY_FULL at the ceiling.

    Must run inside the transaction that performs the write it guards.
    """
    limit = limit or settings.MAX_FAMILY_MEMBERS
    count = await count_family_members(db, family_id)
    if count >= limit:
        return Err(
            InvitationErrorCode.FAMILY_FULL,
            f"Family has reached maximum capacity ({limit} members)",
            {"member_count": count, "max_members": limit},
        )
    return Ok(count)
