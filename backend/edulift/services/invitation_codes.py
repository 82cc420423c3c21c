"""Invitation codes.

Generate short, unguessable codes for family and group invitations.
Codes are upper-case alphanumeric; with the default length of 7 each code
carries about 36 bits of entropy.
"""

import secrets
import string

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edulift.config import settings
from edulift.models.invitation import FamilyInvitation, GroupInvitation
from edulift.services.results import CodeGenerationError

CODE_ALPHABET = string.ascii_uppercase + string.digits
MIN_CODE_LENGTH = 6
MAX_ATTEMPTS = 10


def _generate_code(length: int | None = None) -> str:
    """Generate a random code like 'K7Q2ZP9'."""
    length = length or settings.INVITATION_CODE_LENGTH
    if length < MIN_CODE_LENGTH:
        raise ValueError(f"Invitation codes need at least {MIN_CODE_LENGTH} characters")
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    """Canonical lookup form of a user-entered code."""
    return code.strip().upper()


async def code_in_use(db: AsyncSession, code: str) -> bool:
    """Check both ledgers; a code identifies at most one invitation of either kind."""
    for model in (FamilyInvitation, GroupInvitation):
        result = await db.execute(select(model.id).where(model.code == code))
        if result.first() is not None:
            return True
    return False


async def generate_invitation_code(db: AsyncSession) -> str:
    """Generate a unique invitation code, retrying on collision."""
    for _ in range(MAX_ATTEMPTS):
        code = _generate_code()
        if not await code_in_use(db, code):
            return code

    raise CodeGenerationError(
        f"Could not generate a unique invitation code after {MAX_ATTEMPTS} attempts"
    )
