"""Typed outcomes for invitation and membership operations.

Expected business conditions (expiry, capacity, mismatched email, ...) are
returned as ``Err`` values so callers can branch on ``code`` directly.
Only infrastructure faults are raised.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class InvitationErrorCode(enum.StrEnum):
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CODE = "INVALID_CODE"
    EXPIRED = "EXPIRED"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    ALREADY_MEMBER = "ALREADY_MEMBER"
    DUPLICATE_INVITATION = "DUPLICATE_INVITATION"
    FAMILY_FULL = "FAMILY_FULL"
    LAST_ADMIN = "LAST_ADMIN"
    FAMILY_CONFLICT = "FAMILY_CONFLICT"
    FAMILY_ONBOARDING_REQUIRED = "FAMILY_ONBOARDING_REQUIRED"
    REQUIRES_ADMIN_ACTION = "REQUIRES_ADMIN_ACTION"
    NOT_FOUND = "NOT_FOUND"
    CANNOT_DEMOTE_SELF = "CANNOT_DEMOTE_SELF"
    CANNOT_REMOVE_SELF = "CANNOT_REMOVE_SELF"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    code: InvitationErrorCode
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err


class CodeGenerationError(RuntimeError):
    """No unique invitation code could be produced."""
