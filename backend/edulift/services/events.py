"""Membership change events broadcast to connected clients."""

import uuid
from dataclasses import asdict, dataclass
from typing import ClassVar


@dataclass(frozen=True)
class MembershipEvent:
    event_kind: ClassVar[str] = ""

    def to_message(self) -> dict:
        payload = {
            key: str(value) if isinstance(value, uuid.UUID) else value
            for key, value in asdict(self).items()
        }
        return {"type": self.event_kind, **payload}


@dataclass(frozen=True)
class MemberJoinedFamily(MembershipEvent):
    event_kind: ClassVar[str] = "memberJoined"

    family_id: uuid.UUID
    user_id: uuid.UUID
    role: str
    invitation_id: uuid.UUID
    action: str = "invitationAccepted"


@dataclass(frozen=True)
class MemberLeftFamily(MembershipEvent):
    event_kind: ClassVar[str] = "memberLeft"

    family_id: uuid.UUID
    user_id: uuid.UUID
    action: str = "memberLeft"
    left_to: uuid.UUID | None = None
    removed_by: uuid.UUID | None = None


@dataclass(frozen=True)
class MemberRoleUpdated(MembershipEvent):
    event_kind: ClassVar[str] = "memberRoleUpdated"

    family_id: uuid.UUID
    user_id: uuid.UUID
    old_role: str
    new_role: str
    changed_by: uuid.UUID


@dataclass(frozen=True)
class FamilyJoinedGroup(MembershipEvent):
    event_kind: ClassVar[str] = "familyJoined"

    group_id: uuid.UUID
    family_id: uuid.UUID
    user_id: uuid.UUID
    invitation_id: uuid.UUID
    members_added: int
    children_added: int = 0
    action: str = "invitationAccepted"
