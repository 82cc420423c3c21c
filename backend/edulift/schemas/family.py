import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from edulift.models.enums import FamilyRole


class MemberRoleUpdate(BaseModel):
    role: FamilyRole


class FamilyMemberResponse(BaseModel):
    id: uuid.UUID
    family_id: uuid.UUID
    user_id: uuid.UUID
    role: str
    joined_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaveFamilyResult(BaseModel):
    family_id: uuid.UUID


class MemberRemovalResult(BaseModel):
    family_id: uuid.UUID
    user_id: uuid.UUID
