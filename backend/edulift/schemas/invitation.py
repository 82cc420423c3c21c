import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from edulift.models.enums import FamilyRole, GroupRole, InvitationKind


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class FamilyInvitationCreate(BaseModel):
    family_id: uuid.UUID
    email: EmailStr | None = None
    role: FamilyRole = FamilyRole.MEMBER
    personal_message: str | None = Field(default=None, max_length=500)


class GroupInvitationCreate(BaseModel):
    group_id: uuid.UUID
    target_family_id: uuid.UUID | None = None
    email: EmailStr | None = None
    role: GroupRole = GroupRole.MEMBER
    personal_message: str | None = Field(default=None, max_length=500)


class AcceptFamilyInvitationRequest(BaseModel):
    leave_current_family: bool = False


# ---------------------------------------------------------------------------
# Ledger rows
# ---------------------------------------------------------------------------

class InvitationBase(BaseModel):
    id: uuid.UUID
    email: str | None = None
    role: str
    code: str
    personal_message: str | None = None
    status: str
    expires_at: datetime
    created_by: uuid.UUID
    invited_by: uuid.UUID
    accepted_by: uuid.UUID | None = None
    accepted_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FamilyInvitationResponse(InvitationBase):
    family_id: uuid.UUID


class GroupInvitationResponse(InvitationBase):
    group_id: uuid.UUID
    target_family_id: uuid.UUID | None = None


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------

class CurrentFamilyInfo(BaseModel):
    id: uuid.UUID
    name: str


class FamilyInvitationValidation(BaseModel):
    valid: bool = True
    family_id: uuid.UUID
    family_name: str
    inviter_name: str | None = None
    role: FamilyRole
    personal_message: str | None = None
    email: str | None = None
    existing_user: bool | None = None
    user_current_family: CurrentFamilyInfo | None = None
    can_leave_current_family: bool | None = None
    cannot_leave_reason: str | None = None


class GroupInvitationValidation(BaseModel):
    valid: bool = True
    group_id: uuid.UUID
    group_name: str
    inviter_name: str | None = None
    role: GroupRole
    personal_message: str | None = None
    email: str | None = None
    existing_user: bool | None = None
    requires_auth: bool = False


class InvitationValidation(BaseModel):
    """Result of looking a code up in either ledger."""

    kind: InvitationKind
    family: FamilyInvitationValidation | None = None
    group: GroupInvitationValidation | None = None


# ---------------------------------------------------------------------------
# Transition results
# ---------------------------------------------------------------------------

class AcceptFamilyInvitationResult(BaseModel):
    invitation_id: uuid.UUID
    family_id: uuid.UUID
    role: FamilyRole
    left_family_id: uuid.UUID | None = None


class AcceptGroupInvitationResult(BaseModel):
    invitation_id: uuid.UUID
    group_id: uuid.UUID
    family_id: uuid.UUID
    role: GroupRole
    members_added: int
    children_added: int


class CancelInvitationResult(BaseModel):
    invitation_id: uuid.UUID
    status: str
    changed: bool


class UserInvitationSummary(BaseModel):
    id: uuid.UUID
    kind: InvitationKind
    code: str
    role: str
    target_id: uuid.UUID
    target_name: str
    expires_at: datetime


class UserInvitations(BaseModel):
    family_invitations: list[UserInvitationSummary] = []
    group_invitations: list[UserInvitationSummary] = []


class ExpirySweepResult(BaseModel):
    family_invitations_expired: int = 0
    group_invitations_expired: int = 0


class PurgeResult(BaseModel):
    family_invitations_deleted: int = 0
    group_invitations_deleted: int = 0
