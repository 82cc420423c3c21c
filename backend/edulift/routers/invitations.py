"""Invitations router.

Endpoints for issuing, validating, accepting and cancelling family and
group invitation codes, plus family membership maintenance.
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from edulift.config import settings
from edulift.core.dependencies import get_current_user, get_optional_user
from edulift.core.errors import unwrap
from edulift.core.rate_limit import limiter
from edulift.database import get_db
from edulift.models.enums import InvitationKind
from edulift.models.user import User
from edulift.schemas.family import (
    FamilyMemberResponse,
    LeaveFamilyResult,
    MemberRemovalResult,
    MemberRoleUpdate,
)
from edulift.schemas.invitation import (
    AcceptFamilyInvitationRequest,
    AcceptFamilyInvitationResult,
    AcceptGroupInvitationResult,
    CancelInvitationResult,
    FamilyInvitationCreate,
    FamilyInvitationResponse,
    FamilyInvitationValidation,
    GroupInvitationCreate,
    GroupInvitationResponse,
    GroupInvitationValidation,
    InvitationValidation,
    UserInvitations,
)
from edulift.services.connection_manager import connection_manager
from edulift.services.email_service import email_dispatcher
from edulift.services.invitation_service import InvitationService
from edulift.services.membership_service import MembershipService

router = APIRouter(prefix="/invitations", tags=["Invitations"])


def get_invitation_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    background_tasks: BackgroundTasks,
) -> InvitationService:
    return InvitationService(
        db,
        email=email_dispatcher,
        broadcaster=connection_manager,
        background=background_tasks,
    )


def get_membership_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> MembershipService:
    return MembershipService(db, broadcaster=connection_manager)


Service = Annotated[InvitationService, Depends(get_invitation_service)]
CurrentUser = Annotated[User, Depends(get_current_user)]
OptionalUser = Annotated[User | None, Depends(get_optional_user)]


def _caller_id(user: User | None) -> uuid.UUID | None:
    return user.id if user is not None else None


# ---------------------------------------------------------------------------
# Unified validation
# ---------------------------------------------------------------------------

@router.get("/validate/{code}", response_model=InvitationValidation)
@limiter.limit(settings.VALIDATE_RATE_LIMIT)
async def validate_code(
    request: Request,
    code: str,
    service: Service,
    current_user: OptionalUser,
):
    """Validate a code from either ledger. Anonymous callers are allowed."""
    return unwrap(await service.validate_invitation_code(code, _caller_id(current_user)))


# ---------------------------------------------------------------------------
# Family invitations
# ---------------------------------------------------------------------------

@router.post(
    "/family",
    response_model=FamilyInvitationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_family_invitation(
    body: FamilyInvitationCreate,
    service: Service,
    current_user: CurrentUser,
):
    """Create an invitation into a family. Requires family admin."""
    return unwrap(await service.create_family_invitation(
        body.family_id,
        current_user.id,
        email=body.email,
        role=body.role,
        personal_message=body.personal_message,
    ))


@router.get("/family/{code}/validate", response_model=FamilyInvitationValidation)
async def validate_family_invitation(
    code: str,
    service: Service,
    current_user: OptionalUser,
):
    return unwrap(await service.validate_family_invitation(code, _caller_id(current_user)))


@router.post("/family/{code}/accept", response_model=AcceptFamilyInvitationResult)
async def accept_family_invitation(
    code: str,
    service: Service,
    current_user: CurrentUser,
    body: AcceptFamilyInvitationRequest | None = None,
):
    """Join a family. Set ``leave_current_family`` to switch families."""
    leave = body.leave_current_family if body is not None else False
    return unwrap(await service.accept_family_invitation(
        code, current_user.id, leave_current_family=leave,
    ))


@router.delete("/family/{invitation_id}", response_model=CancelInvitationResult)
async def cancel_family_invitation(
    invitation_id: uuid.UUID,
    service: Service,
    current_user: CurrentUser,
):
    return unwrap(await service.cancel_family_invitation(invitation_id, current_user.id))


@router.get("/family/target/{family_id}", response_model=list[FamilyInvitationResponse])
async def list_family_invitations(
    family_id: uuid.UUID,
    service: Service,
    current_user: CurrentUser,
):
    """Pending invitations of a family. Requires family membership."""
    return unwrap(await service.list_pending_invitations_for_target(
        InvitationKind.FAMILY, family_id, current_user.id,
    ))


# ---------------------------------------------------------------------------
# Group invitations
# ---------------------------------------------------------------------------

@router.post(
    "/group",
    response_model=GroupInvitationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_group_invitation(
    body: GroupInvitationCreate,
    service: Service,
    current_user: CurrentUser,
):
    """Create an invitation into a group. Requires group admin."""
    return unwrap(await service.create_group_invitation(
        body.group_id,
        current_user.id,
        target_family_id=body.target_family_id,
        email=body.email,
        role=body.role,
        personal_message=body.personal_message,
    ))


@router.get("/group/{code}/validate", response_model=GroupInvitationValidation)
async def validate_group_invitation(
    code: str,
    service: Service,
    current_user: OptionalUser,
):
    return unwrap(await service.validate_group_invitation(code, _caller_id(current_user)))


@router.post("/group/{code}/accept", response_model=AcceptGroupInvitationResult)
async def accept_group_invitation(
    code: str,
    service: Service,
    current_user: CurrentUser,
):
    """Join a group on behalf of the caller's whole family."""
    return unwrap(await service.accept_group_invitation(code, current_user.id))


@router.delete("/group/{invitation_id}", response_model=CancelInvitationResult)
async def cancel_group_invitation(
    invitation_id: uuid.UUID,
    service: Service,
    current_user: CurrentUser,
):
    return unwrap(await service.cancel_group_invitation(invitation_id, current_user.id))


@router.get("/group/target/{group_id}", response_model=list[GroupInvitationResponse])
async def list_group_invitations(
    group_id: uuid.UUID,
    service: Service,
    current_user: CurrentUser,
):
    return unwrap(await service.list_pending_invitations_for_target(
        InvitationKind.GROUP, group_id, current_user.id,
    ))


# ---------------------------------------------------------------------------
# Caller's own invitations and family membership
# ---------------------------------------------------------------------------

@router.get("/user", response_model=UserInvitations)
async def list_my_invitations(
    service: Service,
    current_user: CurrentUser,
):
    """Pending invitations addressed to the caller's email."""
    return unwrap(await service.list_invitations_for_user_email(current_user.id))


@router.post("/families/leave", response_model=LeaveFamilyResult)
async def leave_family(
    service: Annotated[MembershipService, Depends(get_membership_service)],
    current_user: CurrentUser,
):
    family_id = unwrap(await service.leave_family(current_user.id))
    return LeaveFamilyResult(family_id=family_id)


@router.patch("/families/members/{user_id}", response_model=FamilyMemberResponse)
async def update_member_role(
    user_id: uuid.UUID,
    body: MemberRoleUpdate,
    service: Annotated[MembershipService, Depends(get_membership_service)],
    current_user: CurrentUser,
):
    """Change a member's role. Requires family admin."""
    return unwrap(await service.update_member_role(current_user.id, user_id, body.role))


@router.delete("/families/members/{user_id}", response_model=MemberRemovalResult)
async def remove_member(
    user_id: uuid.UUID,
    service: Annotated[MembershipService, Depends(get_membership_service)],
    current_user: CurrentUser,
):
    family_id = unwrap(await service.remove_member(current_user.id, user_id))
    return MemberRemovalResult(family_id=family_id, user_id=user_id)
