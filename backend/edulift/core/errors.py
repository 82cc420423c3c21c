"""Translation of business errors to HTTP responses."""

from fastapi import HTTPException, status

from edulift.services.results import Err, InvitationErrorCode, Ok, Result

STATUS_BY_CODE: dict[InvitationErrorCode, int] = {
    InvitationErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    InvitationErrorCode.EMAIL_MISMATCH: status.HTTP_403_FORBIDDEN,
    InvitationErrorCode.REQUIRES_ADMIN_ACTION: status.HTTP_403_FORBIDDEN,
    InvitationErrorCode.CANNOT_DEMOTE_SELF: status.HTTP_403_FORBIDDEN,
    InvitationErrorCode.CANNOT_REMOVE_SELF: status.HTTP_403_FORBIDDEN,
    InvitationErrorCode.INVALID_CODE: status.HTTP_404_NOT_FOUND,
    InvitationErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    InvitationErrorCode.ALREADY_MEMBER: status.HTTP_409_CONFLICT,
    InvitationErrorCode.DUPLICATE_INVITATION: status.HTTP_409_CONFLICT,
    InvitationErrorCode.FAMILY_CONFLICT: status.HTTP_409_CONFLICT,
    InvitationErrorCode.LAST_ADMIN: status.HTTP_409_CONFLICT,
    InvitationErrorCode.FAMILY_ONBOARDING_REQUIRED: status.HTTP_409_CONFLICT,
    InvitationErrorCode.EXPIRED: status.HTTP_410_GONE,
    InvitationErrorCode.FAMILY_FULL: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def error_response(err: Err) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(err.code, status.HTTP_400_BAD_REQUEST),
        detail={"code": err.code.value, "message": err.message, **err.context},
    )


def unwrap(result: Result):
    """Return the value of an ``Ok`` or raise the mapped HTTPException."""
    if isinstance(result, Ok):
        return result.value
    raise error_response(result)
