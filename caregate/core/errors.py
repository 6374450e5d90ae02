"""Access-control error kinds.

Every denial carries a human-readable reason safe to show the requester; it
never names another user's private settings. All of these are recoverable
from the caller's side except AuditWriteError, which fails the operation.
"""

from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

from caregate.logging_config import get_logger

logger = get_logger(__name__)


class AccessControlError(Exception):
    """Base class for errors raised by the access-control engine."""

    status_code: int = status.HTTP_403_FORBIDDEN
    error: str = "access_denied"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


class Unauthenticated(AccessControlError):
    """No valid session and no valid token."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error = "unauthenticated"

    def __init__(self, reason: str = "Authentication required"):
        super().__init__(reason)


class Unauthorized(AccessControlError):
    """Valid identity, insufficient permission."""

    error = "unauthorized"


class ElevationRequired(Unauthorized):
    """The operation needs a freshly elevated session."""

    error = "elevation_required"

    def __init__(self, reason: str = "Re-authenticate to perform this operation"):
        super().__init__(reason)


class TokenInvalid(AccessControlError):
    """Capability token is expired, exhausted, revoked or unknown."""

    error = "token_invalid"


class ExcessScope(AccessControlError):
    """Issuance asks for more than the issuer holds."""

    error = "excess_scope"

    def __init__(self, reason: str = "excess scope", details: dict[str, Any] | None = None):
        super().__init__(reason, details)


class ConfigurationConflict(AccessControlError):
    """A privacy settings write contradicts a more specific setting."""

    status_code = status.HTTP_409_CONFLICT
    error = "configuration_conflict"


class AuditWriteError(AccessControlError):
    """The audit entry could not be written; nothing may be granted."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "audit_unavailable"

    def __init__(self, reason: str = "Audit log unavailable; operation aborted"):
        super().__init__(reason)


async def access_control_error_handler(
    request: Request, exc: AccessControlError
) -> JSONResponse:
    """Render engine errors as ``{"detail": reason, "error": code}``."""
    if isinstance(exc, AuditWriteError):
        logger.error(
            "Operation aborted: audit write failed",
            path=request.url.path,
            method=request.method,
        )
    content: dict[str, Any] = {"detail": exc.reason, "error": exc.error}
    if exc.details:
        content["context"] = exc.details
    headers = (
        {"WWW-Authenticate": "Bearer"}
        if exc.status_code == status.HTTP_401_UNAUTHORIZED
        else None
    )
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)
