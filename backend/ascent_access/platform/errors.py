"""
Consistent error handling for Ascent access control.

Every error raised by the platform layer carries:
- code: machine-readable error code
- message: safe, client-facing message
- status_code: HTTP status used when the error reaches the API boundary
- details: structured, non-sensitive context

Resolution errors never escape guard evaluation - the guard pipeline maps them
to a Pending decision. These classes surface only from impersonation
management and from the HTTP layer.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        code: str = "INTERNAL_ERROR",
        message: str = "An unexpected error occurred",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Request data failed validation."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class PermissionDeniedError(AppError):
    """Caller is authenticated but not allowed to perform the action."""

    def __init__(
        self,
        message: str = "You do not have permission to perform this action",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code="PERMISSION_DENIED",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class NotFoundError(AppError):
    """Requested resource does not exist."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class ConflictError(AppError):
    """Request conflicts with current state."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="CONFLICT",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class ServiceUnavailableError(AppError):
    """A collaborator did not respond. Always retryable."""

    retryable = True

    def __init__(
        self,
        message: str = "Service temporarily unavailable",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


# ============================================================================
# Access-control errors
# ============================================================================


class ImpersonationUnauthorizedError(PermissionDeniedError):
    """A non-administrator attempted to impersonate. No overlay is created."""

    def __init__(self, subject_id: Optional[str] = None):
        super().__init__(message="Only administrators can impersonate other roles")
        self.code = "IMPERSONATION_UNAUTHORIZED"
        self.subject_id = subject_id


class ImpersonationSessionRequiredError(PermissionDeniedError):
    """The caller has no identity-provider session to scope an overlay to."""

    def __init__(self):
        super().__init__(message="Impersonation requires an active sign-in session")
        self.code = "IMPERSONATION_SESSION_REQUIRED"


class ImpersonationAlreadyActiveError(ConflictError):
    """Nested impersonation attempt. The existing overlay is left untouched."""

    def __init__(self, active_role: Optional[str] = None):
        super().__init__(
            message="An impersonation is already active; stop it before starting another",
            details={"active_role": active_role} if active_role else None,
        )
        self.code = "IMPERSONATION_ALREADY_ACTIVE"


class InvalidImpersonationTargetError(ValidationError):
    """Impersonation target is not a role/organization/plan combination we can show."""

    def __init__(self, message: str, role: Optional[str] = None):
        super().__init__(message=message, details={"role": role} if role else None)
        self.code = "INVALID_IMPERSONATION_TARGET"


class SourceUnavailableError(ServiceUnavailableError):
    """Identity, billing or flag source failed to respond. Treated as Pending."""

    def __init__(self, source: str, reason: Optional[str] = None):
        super().__init__(
            message=f"{source} source is unavailable",
            details={"source": source},
        )
        self.code = "SOURCE_UNAVAILABLE"
        self.source = source
        self.reason = reason


class UnknownGuardError(NotFoundError):
    """A named guard was requested that is not declared in policy config."""

    def __init__(self, name: str):
        super().__init__("Guard", name)
        self.code = "UNKNOWN_GUARD"


# ============================================================================
# Correlation IDs and FastAPI wiring
# ============================================================================


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> Optional[str]:
    """Get correlation ID from request headers, falling back to request state."""
    header_value = request.headers.get(CORRELATION_ID_HEADER)
    if header_value:
        return header_value
    return getattr(request.state, "correlation_id", None)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError as JSON with a correlation ID."""
    correlation_id = get_correlation_id(request) or generate_correlation_id()
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        extra={
            "code": exc.code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "correlation_id": correlation_id,
        },
    )
    body = exc.to_dict()
    body["error"]["correlation_id"] = correlation_id
    headers = {CORRELATION_ID_HEADER: correlation_id}
    if getattr(exc, "retryable", False):
        headers["Retry-After"] = "1"
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    """Install the AppError handler on a FastAPI app."""
    app.add_exception_handler(AppError, app_error_handler)
