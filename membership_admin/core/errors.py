"""
Domain error taxonomy and its HTTP rendering.

Every failure raised by authorization, flag management and audit code is one
of the classes below. ``to_http_response`` turns any of them (or anything
else) into a status code and a JSON body; it never leaks driver messages or
tracebacks. Raw details are logged by the exception handlers instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, assert_never

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from membership_admin.core.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = get_logger(__name__)


class AuthFailureReason(str, Enum):
    """Why a request could not be tied to a valid session."""

    MISSING_SESSION = "missing_session"
    INVALID_SESSION = "invalid_session"
    EXPIRED_SESSION = "expired_session"
    AUTH_SERVICE_ERROR = "auth_service_error"


class FlagErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    OTHER = "other"


class DomainError(Exception):
    """Base class for the closed set of domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(DomainError):
    _MESSAGES = {
        AuthFailureReason.MISSING_SESSION: "Authentication required",
        AuthFailureReason.INVALID_SESSION: "Invalid session",
        AuthFailureReason.EXPIRED_SESSION: "Session expired",
        AuthFailureReason.AUTH_SERVICE_ERROR: "Authentication service error",
    }

    def __init__(self, reason: AuthFailureReason, message: str | None = None) -> None:
        super().__init__(message or self._MESSAGES[reason])
        self.reason = reason


class AuthorizationError(DomainError):
    def __init__(
        self,
        message: str = "Permission denied",
        *,
        reason: str = "permission_denied",
        required_permission: str | None = None,
        resource: ResourceRef | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.required_permission = required_permission
        self.resource = resource


class SessionValidationError(DomainError):
    def __init__(self, message: str = "Session validation failed") -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    def __init__(self, resource: str, id: str | int) -> None:  # noqa: A002
        super().__init__(f"Not found: {id}#{resource}")
        self.resource = resource
        self.id = str(id)


class UniqueConstraintError(DomainError):
    def __init__(self, field: str, value: str) -> None:
        super().__init__(f"{field} already exists: {value}")
        self.field = field
        self.value = value


class ValidationError(DomainError):
    pass


class FlagError(DomainError):
    def __init__(self, message: str, kind: FlagErrorKind = FlagErrorKind.OTHER) -> None:
        super().__init__(message)
        self.kind = kind


class DatabaseError(DomainError):
    pass


class DatabaseConnectionError(DatabaseError):
    pass


class TransactionError(DatabaseError):
    pass


class RequestTimeoutError(DomainError):
    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(message)


class UnknownError(DomainError):
    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ResourceRef:
    """Type/id pair naming the resource a denial or lookup refers to."""

    type: str
    id: str = ""

    def as_dict(self) -> dict[str, str]:
        return {"type": self.type, "id": self.id}


KnownError = (
    AuthenticationError
    | AuthorizationError
    | SessionValidationError
    | NotFoundError
    | UniqueConstraintError
    | ValidationError
    | FlagError
    | DatabaseError
    | RequestTimeoutError
    | UnknownError
)

_KNOWN_ERRORS = (
    AuthenticationError,
    AuthorizationError,
    SessionValidationError,
    NotFoundError,
    UniqueConstraintError,
    ValidationError,
    FlagError,
    DatabaseError,
    RequestTimeoutError,
    UnknownError,
)


@dataclass(frozen=True)
class HttpErrorResponse:
    status: int
    body: dict[str, Any] = field(default_factory=dict)


def _body(error: str, code: str, **context: Any) -> dict[str, Any]:
    return {"error": error, "code": code, **context}


def _render(error: KnownError) -> HttpErrorResponse:
    match error:
        case AuthenticationError(reason=AuthFailureReason.AUTH_SERVICE_ERROR):
            return HttpErrorResponse(
                500, _body("Authentication service error", "AUTH_SERVICE_ERROR")
            )
        case AuthenticationError():
            return HttpErrorResponse(
                401, _body(error.message, "UNAUTHENTICATED", reason=error.reason.value)
            )
        case AuthorizationError(reason="permission_denied"):
            resource = error.resource or ResourceRef(type="")
            return HttpErrorResponse(
                403,
                _body(
                    error.message,
                    "PERMISSION_DENIED",
                    requiredPermission=error.required_permission,
                    resource=resource.as_dict(),
                ),
            )
        case AuthorizationError():
            return HttpErrorResponse(403, _body("Access denied", "AUTHORIZATION_ERROR"))
        case SessionValidationError():
            return HttpErrorResponse(
                401, _body("Session validation failed", "SESSION_VALIDATION_ERROR")
            )
        case NotFoundError():
            return HttpErrorResponse(
                404,
                _body(
                    error.message,
                    "NOT_FOUND",
                    resource={"type": error.resource, "id": error.id},
                ),
            )
        case UniqueConstraintError():
            return HttpErrorResponse(
                409,
                _body(
                    error.message,
                    "UNIQUE_CONSTRAINT_VIOLATION",
                    field=error.field,
                    value=error.value,
                ),
            )
        case ValidationError():
            return HttpErrorResponse(
                400, _body(f"Validation error: {error.message}", "VALIDATION_ERROR")
            )
        case FlagError(kind=FlagErrorKind.NOT_FOUND):
            return HttpErrorResponse(404, _body(error.message, "FLAG_NOT_FOUND"))
        case FlagError(kind=FlagErrorKind.INVALID):
            return HttpErrorResponse(400, _body(error.message, "FLAG_VALIDATION_ERROR"))
        case FlagError():
            return HttpErrorResponse(500, _body(error.message, "FLAG_ERROR"))
        case DatabaseError():
            return HttpErrorResponse(500, _body("Database error", "DATABASE_ERROR"))
        case RequestTimeoutError():
            return HttpErrorResponse(504, _body("Request timed out", "REQUEST_TIMEOUT"))
        case UnknownError():
            return HttpErrorResponse(500, _body("Internal server error", "INTERNAL_ERROR"))
        case _:
            assert_never(error)


def to_http_response(error: BaseException) -> HttpErrorResponse:
    """Map any exception to the status/body pair sent to the client."""
    if isinstance(error, _KNOWN_ERRORS):
        return _render(error)
    return _render(UnknownError())


def error_response(error: BaseException) -> JSONResponse:
    rendered = to_http_response(error)
    return JSONResponse(status_code=rendered.status, content=rendered.body)


async def _domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    rendered = to_http_response(exc)
    if rendered.status >= 500:
        logger.error(
            "request_failed",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            code=rendered.body["code"],
        )
    else:
        logger.info(
            "request_rejected",
            path=request.url.path,
            method=request.method,
            code=rendered.body["code"],
        )
    return JSONResponse(status_code=rendered.status, content=rendered.body)


async def _request_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        return await _unhandled_error_handler(request, exc)
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    return error_response(ValidationError(details or "invalid request"))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        exc_info=exc,
    )
    return error_response(UnknownError())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
