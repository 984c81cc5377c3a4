"""Error taxonomy and the ApiError exception.

Services and routers raise ApiError (usually through the ``Errors`` factory)
to signal a broken business rule. The global error handler in
error_handlers.py is the only place that turns them into HTTP responses:

    {"success": false, "error": "...", "code": "NOT_FOUND", "timestamp": "...", ...}
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from email.utils import format_datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class ErrorKind(StrEnum):
    """Closed set of error codes exposed to API clients."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"


STATUS_BY_KIND: Mapping[ErrorKind, int] = MappingProxyType(
    {
        ErrorKind.BAD_REQUEST: 400,
        ErrorKind.UNAUTHORIZED: 401,
        ErrorKind.FORBIDDEN: 403,
        ErrorKind.NOT_FOUND: 404,
        ErrorKind.CONFLICT: 409,
        ErrorKind.VALIDATION_ERROR: 422,
        ErrorKind.RATE_LIMITED: 429,
        ErrorKind.PAYLOAD_TOO_LARGE: 413,
        ErrorKind.INTERNAL_ERROR: 500,
        ErrorKind.SERVICE_UNAVAILABLE: 503,
        ErrorKind.DATABASE_ERROR: 500,
        ErrorKind.EXTERNAL_SERVICE_ERROR: 502,
    }
)

# Reverse lookup. DATABASE_ERROR shares 500 with INTERNAL_ERROR; the generic kind wins.
_KIND_BY_STATUS: Mapping[int, ErrorKind] = MappingProxyType(
    {status: kind for kind, status in reversed(STATUS_BY_KIND.items())}
)

DEFAULT_MESSAGES: Mapping[ErrorKind, str] = MappingProxyType(
    {
        ErrorKind.BAD_REQUEST: "Bad request",
        ErrorKind.UNAUTHORIZED: "Authentication required",
        ErrorKind.FORBIDDEN: "You do not have permission to access this resource",
        ErrorKind.NOT_FOUND: "{resource} not found",
        ErrorKind.CONFLICT: "Resource already exists",
        ErrorKind.VALIDATION_ERROR: "Validation failed",
        ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
        ErrorKind.PAYLOAD_TOO_LARGE: "Request body is too large",
        ErrorKind.INTERNAL_ERROR: "An unexpected error occurred",
        ErrorKind.SERVICE_UNAVAILABLE: "Service temporarily unavailable",
        ErrorKind.DATABASE_ERROR: "A database error occurred",
        ErrorKind.EXTERNAL_SERVICE_ERROR: "An external service failed to respond",
    }
)

RetryAfter = int | datetime


def status_for(kind: ErrorKind) -> int:
    return STATUS_BY_KIND[kind]


def kind_for_status(status: int | None) -> ErrorKind:
    """Map an HTTP status back to its ErrorKind; unknown statuses are INTERNAL_ERROR."""
    if status is None:
        return ErrorKind.INTERNAL_ERROR
    return _KIND_BY_STATUS.get(status, ErrorKind.INTERNAL_ERROR)


def default_message(kind: ErrorKind, resource: str | None = None) -> str:
    return DEFAULT_MESSAGES[kind].format(resource=resource or "Resource")


def format_retry_after(value: RetryAfter) -> str:
    """Render a Retry-After header value: delay-seconds or an HTTP-date."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return format_datetime(value.astimezone(UTC), usegmt=True)
    return str(max(0, int(value)))


class ApiError(Exception):
    """Structured application error carrying an HTTP status and a taxonomy code.

    Pass either ``code`` or ``status_code`` (or both). A missing code is
    derived from the status; a missing or out-of-range status comes from the
    code. With neither, the error is an INTERNAL_ERROR.

    Instances are read-only once built.
    """

    message: str
    status_code: int
    code: ErrorKind
    details: Any
    is_operational: bool
    retry_after: RetryAfter | None

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorKind | None = None,
        status_code: int | None = None,
        details: Any = None,
        is_operational: bool = True,
        retry_after: RetryAfter | None = None,
    ) -> None:
        if code is None:
            code = kind_for_status(status_code)
        if status_code is None or not 400 <= status_code <= 599:
            status_code = STATUS_BY_KIND[code]
        message = message or default_message(code)

        super().__init__(message)
        object.__setattr__(self, "message", message)
        object.__setattr__(self, "status_code", status_code)
        object.__setattr__(self, "code", code)
        object.__setattr__(self, "details", details)
        object.__setattr__(self, "is_operational", is_operational)
        object.__setattr__(self, "retry_after", retry_after)

    def __setattr__(self, name: str, value: object) -> None:
        # Exception machinery writes these while the error propagates
        if name in {"__traceback__", "__cause__", "__context__", "__suppress_context__", "__notes__"}:
            super().__setattr__(name, value)
            return
        raise AttributeError(f"{type(self).__name__} is read-only")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!s}, status_code={self.status_code}, message={self.message!r})"


def make_error(
    kind: ErrorKind,
    message: str | None = None,
    details: Any = None,
    *,
    resource: str | None = None,
    retry_after: RetryAfter | None = None,
) -> ApiError:
    """Build an ApiError with the canonical status for ``kind``."""
    return ApiError(
        message or default_message(kind, resource),
        code=kind,
        status_code=STATUS_BY_KIND[kind],
        details=details,
        retry_after=retry_after,
    )


class Errors:
    """Named constructors, so call sites never pair status and code by hand.

        raise Errors.not_found("Mentor")
        raise Errors.validation(details={"email": ["Invalid email"]})
    """

    @staticmethod
    def bad_request(message: str | None = None, details: Any = None) -> ApiError:
        return make_error(ErrorKind.BAD_REQUEST, message, details)

    @staticmethod
    def unauthorized(message: str | None = None) -> ApiError:
        return make_error(ErrorKind.UNAUTHORIZED, message)

    @staticmethod
    def forbidden(message: str | None = None) -> ApiError:
        return make_error(ErrorKind.FORBIDDEN, message)

    @staticmethod
    def not_found(resource: str = "Resource", message: str | None = None) -> ApiError:
        return make_error(ErrorKind.NOT_FOUND, message, resource=resource)

    @staticmethod
    def conflict(message: str | None = None, details: Any = None) -> ApiError:
        return make_error(ErrorKind.CONFLICT, message, details)

    @staticmethod
    def validation(message: str | None = None, details: Any = None) -> ApiError:
        return make_error(ErrorKind.VALIDATION_ERROR, message, details)

    @staticmethod
    def rate_limited(retry_after: RetryAfter | None = None, message: str | None = None) -> ApiError:
        return make_error(ErrorKind.RATE_LIMITED, message, retry_after=retry_after)

    @staticmethod
    def payload_too_large(message: str | None = None) -> ApiError:
        return make_error(ErrorKind.PAYLOAD_TOO_LARGE, message)

    @staticmethod
    def internal(message: str | None = None) -> ApiError:
        return make_error(ErrorKind.INTERNAL_ERROR, message)

    @staticmethod
    def service_unavailable(
        message: str | None = None, retry_after: RetryAfter | None = None
    ) -> ApiError:
        return make_error(ErrorKind.SERVICE_UNAVAILABLE, message, retry_after=retry_after)

    @staticmethod
    def database(message: str | None = None) -> ApiError:
        return make_error(ErrorKind.DATABASE_ERROR, message)

    @staticmethod
    def external_service(service: str, message: str | None = None) -> ApiError:
        return make_error(
            ErrorKind.EXTERNAL_SERVICE_ERROR,
            message or f"{service} failed to respond",
            {"service": service},
        )
