"""Global error handling.

Every error a request can produce ends up in ErrorHandler.handle, which
classifies it into an ApiError, logs it, and writes the error envelope.
Classification is an ordered tuple of rules; the first rule whose predicate
matches converts the exception:

    1. unique constraint violated       -> CONFLICT
    2. record not found                 -> NOT_FOUND
    3. schema validation failed         -> VALIDATION_ERROR (field details)
    4. bearer token invalid or expired  -> UNAUTHORIZED
    5. ApiError                         -> as raised
    6. framework HTTPException          -> kind for its status
    7. anything else                    -> INTERNAL_ERROR

Errors reach the handler two ways: FastAPI exception handlers for the
framework's own HTTPException/RequestValidationError, and
ErrorHandlerMiddleware for everything that propagates out of the app.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from jose import JWTError
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, NoResultFound
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from structlog.stdlib import BoundLogger

from ngurra_api.config import Settings
from ngurra_api.exceptions import ApiError, ErrorKind, Errors, format_retry_after, kind_for_status
from ngurra_api.logging import get_logger
from ngurra_api.middleware import client_ip, get_request_context
from ngurra_api.schemas.envelope import build_error

GENERIC_INTERNAL_MESSAGE = "An unexpected error occurred"
INVALID_TOKEN_MESSAGE = "Invalid or expired token"

# ORM / driver signal codes: Prisma-style codes and the Postgres SQLSTATE
UNIQUE_VIOLATION_CODES = frozenset({"P2002", "23505"})
RECORD_NOT_FOUND_CODES = frozenset({"P2025"})

_REQUEST_LOCATIONS = {"body", "query", "path", "header", "cookie"}


@dataclass(frozen=True)
class ErrorRule:
    name: str
    matches: Callable[[BaseException], bool]
    convert: Callable[[BaseException], ApiError]


def _signal_codes(exc: BaseException) -> set[str]:
    """Error codes carried by ``exc`` or the driver error it wraps."""
    orig = getattr(exc, "orig", None)
    sources = (exc, orig, getattr(orig, "__cause__", None))
    codes: set[str] = set()
    for source in sources:
        if source is None:
            continue
        for attr in ("code", "pgcode", "sqlstate"):
            value = getattr(source, attr, None)
            if isinstance(value, str):
                codes.add(value)
    return codes


def is_unique_violation(exc: BaseException) -> bool:
    if _signal_codes(exc) & UNIQUE_VIOLATION_CODES:
        return True
    return isinstance(exc, IntegrityError) and "unique" in str(exc.orig).lower()


def is_record_not_found(exc: BaseException) -> bool:
    return isinstance(exc, NoResultFound) or bool(_signal_codes(exc) & RECORD_NOT_FOUND_CODES)


def is_validation_error(exc: BaseException) -> bool:
    return isinstance(exc, ValidationError | RequestValidationError)


def is_token_error(exc: BaseException) -> bool:
    return isinstance(exc, JWTError)


def _conflict(exc: BaseException) -> ApiError:
    meta = getattr(exc, "meta", None)
    target = meta.get("target") if isinstance(meta, dict) else None
    if isinstance(target, str):
        target = [target]
    details = {"fields": list(target)} if target else None
    return Errors.conflict("A record with this value already exists", details)


def _not_found(_: BaseException) -> ApiError:
    return Errors.not_found("Record")


def _format_location(location: Sequence[Any], from_request: bool) -> str:
    # FastAPI prefixes the field path with where it came from ("body", "query", ...)
    if from_request and location and location[0] in _REQUEST_LOCATIONS:
        location = location[1:]
    return ".".join(str(part) for part in location) or "request"


def validation_details(exc: BaseException) -> dict[str, list[str]]:
    """Field map ``{"email": ["..."], "profile.age": ["..."]}`` from pydantic errors."""
    errors = exc.errors() if isinstance(exc, ValidationError | RequestValidationError) else []
    from_request = isinstance(exc, RequestValidationError)
    details: dict[str, list[str]] = {}
    for issue in errors:
        field = _format_location(issue.get("loc", ()), from_request)
        details.setdefault(field, []).append(str(issue.get("msg", "Invalid value")))
    return details


def _validation(exc: BaseException) -> ApiError:
    return Errors.validation(details=validation_details(exc))


def _token(_: BaseException) -> ApiError:
    return Errors.unauthorized(INVALID_TOKEN_MESSAGE)


def _passthrough(exc: BaseException) -> ApiError:
    assert isinstance(exc, ApiError)
    return exc


def _from_http_exception(exc: BaseException) -> ApiError:
    assert isinstance(exc, StarletteHTTPException)
    kind = kind_for_status(exc.status_code)
    if kind is ErrorKind.INTERNAL_ERROR and exc.status_code < 500:
        kind = ErrorKind.BAD_REQUEST
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else None
    retry_after = (exc.headers or {}).get("Retry-After")
    return ApiError(
        message,
        code=kind,
        status_code=exc.status_code,
        retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
    )


DEFAULT_RULES: tuple[ErrorRule, ...] = (
    ErrorRule("unique_violation", is_unique_violation, _conflict),
    ErrorRule("record_not_found", is_record_not_found, _not_found),
    ErrorRule("validation", is_validation_error, _validation),
    ErrorRule("token", is_token_error, _token),
    ErrorRule("api_error", lambda exc: isinstance(exc, ApiError), _passthrough),
    ErrorRule("http_exception", lambda exc: isinstance(exc, StarletteHTTPException), _from_http_exception),
)


class ErrorHandler:
    """Turns any exception into exactly one error response.

    Usage:
        handler = ErrorHandler(settings)
        register_error_handlers(app, handler)
        app.add_middleware(ErrorHandlerMiddleware, handler=handler)
    """

    def __init__(
        self,
        settings: Settings,
        rules: tuple[ErrorRule, ...] = DEFAULT_RULES,
        logger: BoundLogger | None = None,
    ) -> None:
        self.settings = settings
        self.rules = rules
        self.logger = logger or get_logger(__name__)

    def classify(self, exc: BaseException) -> ApiError:
        for rule in self.rules:
            if rule.matches(exc):
                return rule.convert(exc)
        return self._unexpected(exc)

    def _unexpected(self, exc: BaseException) -> ApiError:
        if self.settings.is_production:
            message = GENERIC_INTERNAL_MESSAGE
        else:
            message = str(exc) or type(exc).__name__
        return ApiError(message, code=ErrorKind.INTERNAL_ERROR, is_operational=False)

    def handle(self, request: Request, exc: BaseException) -> JSONResponse:
        try:
            error = self.classify(exc)
        except Exception:
            self.logger.exception("error_classification_failed", exc_type=type(exc).__name__)
            error = self._unexpected(exc)

        self._log(request, exc, error)

        context = get_request_context(request)
        request_id = context.request_id if context else None
        response = JSONResponse(status_code=error.status_code, content=build_error(error, request_id))
        if error.retry_after is not None:
            response.headers["Retry-After"] = format_retry_after(error.retry_after)
        return response

    async def __call__(self, request: Request, exc: Exception) -> Response:
        return self.handle(request, exc)

    def _log_fields(self, request: Request) -> dict[str, Any]:
        context = get_request_context(request)
        return {
            "request_id": context.request_id if context else None,
            "path": request.url.path,
            "method": request.method,
            "user_id": getattr(request.state, "user_id", None),
            "client_ip": client_ip(request, self.settings.trusted_proxy_hops),
        }

    def _log(self, request: Request, exc: BaseException, error: ApiError) -> None:
        fields = self._log_fields(request)
        fields.update(code=str(error.code), status=error.status_code)
        if error.status_code >= 500:
            self.logger.error("request_failed", error=error.message, exc_info=exc, **fields)
        else:
            self.logger.warning("request_rejected", error=error.message, **fields)

    def log_after_response_started(self, request: Request, exc: BaseException) -> None:
        self.logger.error(
            "request_failed_mid_response",
            exc_info=exc,
            **self._log_fields(request),
        )


def register_error_handlers(app: FastAPI, handler: ErrorHandler) -> None:
    """Route FastAPI's own HTTP and validation errors through ``handler``."""
    app.add_exception_handler(StarletteHTTPException, handler)
    app.add_exception_handler(RequestValidationError, handler)


class ErrorHandlerMiddleware:
    """Catch-all for exceptions that propagate out of the app.

    Sits inside RequestIDMiddleware so error responses still get X-Request-ID.
    Never re-raises: if the response has already started, the failure is
    logged and the request ends.
    """

    def __init__(self, app: ASGIApp, handler: ErrorHandler) -> None:
        self.app = app
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, tracking_send)
        except Exception as exc:
            request = Request(scope, receive)
            if response_started:
                self.handler.log_after_response_started(request, exc)
                return
            response = self.handler.handle(request, exc)
            await response(scope, receive, send)
