"""Middleware for request tracing and request body size governance."""

import re
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ngurra_api.logging import get_logger
from ngurra_api.size_limits import SizeLimitConfig, classify_content_type, format_size

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_ID_PREFIX = "req_"

_REQUEST_ID_PATTERN = re.compile(r"^[\x21-\x7e]{1,128}$")


@dataclass(frozen=True)
class RequestContext:
    """Per-request correlation state, attached as ``request.state.context``."""

    request_id: str
    path: str
    method: str
    started_at: float

    @property
    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.started_at) * 1000, 2)


def new_request_id() -> str:
    return f"{REQUEST_ID_PREFIX}{secrets.token_hex(8)}"


def get_request_context(connection: HTTPConnection) -> RequestContext | None:
    return getattr(connection.state, "context", None)


def client_ip(connection: HTTPConnection, trusted_proxy_hops: int = 1) -> str:
    """Client address as seen through ``trusted_proxy_hops`` reverse proxies.

    The forwarding chain is X-Forwarded-For followed by the socket peer. Each
    trusted proxy appends the address it received from, so the client is the
    entry ``trusted_proxy_hops`` places from the right. Entries further left
    are client supplied and never used. Chains shorter than the hop count
    resolve to their leftmost entry.
    """
    peer = connection.client.host if connection.client is not None else "unknown"
    if trusted_proxy_hops <= 0:
        return peer

    forwarded = connection.headers.get("x-forwarded-for", "")
    chain = [part.strip() for part in forwarded.split(",") if part.strip()]
    chain.append(peer)
    return chain[max(len(chain) - 1 - trusted_proxy_hops, 0)]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Give every request a correlation id.

    - Reuses the inbound X-Request-ID when it is sane, otherwise mints ``req_<hex>``
    - Stores a RequestContext on request.state and binds request_id/path/method
      to structlog context, so every log line of this request carries them
    - Echoes X-Request-ID on the response, errors included

    Usage:
        app.add_middleware(RequestIDMiddleware)
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        inbound = request.headers.get(REQUEST_ID_HEADER)
        request_id = inbound if inbound and _REQUEST_ID_PATTERN.match(inbound) else new_request_id()

        context = RequestContext(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            started_at=time.perf_counter(),
        )
        request.state.context = context

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=context.path,
            method=context.method,
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        logger.info(
            "request_completed",
            status=response.status_code,
            duration_ms=context.elapsed_ms,
        )
        return response


def payload_too_large_body(limit: int) -> dict[str, str]:
    """413 body shared by both size governors. Not wrapped in the error envelope."""
    human = format_size(limit)
    return {
        "error": "Payload Too Large",
        "message": f"Request body exceeds the maximum allowed size of {human}",
        "limit": human,
    }


def _declared_length(raw: str | None) -> int:
    if raw is None:
        return 0
    try:
        length = int(raw.strip())
    except ValueError:
        return 0
    return max(length, 0)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared Content-Length is over the limit.

    The limit depends on the path (first matching override prefix) and on the
    body category from Content-Type. A missing or malformed Content-Length
    passes through: StreamingSizeLimitMiddleware catches those bodies.

    Usage:
        app.add_middleware(RequestSizeLimitMiddleware, limits=SizeLimitConfig.from_settings(settings))
    """

    def __init__(self, app: ASGIApp, limits: SizeLimitConfig, trusted_proxy_hops: int = 1) -> None:
        super().__init__(app)
        self.limits = limits
        self.trusted_proxy_hops = trusted_proxy_hops

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        content_length = _declared_length(request.headers.get("content-length"))
        if content_length == 0:
            return await call_next(request)

        category = classify_content_type(request.headers.get("content-type"))
        limit = self.limits.resolve(request.url.path, category)
        if content_length <= limit:
            return await call_next(request)

        logger.warning(
            "payload_too_large",
            path=request.url.path,
            content_length=content_length,
            limit=limit,
            category=str(category),
            client_ip=client_ip(request, self.trusted_proxy_hops),
        )
        return JSONResponse(status_code=413, content=payload_too_large_body(limit))


class StreamingSizeLimitMiddleware:
    """Count body bytes as they arrive and cut the request off past ``max_size``.

    Works whether Content-Length is absent, malformed, or understated. On the
    first chunk that crosses the limit it sends the 413 response (if nothing
    was sent yet) and reports a client disconnect to the app below, which
    abandons the request. Anything the app tries to send afterwards is
    dropped. All state lives in this call, so concurrent requests never see
    each other's counters.

    Usage:
        app.add_middleware(StreamingSizeLimitMiddleware, max_size=50 * MB)
    """

    def __init__(self, app: ASGIApp, max_size: int, trusted_proxy_hops: int = 1) -> None:
        self.app = app
        self.max_size = max_size
        self.trusted_proxy_hops = trusted_proxy_hops

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        received = 0
        aborted = False
        response_started = False

        async def guarded_send(message: Message) -> None:
            nonlocal response_started
            if aborted:
                return
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        async def counting_receive() -> Message:
            nonlocal received, aborted
            if aborted:
                return {"type": "http.disconnect"}

            message = await receive()
            if message["type"] != "http.request":
                return message

            received += len(message.get("body", b""))
            if received <= self.max_size:
                return message

            connection = HTTPConnection(scope)
            logger.warning(
                "payload_stream_aborted",
                path=scope.get("path"),
                received=received,
                limit=self.max_size,
                client_ip=client_ip(connection, self.trusted_proxy_hops),
            )
            if not response_started:
                await JSONResponse(
                    status_code=413, content=payload_too_large_body(self.max_size)
                )(scope, receive, send)
            aborted = True
            return {"type": "http.disconnect"}

        try:
            await self.app(scope, counting_receive, guarded_send)
        except Exception:
            # The app below gave up on the body we cut off; the 413 is already out
            if not aborted:
                raise
            logger.debug("aborted_request_unwound", path=scope.get("path"))
