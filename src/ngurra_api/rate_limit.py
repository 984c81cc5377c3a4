"""Request rate limiting.

Moving-window limits from the ``limits`` package (the engine behind slowapi),
kept in process memory:

- anonymous clients are keyed by IP, authenticated clients by token subject
- endpoint limits (login, uploads, search, AI, messaging) take precedence
  over the per-client tier
- health and metrics paths, and whitelisted IPs, are never limited

Over-limit requests raise RATE_LIMITED with Retry-After; the global error
handler renders the 429.
"""

import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from limits import RateLimitItem, parse, storage, strategies
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ngurra_api.config import Settings
from ngurra_api.exceptions import Errors
from ngurra_api.logging import get_logger
from ngurra_api.middleware import client_ip
from ngurra_api.security import peek_user_id

logger = get_logger(__name__)

EXEMPT_PATH_PREFIXES = ("/health", "/metrics")


@dataclass(frozen=True)
class EndpointLimit:
    method: str
    prefix: str
    limit: str

    def matches(self, method: str, path: str) -> bool:
        return method == self.method and path.startswith(self.prefix)


DEFAULT_ENDPOINT_LIMITS: tuple[EndpointLimit, ...] = (
    EndpointLimit("POST", "/api/auth/login", "5 per 15 minutes"),
    EndpointLimit("POST", "/api/files/upload", "50 per hour"),
    EndpointLimit("GET", "/api/search", "30 per minute"),
    EndpointLimit("POST", "/api/ai", "10 per minute"),
    EndpointLimit("POST", "/api/messages", "60 per minute"),
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Tiered per-client rate limiting.

    Usage:
        app.add_middleware(RateLimitMiddleware, settings=settings)
    """

    def __init__(
        self,
        app: ASGIApp,
        settings: Settings,
        endpoint_limits: tuple[EndpointLimit, ...] = DEFAULT_ENDPOINT_LIMITS,
    ) -> None:
        super().__init__(app)
        self.settings = settings
        self.whitelist = frozenset(settings.rate_limit_whitelist)
        self.anonymous = parse(settings.rate_limit_anonymous)
        self.authenticated = parse(settings.rate_limit_authenticated)
        self.endpoint_limits = tuple((rule, parse(rule.limit)) for rule in endpoint_limits)
        self.limiter = strategies.MovingWindowRateLimiter(storage.MemoryStorage())

    def _resolve(self, request: Request, user_id: str | None) -> tuple[str, RateLimitItem]:
        for rule, item in self.endpoint_limits:
            if rule.matches(request.method, request.url.path):
                return f"{rule.method}:{rule.prefix}", item
        if user_id is not None:
            return "authenticated", self.authenticated
        return "anonymous", self.anonymous

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if not self.settings.rate_limit_enabled or request.url.path.startswith(EXEMPT_PATH_PREFIXES):
            return await call_next(request)

        ip = client_ip(request, self.settings.trusted_proxy_hops)
        if ip in self.whitelist:
            return await call_next(request)

        user_id = peek_user_id(request, self.settings)
        scope_name, item = self._resolve(request, user_id)
        key = f"user:{user_id}" if user_id is not None else f"ip:{ip}"

        allowed = self.limiter.hit(item, scope_name, key)
        stats = self.limiter.get_window_stats(item, scope_name, key)

        if not allowed:
            retry_after = max(1, math.ceil(stats.reset_time - time.time()))
            logger.warning(
                "rate_limit_exceeded",
                scope=scope_name,
                key=key,
                client_ip=ip,
                user_id=user_id,
                retry_after=retry_after,
            )
            raise Errors.rate_limited(retry_after=retry_after)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(item.amount)
        response.headers["X-RateLimit-Remaining"] = str(max(0, stats.remaining))
        response.headers["X-RateLimit-Reset"] = str(math.ceil(stats.reset_time))
        return response
