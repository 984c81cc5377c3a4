import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ngurra_api.config import Settings
from ngurra_api.config import settings as default_settings
from ngurra_api.db.session import shutdown
from ngurra_api.error_handlers import ErrorHandler, ErrorHandlerMiddleware, register_error_handlers
from ngurra_api.logging import get_logger
from ngurra_api.middleware import (
    RequestIDMiddleware,
    RequestSizeLimitMiddleware,
    StreamingSizeLimitMiddleware,
)
from ngurra_api.rate_limit import RateLimitMiddleware
from ngurra_api.routers import docs, health
from ngurra_api.size_limits import SizeLimitConfig, parse_size

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Code before yield runs on startup, after yield on shutdown (close DB pool)."""
    logger.info("startup", environment=app.state.settings.environment)
    yield
    await shutdown()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application around one immutable Settings instance.

    Middleware runs outermost first in this order:

        RequestIDMiddleware           correlation id, X-Request-ID
        ErrorHandlerMiddleware        any escaped exception -> error envelope
        RateLimitMiddleware           429 RATE_LIMITED
        RequestSizeLimitMiddleware    413 on declared Content-Length
        StreamingSizeLimitMiddleware  413 on streamed byte count

    Starlette wraps the most recently added middleware around the others, so
    they are added innermost first.
    """
    settings = settings or default_settings
    size_limits = SizeLimitConfig.from_settings(settings)
    error_handler = ErrorHandler(settings)

    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    app.add_middleware(
        StreamingSizeLimitMiddleware,
        max_size=parse_size(settings.stream_max_size),
        trusted_proxy_hops=settings.trusted_proxy_hops,
    )
    app.add_middleware(
        RequestSizeLimitMiddleware,
        limits=size_limits,
        trusted_proxy_hops=settings.trusted_proxy_hops,
    )
    app.add_middleware(RateLimitMiddleware, settings=settings)
    app.add_middleware(ErrorHandlerMiddleware, handler=error_handler)
    app.add_middleware(RequestIDMiddleware)

    register_error_handlers(app, error_handler)

    app.include_router(health.router)
    app.include_router(docs.router)
    return app


app = create_app()
