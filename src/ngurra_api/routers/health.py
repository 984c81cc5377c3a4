"""Health endpoints for load balancers and container orchestrators."""

import time
from typing import Any

from fastapi import APIRouter, Request
from sqlalchemy.exc import SQLAlchemyError

from ngurra_api.db.session import ping
from ngurra_api.dependencies import DB, AppSettings
from ngurra_api.exceptions import Errors
from ngurra_api.logging import get_logger
from ngurra_api.schemas.envelope import build_success

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(db: DB, settings: AppSettings) -> dict[str, Any]:
    """Readiness: 200 only if the database answers a ping, 503 otherwise."""
    try:
        await ping(db)
    except (SQLAlchemyError, OSError) as exc:
        logger.error("database_unreachable", error=str(exc))
        raise Errors.service_unavailable("Database unavailable", retry_after=30) from exc
    return build_success({"status": "ok", "environment": settings.environment})


@router.get("/health/live")
async def live(request: Request) -> dict[str, Any]:
    """Liveness: no I/O, answers as long as the event loop does."""
    uptime = time.monotonic() - request.app.state.started_at
    return build_success({"alive": True, "uptime": round(uptime, 3)})
