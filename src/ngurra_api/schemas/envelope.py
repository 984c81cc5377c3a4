"""Response envelope schemas and builders.

Every endpoint answers with one of two shapes:

    {"success": true, "data": ..., "meta": {...}}
    {"success": false, "error": "...", "code": "NOT_FOUND", "details": ...,
     "timestamp": "2026-01-01T00:00:00+00:00", "requestId": "req_..."}

Routers call build_success / build_paginated; only the global error handler
calls build_error.
"""

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ngurra_api.exceptions import ApiError, ErrorKind

T = TypeVar("T")


class ApiSchema(BaseModel):
    """Base for wire models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SuccessEnvelope(ApiSchema, Generic[T]):
    success: bool = True
    data: T
    meta: dict[str, Any] | None = None


class ErrorEnvelope(ApiSchema):
    success: bool = False
    error: str
    code: ErrorKind
    details: Any = None
    timestamp: str
    request_id: str | None = None


def build_success(data: Any, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    """Wrap ``data`` in the success envelope. The payload is not inspected."""
    envelope = SuccessEnvelope[Any](data=data, meta=meta)
    # data may legitimately be None, so only meta is dropped when absent
    exclude = {"meta"} if meta is None else None
    return envelope.model_dump(mode="json", by_alias=True, exclude=exclude)


def build_error(error: ApiError, request_id: str | None = None) -> dict[str, Any]:
    """Serialize an ApiError. The timestamp is taken now, at send time."""
    envelope = ErrorEnvelope(
        error=error.message,
        code=error.code,
        details=error.details,
        timestamp=datetime.now(UTC).isoformat(),
        request_id=request_id,
    )
    exclude = {name for name in ("details", "request_id") if getattr(envelope, name) is None}
    return envelope.model_dump(mode="json", by_alias=True, exclude=exclude)
