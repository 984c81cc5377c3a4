"""Published API reference data: the error-code catalogue clients code against."""

from typing import Any

from fastapi import APIRouter

from ngurra_api.dependencies import Pagination
from ngurra_api.exceptions import ErrorKind, Errors, default_message, status_for
from ngurra_api.schemas.catalog import ErrorCodeInfo
from ngurra_api.schemas.envelope import build_success
from ngurra_api.schemas.pagination import Paginated, build_paginated

router = APIRouter(prefix="/api/docs", tags=["docs"])


def describe(kind: ErrorKind) -> ErrorCodeInfo:
    return ErrorCodeInfo(code=kind, status=status_for(kind), default_message=default_message(kind))


def error_catalogue(offset: int, limit: int) -> Paginated[ErrorCodeInfo]:
    kinds = list(ErrorKind)
    items = [describe(kind) for kind in kinds[offset : offset + limit]]
    page = offset // limit + 1 if limit > 0 else 1
    return Paginated(items=items, total=len(kinds), page=page, page_size=limit)


@router.get("/errors")
async def list_error_codes(pagination: Pagination) -> dict[str, Any]:
    """Every error code with its HTTP status and default message, paginated."""
    result = error_catalogue(pagination.offset, pagination.page_size)
    return build_paginated(result.items, result.total, result.page, result.page_size)


@router.get("/errors/{code}")
async def get_error_code(code: str) -> dict[str, Any]:
    try:
        kind = ErrorKind(code.upper())
    except ValueError:
        raise Errors.not_found("Error code") from None
    return build_success(describe(kind))
