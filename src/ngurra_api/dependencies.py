"""Request-scoped dependencies for routers.

DB             per-request AsyncSession
AppSettings    the Settings instance create_app was built with
CurrentUserId  bearer token subject; 401 without a valid token
Pagination     page / pageSize query parameters
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ngurra_api.config import Settings
from ngurra_api.db.session import get_db
from ngurra_api.exceptions import Errors
from ngurra_api.security import bearer_token, decode_access_token

DB = Annotated[AsyncSession, Depends(get_db)]


def get_settings(request: Request) -> Settings:
    """The Settings instance the app was built with (see create_app)."""
    return request.app.state.settings


AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_current_user_id(request: Request, settings: AppSettings) -> str:
    """Require a bearer token and return its subject.

    A bad or expired token raises JWTError, which the error handler turns
    into 401 "Invalid or expired token". The id is kept on request.state so
    error logs can name the user.
    """
    token = bearer_token(request)
    if token is None:
        raise Errors.unauthorized()
    user_id = decode_access_token(token, settings)
    request.state.user_id = user_id
    return user_id


CurrentUserId = Annotated[str, Depends(get_current_user_id)]


@dataclass(frozen=True)
class PageParams:
    page: int
    page_size: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def get_page_params(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
) -> PageParams:
    return PageParams(page=page, page_size=page_size)


Pagination = Annotated[PageParams, Depends(get_page_params)]
