from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio
from fastapi import APIRouter, FastAPI, Request
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, NoResultFound

from ngurra_api.config import Settings
from ngurra_api.dependencies import CurrentUserId
from ngurra_api.exceptions import Errors
from ngurra_api.main import create_app
from ngurra_api.schemas.envelope import build_success
from ngurra_api.schemas.pagination import build_paginated

TEST_JWT_SECRET = "test-secret"


class UniqueConstraintViolation(Exception):
    """Shape of an ORM error signalling a duplicate key (code + meta.target)."""

    def __init__(self, target: list[str]) -> None:
        super().__init__("Unique constraint failed")
        self.code = "P2002"
        self.meta = {"target": target}


class LoginRequest(BaseModel):
    email: str
    password: str


class MentorProfile(BaseModel):
    name: str
    years_experience: int


class ForumPost(BaseModel):
    title: str
    body: str


def build_stub_router() -> APIRouter:
    """Stand-in business routes that exercise the boundary layer."""
    router = APIRouter()

    @router.post("/api/auth/login")
    async def login(payload: LoginRequest, request: Request) -> dict[str, Any]:
        request.app.state.calls["login"] += 1
        return build_success({"email": payload.email})

    @router.post("/api/files/upload")
    async def upload(request: Request) -> dict[str, Any]:
        body = await request.body()
        request.app.state.calls["upload"] += 1
        return build_success({"received": len(body)})

    @router.post("/api/forum/posts")
    async def create_post(post: ForumPost) -> dict[str, Any]:
        return build_success(post.model_dump())

    @router.post("/api/echo")
    async def echo(request: Request) -> dict[str, Any]:
        body = await request.body()
        request.app.state.calls["echo"] += 1
        return build_success({"received": len(body)})

    @router.get("/stub/ok")
    async def ok() -> dict[str, Any]:
        return build_success({"ok": True})

    @router.get("/stub/page")
    async def page() -> dict[str, Any]:
        return build_paginated(["a", "b"], total=5, page=1, page_size=2)

    @router.get("/stub/boom")
    async def boom() -> None:
        raise RuntimeError("connection to db-internal-7 refused")

    @router.get("/stub/not-found")
    async def not_found() -> None:
        raise Errors.not_found("Mentor")

    @router.get("/stub/unique")
    async def unique() -> None:
        raise UniqueConstraintViolation(["email"])

    @router.get("/stub/integrity")
    async def integrity() -> None:
        raise IntegrityError(
            "INSERT INTO members (email) VALUES (?)",
            {},
            Exception("UNIQUE constraint failed: members.email"),
        )

    @router.get("/stub/no-row")
    async def no_row() -> None:
        raise NoResultFound("No row was found when one was required")

    @router.get("/stub/validation")
    async def validation() -> None:
        MentorProfile.model_validate({"name": "Aunty June", "years_experience": "lots"})

    @router.get("/stub/retry")
    async def retry() -> None:
        raise Errors.rate_limited(retry_after=42)

    @router.get("/stub/me")
    async def me(user_id: CurrentUserId) -> dict[str, Any]:
        return build_success({"userId": user_id})

    @router.get("/stub/me/boom")
    async def me_boom(user_id: CurrentUserId) -> None:
        raise RuntimeError(f"profile lookup failed for {user_id}")

    return router


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "environment": "test",
        "jwt_secret": TEST_JWT_SECRET,
        "rate_limit_enabled": False,
        "stream_max_size": "64kb",
    }
    values.update(overrides)
    return Settings(**values)


def build_app(settings: Settings) -> FastAPI:
    app = create_app(settings)
    app.state.calls = {"login": 0, "upload": 0, "echo": 0}
    app.include_router(build_stub_router())
    return app


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    return build_app(settings)


@pytest.fixture
def app_factory() -> Callable[..., FastAPI]:
    """Build a stub app with settings overrides, e.g. ``app_factory(environment="production")``."""

    def _build(**overrides: Any) -> FastAPI:
        return build_app(make_settings(**overrides))

    return _build


@pytest.fixture
def client_for() -> Callable[[FastAPI], AsyncClient]:
    """Client for an app built inside the test; use as ``async with client_for(app) as c``."""

    def _client(app: FastAPI) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return _client


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
