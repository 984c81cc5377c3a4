"""Integration tests for tiered rate limiting."""

from collections.abc import Callable
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import AsyncClient

from ngurra_api.middleware import REQUEST_ID_HEADER
from ngurra_api.security import create_access_token


def limited_app(app_factory: Callable[..., FastAPI], **overrides: Any) -> FastAPI:
    values: dict[str, Any] = {
        "rate_limit_enabled": True,
        "rate_limit_whitelist": [],
        "rate_limit_anonymous": "2 per minute",
    }
    values.update(overrides)
    return app_factory(**values)


@pytest.mark.asyncio
async def test_anonymous_limit(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    async with client_for(limited_app(app_factory)) as client:
        first = await client.get("/stub/ok")
        second = await client.get("/stub/ok")
        third = await client.get("/stub/ok")

    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert int(first.headers["X-RateLimit-Reset"]) > 0
    assert second.headers["X-RateLimit-Remaining"] == "0"

    assert third.status_code == 429
    body = third.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["error"] == "Rate limit exceeded. Please try again later."
    assert 1 <= int(third.headers["Retry-After"]) <= 60
    assert third.headers[REQUEST_ID_HEADER] == body["requestId"]


@pytest.mark.asyncio
async def test_health_is_never_limited(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    async with client_for(limited_app(app_factory)) as client:
        statuses = [(await client.get("/health/live")).status_code for _ in range(5)]
    assert statuses == [200] * 5


@pytest.mark.asyncio
async def test_whitelisted_ip_is_never_limited(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    app = limited_app(app_factory, rate_limit_whitelist=["203.0.113.50"])
    headers = {"X-Forwarded-For": "203.0.113.50"}
    async with client_for(app) as client:
        statuses = [(await client.get("/stub/ok", headers=headers)).status_code for _ in range(4)]
    assert statuses == [200] * 4


@pytest.mark.asyncio
async def test_clients_are_limited_separately(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    app = limited_app(app_factory, rate_limit_anonymous="1 per minute")
    async with client_for(app) as client:
        first = await client.get("/stub/ok", headers={"X-Forwarded-For": "198.51.100.1"})
        repeat = await client.get("/stub/ok", headers={"X-Forwarded-For": "198.51.100.1"})
        other = await client.get("/stub/ok", headers={"X-Forwarded-For": "198.51.100.2"})
    assert first.status_code == 200
    assert repeat.status_code == 429
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_login_endpoint_limit(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    app = limited_app(app_factory, rate_limit_anonymous="100 per minute")
    credentials = {"email": "a@b.c", "password": "pw"}
    async with client_for(app) as client:
        statuses = [
            (await client.post("/api/auth/login", json=credentials)).status_code for _ in range(6)
        ]
    assert statuses == [200] * 5 + [429]
    assert app.state.calls["login"] == 5


@pytest.mark.asyncio
async def test_authenticated_users_get_their_own_tier(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    app = limited_app(
        app_factory,
        rate_limit_anonymous="1 per minute",
        rate_limit_authenticated="3 per minute",
    )
    token = create_access_token("user-7", app.state.settings)
    headers = {"Authorization": f"Bearer {token}"}
    async with client_for(app) as client:
        statuses = [(await client.get("/stub/me", headers=headers)).status_code for _ in range(4)]
        anonymous = await client.get("/stub/ok")
    assert statuses == [200, 200, 200, 429]
    assert anonymous.status_code == 200


@pytest.mark.asyncio
async def test_disabled_limiter_adds_no_headers(client: AsyncClient) -> None:
    resp = await client.get("/stub/ok")
    assert resp.status_code == 200
    assert "X-RateLimit-Limit" not in resp.headers


@pytest.mark.asyncio
async def test_spoofed_loopback_forwarding_is_still_limited(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    app = limited_app(app_factory, rate_limit_whitelist=["127.0.0.1", "::1"])
    # client-written loopback entry, then the address our proxy appended
    headers = {"X-Forwarded-For": "127.0.0.1, 198.51.100.7"}
    async with client_for(app) as client:
        statuses = [(await client.get("/stub/ok", headers=headers)).status_code for _ in range(3)]
    assert statuses == [200, 200, 429]


@pytest.mark.asyncio
async def test_rotating_client_written_entries_share_one_bucket(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    app = limited_app(app_factory)
    async with client_for(app) as client:
        statuses = [
            (
                await client.get(
                    "/stub/ok", headers={"X-Forwarded-For": f"10.9.9.{n}, 198.51.100.7"}
                )
            ).status_code
            for n in range(3)
        ]
    assert statuses == [200, 200, 429]


@pytest.mark.asyncio
async def test_forwarding_header_ignored_without_trusted_proxies(
    app_factory: Callable[..., FastAPI],
    client_for: Callable[[FastAPI], AsyncClient],
) -> None:
    app = limited_app(app_factory, rate_limit_anonymous="1 per minute", trusted_proxy_hops=0)
    async with client_for(app) as client:
        first = await client.get("/stub/ok", headers={"X-Forwarded-For": "198.51.100.1"})
        second = await client.get("/stub/ok", headers={"X-Forwarded-For": "198.51.100.2"})
    assert first.status_code == 200
    assert second.status_code == 429
