"""Edge proxy cache purge tests."""

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.config import Settings
from shortlink.dependencies import ServiceManager
from shortlink.edge_cache import EdgeCachePurger

PURGE_URL = "http://edge.test/purge/s/{code}"


def _purger(handler) -> EdgeCachePurger:
    return EdgeCachePurger(PURGE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_url_for_substitutes_code_or_appends_it() -> None:
    assert _purger(lambda request: httpx.Response(200)).url_for("abc123") == "http://edge.test/purge/s/abc123"
    assert EdgeCachePurger("http://edge.test/purge/s/").url_for("abc123") == "http://edge.test/purge/s/abc123"


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [(200, True), (204, True), (404, True), (403, False), (500, False)])
async def test_purge_result_by_status(status: int, expected: bool) -> None:
    purger = _purger(lambda request: httpx.Response(status))
    try:
        assert await purger.purge("abc123") is expected
    finally:
        await purger.aclose()


@pytest.mark.asyncio
async def test_purge_swallows_transport_errors() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    purger = _purger(refuse)
    try:
        assert await purger.purge("abc123") is False
    finally:
        await purger.aclose()


def test_from_settings_is_disabled_without_url(settings: Settings) -> None:
    assert EdgeCachePurger.from_settings(settings) is None


@pytest.mark.asyncio
async def test_management_writes_purge_edge_cache(
    app: FastAPI,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    purged: list[str] = []

    def record(request: httpx.Request) -> httpx.Response:
        purged.append(request.url.path)
        return httpx.Response(200)

    manager = ServiceManager(settings, session_factory, edge_purger=_purger(record))
    await manager.initialize()
    app.state.services = manager
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            link = (await client.post("/api/urls", json={"url": "https://example.com/a"})).json()
            created_purges = list(purged)

            await client.put(f"/api/urls/{link['id']}", json={"is_active": False})
            await client.delete(f"/api/urls/{link['id']}")
    finally:
        await manager.cleanup()
        await manager.edge_purger.aclose()

    assert created_purges == []
    assert purged == [f"/purge/s/{link['code']}", f"/purge/s/{link['code']}"]


@pytest.mark.asyncio
async def test_failed_purge_does_not_fail_update(
    app: FastAPI,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    manager = ServiceManager(settings, session_factory, edge_purger=_purger(lambda request: httpx.Response(502)))
    await manager.initialize()
    app.state.services = manager
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            link = (await client.post("/api/urls", json={"url": "https://example.com/b"})).json()
            response = await client.put(f"/api/urls/{link['id']}", json={"url": "https://example.com/c"})
    finally:
        await manager.cleanup()
        await manager.edge_purger.aclose()

    assert response.status_code == 200
    assert response.json()["target_url"] == "https://example.com/c"
