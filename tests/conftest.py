"""Shared pytest fixtures for API, database and ingestion tests."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from shortlink.app import create_app
from shortlink.config import Settings
from shortlink.database import build_engine, build_session_factory, init_db
from shortlink.dependencies import ServiceManager


def make_settings(database_url: str, **overrides) -> Settings:
    values = {
        "DATABASE_URL": database_url,
        "REDIS_URL": "",
        "LOG_WATCHER_ENABLED": False,
        "RATE_LIMIT_MAX": 1000,
        "PASSWORD_RATE_LIMIT_MAX": 1000,
        "CLICK_WRITE_BACKOFF_SECONDS": 0.01,
        "CLICK_WRITE_BACKOFF_MAX_SECONDS": 0.05,
        "AUDIT_LOG_ENABLED": False,
        "BASE_URL": "http://short.test",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return create_app(make_settings("sqlite+aiosqlite://"))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(f"sqlite+aiosqlite:///{tmp_path / 'shortlink.db'}")


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = build_engine(settings.DATABASE_URL)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[ServiceManager, None]:
    manager = ServiceManager(settings, session_factory)
    await manager.initialize()
    yield manager
    await manager.cleanup()


@pytest_asyncio.fixture
async def client(app: FastAPI, services: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
