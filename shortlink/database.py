"""Database configuration and lifecycle for the short-link service.

This module provides SQLAlchemy async engine setup, session factories,
and database lifecycle operations. PostgreSQL (asyncpg) is the production
backend; SQLite (aiosqlite) is accepted for local runs and tests.

Flow Diagram — Database Operations
=================================
::
    ┌─────────────┐
    │  Application│
    │  Request    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ get_db()    │
    │ dependency  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ session from│
    │ the app's   │
    │ factory     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Yield to    │
    │ request     │
    │ handler     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Auto-close  │
    │ (async with)│
    └─────────────┘

How to Use
===========
**Step 1 — Initialize on startup**::
    await init_db(engine)  # Creates tables

**Step 2 — Use in FastAPI endpoints** (``get_db`` lives in ``shortlink.dependencies``)::
    @router.get("/links")
    async def get_links(db: AsyncSession = Depends(get_db)):
        result = await db.execute(select(ShortLink))
        return result.scalars().all()

**Step 3 — Background writers open their own sessions**::
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()

**Step 4 — Cleanup on shutdown**::
    await close_db(engine)

Key Behaviours
===============
- Connection pooling is configured for PostgreSQL workloads only.
- Tables are created automatically on application startup.
- Engine is properly disposed on application shutdown.
- The module-level engine follows get_settings(); tests build their own.

Classes:
    Base:  SQLAlchemy declarative base for all models.

Functions:
    build_engine():  Creates an async engine for a database URL.
    build_session_factory():  Creates a session factory bound to an engine.
    init_db():  Creates all tables on startup.
    close_db():  Disposes the engine on shutdown.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from shortlink.config import get_settings

__all__ = [
    "Base",
    "async_session",
    "build_engine",
    "build_session_factory",
    "close_db",
    "engine",
    "init_db",
]

settings = get_settings()


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(database_url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
async_session = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    # Import for side effect: registers the tables on Base.metadata.
    from shortlink import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: AsyncEngine | None = None) -> None:
    await (bind or engine).dispose()
