"""FastAPI application factory for the short-link service.

This module builds the FastAPI application with middleware, lifecycle
management, error handlers and route registration.

Application Lifecycle Diagram
=============================
::
    ┌──────────────┐
    │  uvicorn     │
    │  startup     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ create_app() │
    │ + services   │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ CORS, error  │
    │ handlers,    │
    │ routes,      │
    │ /metrics     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ startup:     │
    │ init_db()    │
    │ writer task  │
    │ log watchers │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │
    │ requests     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ shutdown:    │
    │ drain clicks │
    │ close_db()   │
    └──────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn shortlink.main:app --host 0.0.0.0 --port 8000

**Step 2 — Make API calls**::
    curl -X POST http://localhost:8000/api/urls \\
         -H "Content-Type: application/json" \\
         -d '{"url": "https://example.com"}'

    curl -i http://localhost:8000/s/<code>

**Step 3 — Build an isolated app (tests)**::
    app = create_app(Settings(DATABASE_URL="sqlite+aiosqlite:///./test.db"))

Key Behaviours
===============
- Database tables are created automatically on startup.
- The click writer drains queued events before the process exits.
- Log watchers run only when LOG_WATCHER_ENABLED is set.
- Prometheus HTTP metrics and the service's own counters are served at /metrics.
"""

__all__ = ["create_app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from shortlink import database
from shortlink.config import Settings, get_settings
from shortlink.dependencies import ServiceManager
from shortlink.errors import register_error_handlers
from shortlink.routes import router


def create_app(settings: Settings | None = None, services: ServiceManager | None = None) -> FastAPI:
    settings = settings or get_settings()
    if services is not None:
        engine = None
    elif settings.DATABASE_URL == database.settings.DATABASE_URL:
        engine = database.engine
        services = ServiceManager(settings, database.async_session)
    else:
        engine = database.build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        services = ServiceManager(settings, database.build_session_factory(engine))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        await database.init_db(engine or services.session_factory.kw["bind"])
        await services.initialize()
        yield
        # Shutdown
        await services.cleanup()
        if engine is not None:
            await database.close_db(engine)

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="Short-link resolution and click analytics API",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        should_respect_env_var=False,
    ).instrument(app).expose(app, include_in_schema=False)

    app.include_router(router)
    return app

