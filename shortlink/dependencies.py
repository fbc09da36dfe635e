"""Dependency injection with a per-application service manager.

This module provides a centralized way to inject the database session and the
shared, long-lived collaborators (click ingestor, link cache, edge cache purger,
rate limiters, code allocator, audit logger) into request handlers. One
``ServiceManager`` is built per application by ``create_app()`` and stored on
``app.state``, so several isolated apps (tests) can live in one process.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.allocator import CodeAllocator
from shortlink.audit import AuditAction, AuditLogger
from shortlink.cache import LinkCache, close_redis, create_redis
from shortlink.config import Settings
from shortlink.dispatcher import RedirectDispatcher
from shortlink.edge_cache import EdgeCachePurger
from shortlink.ingestion.ingestor import ClickEventIngestor
from shortlink.ingestion.log_watcher import LogWatcher
from shortlink.link_service import LinkService
from shortlink.rate_limit import FixedWindowRateLimiter, client_identity
from shortlink.stats import StatsService

__all__ = [
    "RequestContext",
    "ServiceManager",
    "configure_logging",
    "get_db",
    "get_dispatcher",
    "get_link_service",
    "get_request_context",
    "get_service_manager",
    "get_stats_service",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach the stream handler to the ``shortlink`` logger once."""
    logger = logging.getLogger("shortlink")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level.upper())
    return logger


# ============================================================================
# SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Holder for resources that outlive a single request.

    Everything that carries process state (the click queue, rate-limit tables,
    the Redis client) is created here and nowhere else.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[redis.Redis] = None,
        edge_purger: Optional[EdgeCachePurger] = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.logger = configure_logging(settings.LOG_LEVEL)
        self.ingestor = ClickEventIngestor.from_settings(session_factory, settings)
        self.allocator = CodeAllocator.from_settings(settings)
        self.audit = AuditLogger(enabled=settings.AUDIT_LOG_ENABLED)
        self.rate_limiters: dict[str, FixedWindowRateLimiter] = {
            "general": FixedWindowRateLimiter(settings.RATE_LIMIT_MAX, settings.RATE_LIMIT_WINDOW_SECONDS),
            "password": FixedWindowRateLimiter(settings.PASSWORD_RATE_LIMIT_MAX, settings.RATE_LIMIT_WINDOW_SECONDS),
        }
        self._owns_redis = redis_client is None
        self.redis_client = redis_client
        self.link_cache: Optional[LinkCache] = None
        if redis_client is not None:
            self.link_cache = LinkCache.from_settings(redis_client, settings)
        self._owns_edge_purger = edge_purger is None
        self.edge_purger = edge_purger
        self.watchers: list[LogWatcher] = []
        self._watcher_tasks: list[asyncio.Task] = []
        self._initialized = False

    async def initialize(self) -> None:
        """Start background work once at startup."""
        if self._initialized:
            return
        if self.redis_client is None and self.settings.REDIS_URL:
            self.redis_client = create_redis(self.settings.REDIS_URL)
            self.link_cache = LinkCache.from_settings(self.redis_client, self.settings)
        if self.edge_purger is None:
            self.edge_purger = EdgeCachePurger.from_settings(self.settings)
        await self.ingestor.start()
        if self.settings.LOG_WATCHER_ENABLED:
            self._start_watchers()
        self._initialized = True
        self.audit.record("system", AuditAction.SYSTEM_START, "success", details={"watchers": len(self.watchers)})
        self.logger.info(
            f"Services ready (cache={'on' if self.link_cache else 'off'}, "
            f"edge_purge={'on' if self.edge_purger else 'off'}, watchers={len(self.watchers)})"
        )

    def _start_watchers(self) -> None:
        for path in self.settings.LOG_WATCHER_SOURCES:
            watcher = LogWatcher.from_settings(path, self.ingestor, self.session_factory, self.settings)
            self.watchers.append(watcher)
            self._watcher_tasks.append(asyncio.create_task(watcher.run(), name=f"log-watcher:{path}"))

    async def cleanup(self) -> None:
        """Stop watchers, drain the click queue and release connections."""
        for task in self._watcher_tasks:
            task.cancel()
        await asyncio.gather(*self._watcher_tasks, return_exceptions=True)
        self._watcher_tasks.clear()
        self.watchers.clear()

        await self.ingestor.stop(drain=True, timeout=self.settings.CLICK_WRITE_BACKOFF_MAX_SECONDS)
        if self._owns_redis:
            await close_redis(self.redis_client)
            self.redis_client = None
            self.link_cache = None
        if self._owns_edge_purger and self.edge_purger is not None:
            await self.edge_purger.aclose()
            self.edge_purger = None
        self._initialized = False
        self.audit.record("system", AuditAction.SYSTEM_SHUTDOWN, "success")


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request context with tracking information.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Shared resources of the application
        request_id: Unique identifier for this request
        user_agent: Client user agent string
        client_ip: Client identity as used by the rate limiter
        start_time: Request start timestamp
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger carrying the request context."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
            },
        )

    def get_duration(self) -> float:
        """Request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


def get_service_manager(request: Request) -> ServiceManager:
    return request.app.state.services


async def get_db(
    manager: ServiceManager = Depends(get_service_manager),
) -> AsyncGenerator[AsyncSession, None]:
    async with manager.session_factory() as session:
        yield session


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
        user_agent=request.headers.get("user-agent"),
        client_ip=client_identity(request),
    )


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> LinkService:
    return LinkService.from_context(ctx)


def get_dispatcher(ctx: RequestContext = Depends(get_request_context)) -> RedirectDispatcher:
    return RedirectDispatcher.from_context(ctx)


def get_stats_service(db: AsyncSession = Depends(get_db)) -> StatsService:
    return StatsService(db)
