"""Redirect dispatch: resolve a short code to its target.

A resolution walks a fixed sequence of checks and stops at the first one
that fails. Only a successful resolution produces a click event, and the
event is handed to the ingestor without waiting for storage.

Resolution State Machine
========================
::
    ┌─────────────┐
    │ lookup code │──── unknown ─────────────► 404 LinkNotFoundError
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ is_active?  │──── no ──────────────────► 410 LinkInactiveError
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ expired?    │──── now > expires_at ────► 410 LinkExpiredError
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ protected?  │──── no credential ───────► 401 PasswordRequiredError
    │             │──── wrong credential ────► 403 InvalidPasswordError
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ submit event│  qr_scan if the QR marker is set, else link_click
    │ (no await)  │
    └──────┬──────┘
           ▼
      Resolution(target_url)

How to Use
===========
::
    dispatcher = RedirectDispatcher.from_context(ctx)
    resolution = await dispatcher.resolve("abc123", qr=True, user_agent=ua)
    return RedirectResponse(resolution.target_url, status_code=302)

Key Behaviours
===============
- target_url is never part of an error response.
- Lookups use the Redis link cache when one is configured.
- Cached snapshots never hold the password hash; it is read from the
  database only for protected links.
- A dropped click event is logged and counted, never surfaced to the caller.
"""

import datetime
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from prometheus_client import Counter, Histogram
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from shortlink.cache import CachedLink, LinkCache
from shortlink.enums import EventType, RedirectOutcome
from shortlink.errors import (
    InvalidPasswordError,
    LinkExpiredError,
    LinkInactiveError,
    LinkNotFoundError,
    PasswordRequiredError,
    ValidationError,
)
from shortlink.ingestion.ingestor import ClickEventIn, ClickEventIngestor
from shortlink.models import ShortLink
from shortlink.passwords import verify_password
from shortlink.timeutils import as_utc, utcnow

if TYPE_CHECKING:
    from shortlink.dependencies import RequestContext

__all__ = ["RedirectDispatcher", "Resolution", "is_qr_marker"]

logger = logging.getLogger(__name__)

REDIRECT_OUTCOMES_TOTAL = Counter(
    "shortlink_redirect_outcomes_total",
    "Redirect resolutions by terminal outcome",
    ["outcome"],
)
AD_EVENTS_TOTAL = Counter(
    "shortlink_ad_events_total",
    "Recorded ad interactions",
    ["event_type"],
)
LINK_LOOKUP_DURATION = Histogram(
    "shortlink_link_lookup_duration_seconds",
    "Time taken to load a link for resolution",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)

QR_MARKER_VALUES = frozenset({"1", "true"})
AD_EVENT_TYPES = frozenset({EventType.AD_VIEW.value, EventType.AD_CLICK.value})

LinkState = Union[CachedLink, ShortLink]


def is_qr_marker(value: str | None) -> bool:
    return value is not None and value.strip().lower() in QR_MARKER_VALUES


@dataclass(frozen=True)
class Resolution:
    link_id: int
    code: str
    target_url: str
    event_type: str


class RedirectDispatcher:
    def __init__(
        self,
        session: AsyncSession,
        ingestor: ClickEventIngestor,
        cache: LinkCache | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
        logger: logging.Logger | logging.LoggerAdapter = logger,
    ) -> None:
        self._db = session
        self._ingestor = ingestor
        self._cache = cache
        self._clock = clock
        self._logger = logger

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "RedirectDispatcher":
        return cls(
            ctx.database,
            ctx.service_manager.ingestor,
            cache=ctx.service_manager.link_cache,
            logger=ctx.logger,
        )

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def resolve(
        self,
        code: str,
        password: str | None = None,
        qr: bool = False,
        user_agent: str | None = None,
    ) -> Resolution:
        """Resolve *code* and record a click event on success.

        Raises:
            LinkNotFoundError, LinkInactiveError, LinkExpiredError,
            PasswordRequiredError, InvalidPasswordError
        """
        link = await self._load_resolvable(code)

        password_hash = await self._password_hash(link) if link.password_protected else None
        if password_hash is not None:
            if not password:
                REDIRECT_OUTCOMES_TOTAL.labels(outcome=RedirectOutcome.PASSWORD_REQUIRED).inc()
                raise PasswordRequiredError("This link is password protected")
            if not await run_in_threadpool(verify_password, password, password_hash):
                REDIRECT_OUTCOMES_TOTAL.labels(outcome=RedirectOutcome.INVALID_PASSWORD).inc()
                self._logger.info(f"Invalid password for {code}")
                raise InvalidPasswordError("Incorrect password")

        event_type = EventType.QR_SCAN if qr else EventType.LINK_CLICK
        self._record(link, event_type, user_agent)
        REDIRECT_OUTCOMES_TOTAL.labels(outcome=RedirectOutcome.SUCCESS).inc()
        return Resolution(
            link_id=link.id,
            code=link.code,
            target_url=link.target_url,
            event_type=event_type.value,
        )

    async def record_ad_event(
        self,
        code: str,
        event_type: str,
        user_agent: str | None = None,
    ) -> Resolution:
        """Record an ad view or ad click against a resolvable link."""
        if event_type not in AD_EVENT_TYPES:
            raise ValidationError(f"Unsupported ad event type '{event_type}'", field="event_type")
        link = await self._load_resolvable(code)
        self._record(link, EventType(event_type), user_agent)
        AD_EVENTS_TOTAL.labels(event_type=event_type).inc()
        return Resolution(link_id=link.id, code=link.code, target_url=link.target_url, event_type=event_type)

    # ========================================================================
    # PRIVATE HELPERS
    # ========================================================================

    async def _load_resolvable(self, code: str) -> LinkState:
        link = await self._lookup(code)
        if link is None:
            REDIRECT_OUTCOMES_TOTAL.labels(outcome=RedirectOutcome.NOT_FOUND).inc()
            raise LinkNotFoundError(code)
        if not link.is_active:
            REDIRECT_OUTCOMES_TOTAL.labels(outcome=RedirectOutcome.INACTIVE).inc()
            raise LinkInactiveError(code)
        expires_at = as_utc(link.expires_at)
        if expires_at is not None and self._clock() > expires_at:
            REDIRECT_OUTCOMES_TOTAL.labels(outcome=RedirectOutcome.EXPIRED).inc()
            raise LinkExpiredError(code, expires_at=expires_at.isoformat())
        return link

    async def _lookup(self, code: str) -> LinkState | None:
        start_time = time.perf_counter()
        try:
            if self._cache is not None:
                cached = await self._cache.get(code)
                if cached is not None:
                    return cached

            result = await self._db.execute(select(ShortLink).where(ShortLink.code == code))
            link = result.scalar_one_or_none()
            if link is not None and self._cache is not None:
                await self._cache.set(CachedLink.from_model(link))
            return link
        finally:
            LINK_LOOKUP_DURATION.observe(time.perf_counter() - start_time)

    async def _password_hash(self, link: LinkState) -> str | None:
        if isinstance(link, ShortLink):
            return link.password_hash
        return await self._db.scalar(select(ShortLink.password_hash).where(ShortLink.id == link.id))

    def _record(self, link: LinkState, event_type: EventType, user_agent: str | None) -> None:
        event = ClickEventIn(
            link_id=link.id,
            event_type=event_type.value,
            occurred_at=self._clock(),
            user_agent=user_agent,
        )
        if not self._ingestor.submit(event):
            self._logger.warning(f"Click event for {link.code} was not recorded")
