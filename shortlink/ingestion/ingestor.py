"""In-process click event ingestion.

The redirect path must not wait on analytics writes, so click events travel
through a bounded ``asyncio.Queue`` and a single writer task persists them in
batches. The log watcher feeds the same queue with batches that also carry
its read cursor; the cursor is written in the same transaction as the events
it covers.

Pipeline
========
::
    ┌──────────────┐ submit()        ┌──────────────┐
    │  Dispatcher  │────────────────►│              │
    │  (inline)    │ non-blocking    │   bounded    │
    └──────────────┘                 │   asyncio    │
    ┌──────────────┐ enqueue(timeout)│   Queue      │
    │  LogWatcher  │────────────────►│              │
    │  (log_tail)  │ backpressure    └──────┬───────┘
    └──────────────┘                        ▼
                                     ┌──────────────┐
                                     │ writer task  │
                                     │ batch ≤ N    │
                                     └──────┬───────┘
                               fail?        │
                           ┌────────────────┴──┐
                           │ YES               │ NO
                           ▼                   ▼
                    ┌──────────────┐    ┌──────────────┐
                    │ backoff ×2,  │    │ events +     │
                    │ retry, then  │    │ cursor       │
                    │ drop + log   │    │ committed    │
                    └──────────────┘    └──────────────┘

Key Behaviours
===============
- submit() never blocks and never raises; a full queue drops the event.
- enqueue() waits for room up to a timeout so a reader can back off.
- Delivery is at-most-once per stored batch: a batch that keeps failing is dropped.
- stop(drain=True) refuses new work and writes everything already queued.
"""

import asyncio
import datetime
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.config import Settings
from shortlink.enums import EventSource, EventType
from shortlink.errors import IngestionError
from shortlink.models import ClickEvent, LogCursor
from shortlink.timeutils import utcnow

__all__ = [
    "ClickEventIn",
    "ClickEventIngestor",
    "CursorUpdate",
    "IngestBatch",
]

logger = logging.getLogger(__name__)

CLICK_EVENTS_ENQUEUED_TOTAL = Counter(
    "shortlink_click_events_enqueued_total",
    "Click events accepted into the ingestion queue",
    ["source"],
)
CLICK_EVENTS_DROPPED_TOTAL = Counter(
    "shortlink_click_events_dropped_total",
    "Click events dropped before reaching storage",
    ["reason"],
)
CLICK_EVENTS_WRITTEN_TOTAL = Counter(
    "shortlink_click_events_written_total",
    "Click events committed to storage",
)
CLICK_WRITE_FAILURES_TOTAL = Counter(
    "shortlink_click_write_failures_total",
    "Failed click event write attempts",
)
CLICK_QUEUE_DEPTH = Gauge(
    "shortlink_click_queue_depth",
    "Batches waiting in the click ingestion queue",
)


@dataclass(frozen=True)
class ClickEventIn:
    link_id: int
    event_type: str = EventType.LINK_CLICK.value
    occurred_at: datetime.datetime = field(default_factory=utcnow)
    user_agent: str | None = None
    source: str = EventSource.INLINE.value

    def to_model(self) -> ClickEvent:
        return ClickEvent(
            link_id=self.link_id,
            event_type=self.event_type,
            occurred_at=self.occurred_at,
            user_agent=self.user_agent,
            source=self.source,
        )


@dataclass(frozen=True)
class CursorUpdate:
    source: str
    inode: int
    offset: int
    fingerprint: str | None = None


@dataclass
class IngestBatch:
    events: list[ClickEventIn]
    cursor: CursorUpdate | None = None


class ClickEventIngestor:
    """Bounded queue plus a single persistence writer."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        maxsize: int = 10000,
        batch_size: int = 100,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._queue: asyncio.Queue[IngestBatch] = asyncio.Queue(maxsize=maxsize)
        self._batch_size = max(1, batch_size)
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._backoff_max = backoff_max_seconds
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._accepting = False

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> "ClickEventIngestor":
        return cls(
            session_factory,
            maxsize=settings.CLICK_QUEUE_MAXSIZE,
            batch_size=settings.CLICK_WRITER_BATCH_SIZE,
            max_attempts=settings.CLICK_WRITE_MAX_ATTEMPTS,
            backoff_seconds=settings.CLICK_WRITE_BACKOFF_SECONDS,
            backoff_max_seconds=settings.CLICK_WRITE_BACKOFF_MAX_SECONDS,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    # ========================================================================
    # PRODUCERS
    # ========================================================================

    def submit(self, event: ClickEventIn) -> bool:
        """Queue one event without waiting. Returns False if it was dropped."""
        if not self._accepting:
            CLICK_EVENTS_DROPPED_TOTAL.labels(reason="stopped").inc()
            logger.warning(f"Ingestor not accepting events, dropped click for link {event.link_id}")
            return False
        try:
            self._queue.put_nowait(IngestBatch(events=[event]))
        except asyncio.QueueFull:
            CLICK_EVENTS_DROPPED_TOTAL.labels(reason="queue_full").inc()
            logger.warning(f"Click queue full, dropped click for link {event.link_id}")
            return False
        CLICK_EVENTS_ENQUEUED_TOTAL.labels(source=event.source).inc()
        CLICK_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    async def enqueue(self, batch: IngestBatch, timeout: float | None = None) -> bool:
        """Queue a batch, waiting up to *timeout* seconds for room."""
        if not self._accepting:
            return False
        try:
            await asyncio.wait_for(self._queue.put(batch), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Click queue still full after {timeout}s, batch of {len(batch.events)} not queued")
            return False
        for event in batch.events:
            CLICK_EVENTS_ENQUEUED_TOTAL.labels(source=event.source).inc()
        CLICK_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        if self.running:
            return
        self._accepting = True
        self._task = asyncio.create_task(self._run(), name="click-event-writer")
        logger.info("Click event writer started")

    async def join(self) -> None:
        """Wait until every batch queued so far has been written or dropped."""
        await self._queue.join()

    async def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        self._accepting = False
        if self._task is None:
            return
        if drain and self.running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Click queue drain timed out with {self.depth} batches left")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Click event writer stopped")

    # ========================================================================
    # WRITER
    # ========================================================================

    async def _run(self) -> None:
        while True:
            items = [await self._queue.get()]
            while len(items) < self._batch_size:
                try:
                    items.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                await self._write_with_retry(items)
            except IngestionError as exc:
                logger.error(f"Dropping click batch: {exc}")
            finally:
                for _ in items:
                    self._queue.task_done()
                CLICK_QUEUE_DEPTH.set(self._queue.qsize())

    async def _write_with_retry(self, items: list[IngestBatch]) -> None:
        delay = self._backoff
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._write(items)
                return
            except Exception as exc:
                CLICK_WRITE_FAILURES_TOTAL.inc()
                logger.warning(
                    f"Click write attempt {attempt}/{self._max_attempts} failed: {exc}",
                    exc_info=True,
                )
            if attempt < self._max_attempts:
                await self._sleep(delay)
                delay = min(delay * 2, self._backoff_max)

        dropped = sum(len(item.events) for item in items)
        CLICK_EVENTS_DROPPED_TOTAL.labels(reason="write_failed").inc(dropped)
        raise IngestionError(f"gave up writing {dropped} click events after {self._max_attempts} attempts")

    async def _write(self, items: list[IngestBatch]) -> None:
        events = [event.to_model() for item in items for event in item.events]
        cursors: dict[str, CursorUpdate] = {}
        for item in items:
            if item.cursor is not None:
                cursors[item.cursor.source] = item.cursor

        async with self._session_factory() as session:
            session.add_all(events)
            for cursor in cursors.values():
                await _upsert_cursor(session, cursor)
            await session.commit()

        CLICK_EVENTS_WRITTEN_TOTAL.inc(len(events))
        if events:
            logger.debug(f"Wrote {len(events)} click events")


async def _upsert_cursor(session: AsyncSession, cursor: CursorUpdate) -> None:
    row = await session.get(LogCursor, cursor.source)
    if row is None:
        session.add(
            LogCursor(
                source=cursor.source,
                inode=cursor.inode,
                offset=cursor.offset,
                fingerprint=cursor.fingerprint,
            )
        )
    else:
        row.inode = cursor.inode
        row.offset = cursor.offset
        row.fingerprint = cursor.fingerprint
        row.updated_at = utcnow()
