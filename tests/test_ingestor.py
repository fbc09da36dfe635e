"""Click event ingestor tests."""

import asyncio
import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.ingestion.ingestor import ClickEventIn, ClickEventIngestor, CursorUpdate, IngestBatch
from shortlink.models import ClickEvent, LogCursor


async def _no_sleep(delay: float) -> None:
    return None


class UnavailableSession:
    async def __aenter__(self) -> AsyncSession:
        raise RuntimeError("database unavailable")

    async def __aexit__(self, *exc_info) -> None:
        return None


class FailingSessionFactory:
    """Session factory whose first *failures* sessions cannot be opened."""

    def __init__(self, real: async_sessionmaker[AsyncSession], failures: int) -> None:
        self._real = real
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            return UnavailableSession()
        return self._real()


async def _count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count(ClickEvent.id)))


@pytest.mark.asyncio
async def test_submitted_events_are_written(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory, batch_size=10)
    await ingestor.start()
    try:
        when = datetime.datetime(2024, 6, 1, 12, tzinfo=datetime.timezone.utc)
        for link_id in (1, 2, 3):
            assert ingestor.submit(ClickEventIn(link_id=link_id, occurred_at=when, user_agent="ua"))
        await ingestor.join()
    finally:
        await ingestor.stop()

    async with session_factory() as session:
        rows = (await session.execute(select(ClickEvent).order_by(ClickEvent.link_id))).scalars().all()
    assert [row.link_id for row in rows] == [1, 2, 3]
    assert all(row.event_type == "link_click" and row.source == "inline" for row in rows)


@pytest.mark.asyncio
async def test_submit_refused_before_start(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory)
    assert ingestor.submit(ClickEventIn(link_id=1)) is False
    assert await ingestor.enqueue(IngestBatch(events=[ClickEventIn(link_id=1)])) is False


@pytest.mark.asyncio
async def test_submit_drops_when_queue_full(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory, maxsize=2)
    ingestor._accepting = True

    results = [ingestor.submit(ClickEventIn(link_id=i)) for i in range(3)]

    assert results == [True, True, False]
    assert ingestor.depth == 2


@pytest.mark.asyncio
async def test_enqueue_times_out_when_queue_full(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory, maxsize=1)
    ingestor._accepting = True
    assert await ingestor.enqueue(IngestBatch(events=[]), timeout=0.05)
    assert await ingestor.enqueue(IngestBatch(events=[]), timeout=0.05) is False


@pytest.mark.asyncio
async def test_cursor_is_committed_with_its_events(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory)
    await ingestor.start()
    try:
        first = IngestBatch(
            events=[ClickEventIn(link_id=5, source="log_tail")],
            cursor=CursorUpdate(source="/var/log/edge.log", inode=11, offset=120),
        )
        second = IngestBatch(events=[], cursor=CursorUpdate(source="/var/log/edge.log", inode=11, offset=300))
        assert await ingestor.enqueue(first)
        await ingestor.join()
        assert await ingestor.enqueue(second)
        await ingestor.join()
    finally:
        await ingestor.stop()

    async with session_factory() as session:
        cursor = await session.get(LogCursor, "/var/log/edge.log")
    assert (cursor.inode, cursor.offset) == (11, 300)
    assert await _count(session_factory) == 1


@pytest.mark.asyncio
async def test_failed_write_is_retried(session_factory: async_sessionmaker[AsyncSession]) -> None:
    factory = FailingSessionFactory(session_factory, failures=2)
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    ingestor = ClickEventIngestor(
        factory,
        max_attempts=5,
        backoff_seconds=0.1,
        backoff_max_seconds=0.3,
        sleep=record_sleep,
    )
    await ingestor.start()
    try:
        ingestor.submit(ClickEventIn(link_id=9))
        await ingestor.join()
    finally:
        await ingestor.stop()

    assert delays == [0.1, 0.2]
    assert await _count(session_factory) == 1


@pytest.mark.asyncio
async def test_batch_dropped_after_retry_budget(session_factory: async_sessionmaker[AsyncSession]) -> None:
    factory = FailingSessionFactory(session_factory, failures=3)
    ingestor = ClickEventIngestor(factory, max_attempts=3, sleep=_no_sleep)
    await ingestor.start()
    try:
        ingestor.submit(ClickEventIn(link_id=1))
        await ingestor.join()
        assert ingestor.running

        ingestor.submit(ClickEventIn(link_id=2))
        await ingestor.join()
    finally:
        await ingestor.stop()

    async with session_factory() as session:
        ids = (await session.execute(select(ClickEvent.link_id))).scalars().all()
    assert ids == [2]


@pytest.mark.asyncio
async def test_failed_cursor_batch_leaves_cursor_untouched(session_factory: async_sessionmaker[AsyncSession]) -> None:
    factory = FailingSessionFactory(session_factory, failures=1)
    ingestor = ClickEventIngestor(factory, max_attempts=1, sleep=_no_sleep)
    await ingestor.start()
    try:
        await ingestor.enqueue(
            IngestBatch(
                events=[ClickEventIn(link_id=1, source="log_tail")],
                cursor=CursorUpdate(source="edge.log", inode=1, offset=50),
            )
        )
        await ingestor.join()
    finally:
        await ingestor.stop()

    async with session_factory() as session:
        assert await session.get(LogCursor, "edge.log") is None
    assert await _count(session_factory) == 0


@pytest.mark.asyncio
async def test_stop_drains_queued_events(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory, batch_size=2)
    await ingestor.start()
    for link_id in range(7):
        ingestor.submit(ClickEventIn(link_id=link_id))

    await ingestor.stop(drain=True)

    assert not ingestor.running
    assert ingestor.submit(ClickEventIn(link_id=99)) is False
    assert await _count(session_factory) == 7


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory)
    await ingestor.stop()
    assert not ingestor.running


@pytest.mark.asyncio
async def test_writer_keeps_running_between_batches(session_factory: async_sessionmaker[AsyncSession]) -> None:
    ingestor = ClickEventIngestor(session_factory)
    await ingestor.start()
    try:
        ingestor.submit(ClickEventIn(link_id=1))
        await ingestor.join()
        await asyncio.sleep(0)
        assert ingestor.running
        ingestor.submit(ClickEventIn(link_id=2))
        await ingestor.join()
    finally:
        await ingestor.stop()
    assert await _count(session_factory) == 2
