"""Edge access-log tailing.

Redirects served from the edge proxy cache never reach the application, so
they are captured by tailing the proxy's access log. Each watcher owns one
log file and pushes parsed clicks into the shared ``ClickEventIngestor``
together with its read position; the position is committed in the same
transaction as the events.

Log line format (pipe delimited, the user agent may itself contain ``|``)::

    remote_addr|time_iso8601|request_uri|status|upstream_cache_status|user_agent

Capture Policy
==============
::
    edge request ── cache HIT ──► never reaches the app ──► ingested from log
                 └─ MISS/BYPASS ─► dispatcher records it ──► ignored in log

Poll Cycle
==========
::
    ┌──────────────────┐
    │ stat(path)       │── inode changed ──► drain old handle, reopen at 0
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ size < offset or │── yes ──► offset = 0
    │ first line hash  │   (truncated or replaced)
    │ changed?         │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ read chunk, keep │
    │ complete lines   │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ parse + filter,  │
    │ one code→id query│
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ enqueue events + │── timeout ──► offset unchanged, back off
    │ cursor           │
    └────────┬─────────┘
             ▼
        offset advances

Key Behaviours
===============
- Only complete (newline terminated) lines are consumed.
- Malformed or unrelated lines are skipped and counted.
- A missing file, read errors and a full queue cause exponential backoff; the
  watcher keeps running until cancelled.
- On start the committed cursor is used if it still describes the file: same
  inode and same first-line fingerprint, so a recycled inode is read from 0.
- Log-tail timestamps come from the edge clock and are clamped to ingest time.
- Line counters are updated only once the batch has been accepted.
"""

import asyncio
import datetime
import hashlib
import logging
import os
import re
from collections import Counter as Tally
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import BinaryIO
from urllib.parse import parse_qs, urlsplit

from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.config import Settings
from shortlink.enums import EventSource, EventType
from shortlink.errors import IngestionError
from shortlink.ingestion.ingestor import ClickEventIn, ClickEventIngestor, CursorUpdate, IngestBatch
from shortlink.models import LogCursor, ShortLink
from shortlink.timeutils import as_utc, utcnow

__all__ = [
    "AccessLogRecord",
    "LogWatcher",
    "REDIRECT_STATUSES",
    "extract_code",
    "first_line_fingerprint",
    "parse_log_line",
]

logger = logging.getLogger(__name__)

LOG_LINES_TOTAL = Counter(
    "shortlink_log_lines_total",
    "Access log lines read by the log watcher",
    ["result"],
)

REDIRECT_STATUSES = frozenset({301, 302, 307, 308})
LOG_FIELD_COUNT = 6
FINGERPRINT_BYTES = 1024

_CODE_PATH = re.compile(r"^/s/([A-Za-z0-9]{4,20})/?$")
_QR_VALUES = frozenset({"1", "true"})


@dataclass(frozen=True)
class AccessLogRecord:
    remote_addr: str
    occurred_at: datetime.datetime
    request_uri: str
    status: int
    cache_status: str
    user_agent: str | None


def parse_log_line(line: str) -> AccessLogRecord:
    """Parse one access log line.

    Raises:
        IngestionError: the line does not have the expected shape.
    """
    parts = line.rstrip("\r\n").split("|", LOG_FIELD_COUNT - 1)
    if len(parts) < LOG_FIELD_COUNT:
        raise IngestionError(f"expected {LOG_FIELD_COUNT} fields, got {len(parts)}")
    remote_addr, raw_time, request_uri, raw_status, cache_status, user_agent = parts
    try:
        status = int(raw_status)
    except ValueError as exc:
        raise IngestionError(f"bad status {raw_status!r}") from exc
    try:
        occurred_at = as_utc(datetime.datetime.fromisoformat(raw_time.strip()))
    except ValueError as exc:
        raise IngestionError(f"bad timestamp {raw_time!r}") from exc
    user_agent = user_agent.strip()
    return AccessLogRecord(
        remote_addr=remote_addr.strip(),
        occurred_at=occurred_at,
        request_uri=request_uri.strip(),
        status=status,
        cache_status=cache_status.strip().upper(),
        user_agent=user_agent if user_agent and user_agent != "-" else None,
    )


def extract_code(request_uri: str, qr_param: str = "qr") -> tuple[str, bool] | None:
    """Return ``(code, is_qr)`` for a short-link request URI, else None."""
    parts = urlsplit(request_uri)
    match = _CODE_PATH.match(parts.path)
    if match is None:
        return None
    values = parse_qs(parts.query).get(qr_param, [])
    is_qr = any(value.strip().lower() in _QR_VALUES for value in values)
    return match.group(1), is_qr


def first_line_fingerprint(handle: BinaryIO) -> str | None:
    """Hash of the file's first line, None until that line is complete."""
    handle.seek(0)
    head = handle.read(FINGERPRINT_BYTES)
    end = head.find(b"\n")
    if end == -1:
        if len(head) < FINGERPRINT_BYTES:
            return None
        end = len(head) - 1
    return hashlib.sha1(head[: end + 1]).hexdigest()


class LogWatcher:
    """Tails one access log file into the click ingestor."""

    def __init__(
        self,
        path: str,
        ingestor: ClickEventIngestor,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cache_statuses: Iterable[str] = ("HIT",),
        poll_interval: float = 1.0,
        max_backoff: float = 30.0,
        chunk_bytes: int = 64 * 1024,
        enqueue_timeout: float = 5.0,
        qr_param: str = "qr",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.path = path
        self._ingestor = ingestor
        self._session_factory = session_factory
        self._cache_statuses = frozenset(status.upper() for status in cache_statuses)
        self._poll_interval = poll_interval
        self._max_backoff = max_backoff
        self._chunk_bytes = chunk_bytes
        self._enqueue_timeout = enqueue_timeout
        self._qr_param = qr_param
        self._sleep = sleep
        self._clock = clock

        self._handle: BinaryIO | None = None
        self._inode: int | None = None
        self._offset = 0
        self._fingerprint: str | None = None
        self._cursor_restored = False

    @classmethod
    def from_settings(
        cls,
        path: str,
        ingestor: ClickEventIngestor,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> "LogWatcher":
        return cls(
            path,
            ingestor,
            session_factory,
            cache_statuses=settings.LOG_WATCHER_CACHE_STATUSES,
            poll_interval=settings.LOG_WATCHER_POLL_INTERVAL_SECONDS,
            max_backoff=settings.LOG_WATCHER_MAX_BACKOFF_SECONDS,
            chunk_bytes=settings.LOG_WATCHER_READ_CHUNK_BYTES,
            enqueue_timeout=settings.LOG_WATCHER_ENQUEUE_TIMEOUT_SECONDS,
            qr_param=settings.QR_MARKER_PARAM,
        )

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def inode(self) -> int | None:
        return self._inode

    # ========================================================================
    # LOOP
    # ========================================================================

    async def run(self) -> None:
        logger.info(f"Watching access log {self.path}")
        delay = self._poll_interval
        try:
            while True:
                try:
                    consumed = await self.poll_once()
                except (OSError, IngestionError) as exc:
                    logger.warning(f"Log watcher for {self.path} backing off {delay:.1f}s: {exc}")
                    await self._sleep(delay)
                    delay = min(delay * 2, self._max_backoff)
                    continue
                except Exception:
                    logger.warning(f"Log watcher iteration for {self.path} failed", exc_info=True)
                    await self._sleep(delay)
                    delay = min(delay * 2, self._max_backoff)
                    continue

                delay = self._poll_interval
                if consumed == 0:
                    await self._sleep(self._poll_interval)
        finally:
            self._close()
            logger.info(f"Stopped watching {self.path}")

    async def poll_once(self) -> int:
        """Run one poll cycle and return the number of bytes consumed."""
        if not self._cursor_restored:
            await self._restore_cursor()

        consumed = 0
        try:
            stat = await asyncio.to_thread(os.stat, self.path)
        except FileNotFoundError:
            if self._handle is None:
                raise
            # Rotated away and not recreated yet: keep draining the old file.
            return await self._drain()

        if self._handle is None:
            await self._open(stat.st_ino)
        elif stat.st_ino != self._inode:
            consumed += await self._drain()
            logger.info(f"{self.path} rotated (inode {self._inode} -> {stat.st_ino})")
            self._close()
            await self._open(stat.st_ino, offset=0)

        size = os.fstat(self._handle.fileno()).st_size
        if size < self._offset:
            logger.info(f"{self.path} truncated to {size} bytes, restarting at 0")
            self._offset = 0
            self._fingerprint = None
        elif self._fingerprint is not None:
            current = await asyncio.to_thread(first_line_fingerprint, self._handle)
            if current != self._fingerprint:
                logger.info(f"{self.path} was replaced in place, restarting at 0")
                self._offset = 0
                self._fingerprint = None

        consumed += await self._consume_chunk()
        return consumed

    # ========================================================================
    # FILE HANDLING
    # ========================================================================

    async def _restore_cursor(self) -> None:
        async with self._session_factory() as session:
            cursor = await session.get(LogCursor, self.path)
        if cursor is not None:
            self._inode = cursor.inode
            self._offset = cursor.offset
            self._fingerprint = cursor.fingerprint
            logger.info(f"Resuming {self.path} at inode {cursor.inode} offset {cursor.offset}")
        self._cursor_restored = True

    async def _open(self, inode: int, offset: int | None = None) -> None:
        handle = await asyncio.to_thread(open, self.path, "rb")
        size = os.fstat(handle.fileno()).st_size
        fingerprint = await asyncio.to_thread(first_line_fingerprint, handle)
        if offset is None:
            same_file = self._inode == inode and self._fingerprint in (None, fingerprint)
            if same_file and self._offset <= size:
                offset = self._offset
            else:
                if self._inode == inode:
                    logger.info(f"{self.path} inode {inode} was reused by a new file, reading from 0")
                offset = 0
        self._handle = handle
        self._inode = inode
        self._offset = offset
        self._fingerprint = fingerprint

    def _close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    async def _drain(self) -> int:
        total = 0
        while True:
            consumed = await self._consume_chunk()
            if consumed == 0:
                return total
            total += consumed

    def _read_at(self, offset: int) -> bytes:
        self._handle.seek(offset)
        return self._handle.read(self._chunk_bytes)

    async def _consume_chunk(self) -> int:
        data = await asyncio.to_thread(self._read_at, self._offset)
        if not data:
            return 0

        end = data.rfind(b"\n")
        if end == -1:
            if len(data) < self._chunk_bytes:
                return 0
            # A single line longer than a chunk cannot be parsed; skip past it.
            lines: list[str] = []
            tally = Tally(oversized=1)
            end = len(data) - 1
        else:
            lines = data[: end + 1].decode("utf-8", errors="replace").splitlines()
            tally = Tally()

        if self._fingerprint is None:
            self._fingerprint = await asyncio.to_thread(first_line_fingerprint, self._handle)
        events = await self._build_events(lines, tally)
        new_offset = self._offset + end + 1
        batch = IngestBatch(
            events=events,
            cursor=CursorUpdate(
                source=self.path,
                inode=self._inode,
                offset=new_offset,
                fingerprint=self._fingerprint,
            ),
        )
        if not await self._ingestor.enqueue(batch, timeout=self._enqueue_timeout):
            raise IngestionError("click queue did not accept the batch")
        self._offset = new_offset
        for result, count in tally.items():
            LOG_LINES_TOTAL.labels(result=result).inc(count)
        return end + 1

    # ========================================================================
    # PARSING
    # ========================================================================

    async def _build_events(self, lines: list[str], tally: Tally) -> list[ClickEventIn]:
        """Turn complete log lines into click events, counting outcomes into *tally*."""
        candidates: list[tuple[AccessLogRecord, str, bool]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                record = parse_log_line(line)
            except IngestionError as exc:
                tally["malformed"] += 1
                logger.debug(f"Skipping malformed log line: {exc}")
                continue
            if record.status not in REDIRECT_STATUSES or record.cache_status not in self._cache_statuses:
                tally["ignored"] += 1
                continue
            extracted = extract_code(record.request_uri, self._qr_param)
            if extracted is None:
                tally["ignored"] += 1
                continue
            code, is_qr = extracted
            candidates.append((record, code, is_qr))

        if not candidates:
            return []

        ids = await self._resolve_codes({code for _, code, _ in candidates})
        now = self._clock()
        events: list[ClickEventIn] = []
        for record, code, is_qr in candidates:
            link_id = ids.get(code)
            if link_id is None:
                tally["unknown_code"] += 1
                continue
            events.append(
                ClickEventIn(
                    link_id=link_id,
                    event_type=(EventType.QR_SCAN if is_qr else EventType.LINK_CLICK).value,
                    occurred_at=min(record.occurred_at, now),
                    user_agent=record.user_agent,
                    source=EventSource.LOG_TAIL.value,
                )
            )
        tally["ingested"] += len(events)
        return events

    async def _resolve_codes(self, codes: set[str]) -> dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(select(ShortLink.code, ShortLink.id).where(ShortLink.code.in_(codes)))
            return {code: link_id for code, link_id in result.all()}
