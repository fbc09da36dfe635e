"""Click statistics computed live from stored events.

Nothing is pre-aggregated: every figure is a ``GROUP BY`` over
``click_events`` at request time, so a committed event is visible in the
next query.

Windows
=======
::
    today     ── since 00:00 UTC of the current day
    week      ── rolling last 7 days
    month     ── rolling last 30 days
    all_time  ── everything

The week and month windows are rolling, so each of them contains the
previous one and ``today <= week <= month <= all_time`` holds for every
event type.
"""

import datetime
import logging
from collections.abc import Callable, Iterable

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.models import ClickEvent, ShortLink
from shortlink.schemas import DailyCount, EventCounts, LinkTotals, SummaryResponse
from shortlink.timeutils import as_utc, utcnow

__all__ = ["StatsService", "day_start"]

logger = logging.getLogger(__name__)

WEEK = datetime.timedelta(days=7)
MONTH = datetime.timedelta(days=30)


def day_start(moment: datetime.datetime) -> datetime.datetime:
    moment = as_utc(moment)
    return datetime.datetime.combine(moment.date(), datetime.time.min, tzinfo=datetime.timezone.utc)


def _as_date(value: datetime.date | str) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


class StatsService:
    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._db = session
        self._clock = clock

    async def link_totals(self, link_ids: Iterable[int]) -> dict[int, LinkTotals]:
        """Lifetime counts per link, split by event type. Every id gets an entry."""
        ids = list(dict.fromkeys(link_ids))
        totals = {link_id: LinkTotals() for link_id in ids}
        if not ids:
            return totals

        result = await self._db.execute(
            select(
                ClickEvent.link_id,
                ClickEvent.event_type,
                func.count(ClickEvent.id),
                func.max(ClickEvent.occurred_at),
            )
            .where(ClickEvent.link_id.in_(ids))
            .group_by(ClickEvent.link_id, ClickEvent.event_type)
        )
        for link_id, event_type, count, last_at in result.all():
            entry = totals[link_id]
            entry.add(event_type, count)
            last_at = as_utc(last_at)
            if last_at is not None and (entry.last_clicked_at is None or last_at > entry.last_clicked_at):
                entry.last_clicked_at = last_at
        return totals

    async def link_total(self, link_id: int) -> LinkTotals:
        return (await self.link_totals([link_id]))[link_id]

    async def daily_counts(
        self,
        link_id: int | None = None,
        days: int = 30,
        now: datetime.datetime | None = None,
        owner_id: str | None = None,
    ) -> list[DailyCount]:
        """Per UTC day counts for the last *days* days, today included.

        Days without events are present with zero counts; the list is in
        ascending date order. ``link_id=None`` covers all links. Events
        stamped after today count towards today, so the series always sums
        to the lifetime total of the window.
        """
        if days < 1:
            raise ValueError("days must be at least 1")
        now = as_utc(now) if now is not None else self._clock()
        first_day = day_start(now) - datetime.timedelta(days=days - 1)

        day = self._day_expression()
        stmt = (
            select(day.label("day"), ClickEvent.event_type, func.count(ClickEvent.id))
            .where(ClickEvent.occurred_at >= first_day)
            .group_by(day, ClickEvent.event_type)
        )
        stmt = self._scope(stmt, link_id=link_id, owner_id=owner_id)

        series = {
            (first_day + datetime.timedelta(days=offset)).date(): DailyCount(
                date=(first_day + datetime.timedelta(days=offset)).date()
            )
            for offset in range(days)
        }
        today = now.date()
        result = await self._db.execute(stmt)
        for raw_day, event_type, count in result.all():
            bucket = series.get(min(_as_date(raw_day), today))
            if bucket is not None:
                bucket.add(event_type, count)
        return [series[key] for key in sorted(series)]

    async def recent_window(
        self,
        now: datetime.datetime | None = None,
        owner_id: str | None = None,
    ) -> dict[str, EventCounts]:
        now = as_utc(now) if now is not None else self._clock()
        bounds = {
            "today": day_start(now),
            "week": now - WEEK,
            "month": now - MONTH,
        }
        columns = [
            func.sum(case((ClickEvent.occurred_at >= start, 1), else_=0)).label(name)
            for name, start in bounds.items()
        ]
        stmt = select(ClickEvent.event_type, *columns, func.count(ClickEvent.id).label("all_time")).group_by(
            ClickEvent.event_type
        )
        stmt = self._scope(stmt, owner_id=owner_id)

        window = {name: EventCounts() for name in (*bounds, "all_time")}
        result = await self._db.execute(stmt)
        for row in result.mappings():
            for name in window:
                window[name].add(row["event_type"], int(row[name] or 0))
        return window

    async def summary(self, owner_id: str | None = None) -> SummaryResponse:
        link_stmt = select(
            func.count(ShortLink.id),
            func.coalesce(func.sum(case((ShortLink.is_active.is_(True), 1), else_=0)), 0),
        )
        if owner_id is not None:
            link_stmt = link_stmt.where(ShortLink.owner_id == owner_id)
        total_links, active_links = (await self._db.execute(link_stmt)).one()
        window = await self.recent_window(owner_id=owner_id)
        return SummaryResponse(
            total_links=total_links,
            active_links=int(active_links),
            **window,
        )

    def _day_expression(self):
        if self._db.get_bind().dialect.name == "postgresql":
            return func.date(func.timezone("UTC", ClickEvent.occurred_at))
        return func.date(ClickEvent.occurred_at)

    @staticmethod
    def _scope(stmt, link_id: int | None = None, owner_id: str | None = None):
        if link_id is not None:
            stmt = stmt.where(ClickEvent.link_id == link_id)
        if owner_id is not None:
            stmt = stmt.where(ClickEvent.link_id.in_(select(ShortLink.id).where(ShortLink.owner_id == owner_id)))
        return stmt
