"""Redirect dispatcher state machine tests."""

import datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.cache import CachedLink, LinkCache
from shortlink.dispatcher import RedirectDispatcher, is_qr_marker
from shortlink.errors import (
    InvalidPasswordError,
    LinkExpiredError,
    LinkInactiveError,
    LinkNotFoundError,
    PasswordRequiredError,
    ValidationError,
)
from shortlink.ingestion.ingestor import ClickEventIn
from shortlink.models import ShortLink
from shortlink.passwords import hash_password

NOW = datetime.datetime(2024, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)


class RecordingIngestor:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.events: list[ClickEventIn] = []

    def submit(self, event: ClickEventIn) -> bool:
        if self.accept:
            self.events.append(event)
        return self.accept


async def _link(session: AsyncSession, code: str = "abc123", **fields) -> ShortLink:
    link = ShortLink(code=code, target_url=fields.pop("target_url", "https://example.com/target"), **fields)
    session.add(link)
    await session.commit()
    return link


def _dispatcher(session: AsyncSession, ingestor: RecordingIngestor, cache=None) -> RedirectDispatcher:
    return RedirectDispatcher(session, ingestor, cache=cache, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_resolves_active_link_and_records_click(db_session: AsyncSession) -> None:
    link = await _link(db_session)
    ingestor = RecordingIngestor()

    resolution = await _dispatcher(db_session, ingestor).resolve("abc123", user_agent="pytest")

    assert resolution.target_url == "https://example.com/target"
    assert resolution.event_type == "link_click"
    assert len(ingestor.events) == 1
    event = ingestor.events[0]
    assert (event.link_id, event.event_type, event.user_agent, event.source) == (link.id, "link_click", "pytest", "inline")
    assert event.occurred_at == NOW


@pytest.mark.asyncio
async def test_qr_marker_records_qr_scan(db_session: AsyncSession) -> None:
    await _link(db_session)
    ingestor = RecordingIngestor()

    resolution = await _dispatcher(db_session, ingestor).resolve("abc123", qr=True)

    assert resolution.event_type == "qr_scan"
    assert ingestor.events[0].event_type == "qr_scan"


@pytest.mark.parametrize("value,expected", [("1", True), ("true", True), ("TRUE", True), ("0", False), (None, False)])
def test_is_qr_marker(value, expected) -> None:
    assert is_qr_marker(value) is expected


@pytest.mark.asyncio
async def test_unknown_code_is_not_found(db_session: AsyncSession) -> None:
    ingestor = RecordingIngestor()
    with pytest.raises(LinkNotFoundError) as excinfo:
        await _dispatcher(db_session, ingestor).resolve("missing1")
    assert excinfo.value.status_code == 404
    assert ingestor.events == []


@pytest.mark.asyncio
async def test_inactive_link_is_gone(db_session: AsyncSession) -> None:
    await _link(db_session, is_active=False)
    ingestor = RecordingIngestor()
    with pytest.raises(LinkInactiveError) as excinfo:
        await _dispatcher(db_session, ingestor).resolve("abc123")
    assert excinfo.value.status_code == 410
    assert ingestor.events == []


@pytest.mark.asyncio
async def test_expired_link_is_gone(db_session: AsyncSession) -> None:
    await _link(db_session, expires_at=NOW - datetime.timedelta(seconds=1))
    ingestor = RecordingIngestor()
    with pytest.raises(LinkExpiredError) as excinfo:
        await _dispatcher(db_session, ingestor).resolve("abc123")
    assert excinfo.value.status_code == 410
    assert "target" not in str(excinfo.value.to_dict())
    assert ingestor.events == []


@pytest.mark.asyncio
async def test_future_expiry_still_resolves(db_session: AsyncSession) -> None:
    await _link(db_session, expires_at=NOW + datetime.timedelta(minutes=5))
    resolution = await _dispatcher(db_session, RecordingIngestor()).resolve("abc123")
    assert resolution.target_url == "https://example.com/target"


@pytest.mark.asyncio
async def test_inactive_is_reported_before_expired(db_session: AsyncSession) -> None:
    await _link(db_session, is_active=False, expires_at=NOW - datetime.timedelta(days=1))
    with pytest.raises(LinkInactiveError):
        await _dispatcher(db_session, RecordingIngestor()).resolve("abc123")


@pytest.mark.asyncio
async def test_protected_link_without_password_is_challenged(db_session: AsyncSession) -> None:
    await _link(db_session, password_hash=hash_password("s3cret"))
    ingestor = RecordingIngestor()
    with pytest.raises(PasswordRequiredError) as excinfo:
        await _dispatcher(db_session, ingestor).resolve("abc123")
    assert excinfo.value.status_code == 401
    assert "WWW-Authenticate" in excinfo.value.headers
    assert ingestor.events == []


@pytest.mark.asyncio
async def test_protected_link_with_wrong_password_is_forbidden(db_session: AsyncSession) -> None:
    await _link(db_session, password_hash=hash_password("s3cret"))
    ingestor = RecordingIngestor()
    with pytest.raises(InvalidPasswordError) as excinfo:
        await _dispatcher(db_session, ingestor).resolve("abc123", password="wrong")
    assert excinfo.value.status_code == 403
    assert ingestor.events == []


@pytest.mark.asyncio
async def test_protected_link_with_right_password_resolves(db_session: AsyncSession) -> None:
    await _link(db_session, password_hash=hash_password("s3cret"))
    ingestor = RecordingIngestor()
    resolution = await _dispatcher(db_session, ingestor).resolve("abc123", password="s3cret")
    assert resolution.target_url == "https://example.com/target"
    assert len(ingestor.events) == 1


@pytest.mark.asyncio
async def test_dropped_event_does_not_fail_redirect(db_session: AsyncSession) -> None:
    await _link(db_session)
    resolution = await _dispatcher(db_session, RecordingIngestor(accept=False)).resolve("abc123")
    assert resolution.target_url == "https://example.com/target"


@pytest.mark.asyncio
async def test_cache_hit_skips_database(db_session: AsyncSession) -> None:
    cache = AsyncMock(spec=LinkCache)
    cache.get.return_value = CachedLink(id=42, code="cached1", target_url="https://cached.example.com", is_active=True)
    ingestor = RecordingIngestor()

    resolution = await _dispatcher(db_session, ingestor, cache=cache).resolve("cached1")

    assert resolution.target_url == "https://cached.example.com"
    assert ingestor.events[0].link_id == 42
    cache.set.assert_not_awaited()


@pytest.mark.asyncio
async def test_cache_miss_populates_cache(db_session: AsyncSession) -> None:
    link = await _link(db_session)
    cache = AsyncMock(spec=LinkCache)
    cache.get.return_value = None

    await _dispatcher(db_session, RecordingIngestor(), cache=cache).resolve("abc123")

    cache.set.assert_awaited_once()
    snapshot = cache.set.await_args.args[0]
    assert (snapshot.id, snapshot.code) == (link.id, "abc123")


@pytest.mark.asyncio
async def test_cached_inactive_state_is_enforced(db_session: AsyncSession) -> None:
    cache = AsyncMock(spec=LinkCache)
    cache.get.return_value = CachedLink(id=7, code="cached2", target_url="https://x.example.com", is_active=False)
    with pytest.raises(LinkInactiveError):
        await _dispatcher(db_session, RecordingIngestor(), cache=cache).resolve("cached2")


@pytest.mark.asyncio
async def test_cached_protected_link_checks_password_against_database(db_session: AsyncSession) -> None:
    link = await _link(db_session, password_hash=hash_password("s3cret"))
    cache = AsyncMock(spec=LinkCache)
    cache.get.return_value = CachedLink(
        id=link.id,
        code="abc123",
        target_url="https://example.com/target",
        is_active=True,
        password_protected=True,
    )
    ingestor = RecordingIngestor()
    dispatcher = _dispatcher(db_session, ingestor, cache=cache)

    with pytest.raises(PasswordRequiredError):
        await dispatcher.resolve("abc123")
    with pytest.raises(InvalidPasswordError):
        await dispatcher.resolve("abc123", password="wrong")
    resolution = await dispatcher.resolve("abc123", password="s3cret")

    assert resolution.target_url == "https://example.com/target"
    assert len(ingestor.events) == 1


@pytest.mark.asyncio
async def test_unknown_code_is_not_cached(db_session: AsyncSession) -> None:
    cache = AsyncMock(spec=LinkCache)
    cache.get.return_value = None
    with pytest.raises(LinkNotFoundError):
        await _dispatcher(db_session, RecordingIngestor(), cache=cache).resolve("missing1")
    cache.set.assert_not_awaited()


@pytest.mark.asyncio
async def test_ad_click_returns_target_and_records_event(db_session: AsyncSession) -> None:
    await _link(db_session)
    ingestor = RecordingIngestor()

    resolution = await _dispatcher(db_session, ingestor).record_ad_event("abc123", "ad_click")

    assert resolution.target_url == "https://example.com/target"
    assert ingestor.events[0].event_type == "ad_click"


@pytest.mark.asyncio
async def test_ad_event_rejects_other_event_types(db_session: AsyncSession) -> None:
    await _link(db_session)
    with pytest.raises(ValidationError):
        await _dispatcher(db_session, RecordingIngestor()).record_ad_event("abc123", "link_click")
