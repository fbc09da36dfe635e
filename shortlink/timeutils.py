"""UTC helpers shared by the dispatcher, ingestion and stats layers."""

import datetime

__all__ = ["as_utc", "utcnow"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite hands timestamps back naive; everything is stored in UTC, so a
    naive value is taken to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)
