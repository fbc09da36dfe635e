"""SQLAlchemy ORM models for the short-link service.

Data Model Layout
=================
::
    short_links table
    ├─ id (INTEGER PK, AUTOINCREMENT, never reused)
    ├─ code (VARCHAR(20) UNIQUE, INDEXED)
    ├─ target_url (TEXT NOT NULL)
    ├─ is_active (BOOLEAN DEFAULT TRUE)
    ├─ expires_at (TIMESTAMPTZ NULL)
    ├─ password_hash (TEXT NULL)
    ├─ owner_id (VARCHAR(64) NULL, INDEXED)
    ├─ qr_generated (BOOLEAN DEFAULT FALSE)
    ├─ created_at (TIMESTAMPTZ)
    └─ updated_at (TIMESTAMPTZ)

    click_events table
    ├─ id (INTEGER PK)
    ├─ link_id (INTEGER, INDEXED, no FK: events outlive links)
    ├─ occurred_at (TIMESTAMPTZ)
    ├─ user_agent (TEXT NULL)
    ├─ event_type (VARCHAR(20), INDEXED)
    └─ source (VARCHAR(16))

    log_cursors table
    ├─ source (VARCHAR(512) PK)
    ├─ inode (BIGINT)
    ├─ offset (BIGINT)
    ├─ fingerprint (VARCHAR(64) NULL, hash of the first line)
    └─ updated_at (TIMESTAMPTZ)

Key Behaviours
===============
- code uniqueness is enforced by the database; allocation relies on it.
- click events are append-only and keep their link_id after the link is deleted.
- short_links ids are never reused (AUTOINCREMENT on SQLite, sequences on
  PostgreSQL), so orphaned events never attach to a new link.
- all timestamps are written in UTC.

Classes:
    ShortLink:  A short code mapped to a target URL.
    ClickEvent:  One recorded resolution, scan or ad interaction.
    LogCursor:  Durable read position of a watched access log.
"""

import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from shortlink.database import Base
from shortlink.enums import EventSource, EventType
from shortlink.timeutils import utcnow

__all__ = ["ClickEvent", "LogCursor", "ShortLink"]


class ShortLink(Base):
    __tablename__ = "short_links"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    qr_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )

    @property
    def password_protected(self) -> bool:
        return self.password_hash is not None

    def __repr__(self) -> str:
        return f"<ShortLink(id={self.id}, code='{self.code}', active={self.is_active})>"


class ClickEvent(Base):
    __tablename__ = "click_events"
    __table_args__ = (
        Index("ix_click_events_link_occurred", "link_id", "occurred_at"),
        Index("ix_click_events_link_event_type", "link_id", "event_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    link_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    occurred_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[str] = mapped_column(
        String(20), index=True, default=EventType.LINK_CLICK.value, nullable=False
    )
    source: Mapped[str] = mapped_column(String(16), default=EventSource.INLINE.value, nullable=False)

    def __repr__(self) -> str:
        return f"<ClickEvent(id={self.id}, link_id={self.link_id}, event_type='{self.event_type}')>"


class LogCursor(Base):
    __tablename__ = "log_cursors"

    source: Mapped[str] = mapped_column(String(512), primary_key=True)
    inode: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offset: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<LogCursor(source='{self.source}', inode={self.inode}, offset={self.offset})>"
