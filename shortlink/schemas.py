"""Pydantic schemas for request/response validation in the short-link service.

This module defines Pydantic models for API input validation and output serialization,
ensuring type safety and automatic OpenAPI documentation generation.

Schema Hierarchy
=================
::
    LinkCreate (Input)
    ├─ url: str (validated, SSRF-safe)
    ├─ custom_code: str | None
    ├─ expires_at: datetime | None
    ├─ password: str | None
    └─ owner_id: str | None

    LinkUpdate (Input, partial)
    └─ url / expires_at / is_active / password / password_protected / qr_generated

    LinkResponse (Output)
    └─ LinkListItem (Output, + embedded LinkTotals)

    EventCounts (Output)
    ├─ LinkTotals (+ last_clicked_at)
    └─ DailyCount (+ date)

    LinkStatsResponse / SummaryResponse / HealthResponse (Output)

Key Behaviours
===============
- URL validation combines the validators library with internal-network checks.
- Custom codes must be alphanumeric and 4-20 characters long.
- All datetime fields are timezone-aware; naive input is read as UTC.
- Models are configured for ORM attribute mapping.
- Request validation failures are rendered as 400 by the error handlers.
"""

import datetime

from pydantic import BaseModel, Field, field_validator

from shortlink.allocator import is_valid_code
from shortlink.enums import EventType, HealthStatus
from shortlink.models import ShortLink
from shortlink.timeutils import as_utc
from shortlink.url_validation import validate_target_url

__all__ = [
    "AdEventResponse",
    "DailyCount",
    "EventCounts",
    "HealthResponse",
    "LinkCreate",
    "LinkListItem",
    "LinkListResponse",
    "LinkResponse",
    "LinkStatsResponse",
    "LinkTotals",
    "LinkUpdate",
    "Pagination",
    "PasswordSubmit",
    "ResolvedLinkResponse",
    "SummaryResponse",
]


def _validate_url(v: str) -> str:
    return validate_target_url(v)


def _normalize_expiry(v: datetime.datetime | None) -> datetime.datetime | None:
    return as_utc(v)


class LinkCreate(BaseModel):
    url: str
    custom_code: str | None = None
    expires_at: datetime.datetime | None = None
    password: str | None = Field(None, min_length=1, max_length=128)
    owner_id: str | None = Field(None, max_length=64)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _validate_url(v)

    @field_validator("custom_code")
    @classmethod
    def validate_custom_code(cls, v: str | None) -> str | None:
        if v is not None and not is_valid_code(v):
            raise ValueError("Custom code must be 4-20 alphanumeric characters")
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return _normalize_expiry(v)


class LinkUpdate(BaseModel):
    """Partial update. ``expires_at: null`` clears the expiry; an omitted field is left alone."""

    url: str | None = None
    expires_at: datetime.datetime | None = None
    is_active: bool | None = None
    password: str | None = Field(None, min_length=1, max_length=128)
    password_protected: bool | None = None
    qr_generated: bool | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return None if v is None else _validate_url(v)

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return _normalize_expiry(v)


class LinkResponse(BaseModel):
    id: int
    code: str
    target_url: str
    short_url: str
    is_active: bool
    expires_at: datetime.datetime | None
    password_protected: bool
    owner_id: str | None
    qr_generated: bool
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, link: ShortLink, base_url: str) -> "LinkResponse":
        return cls(
            id=link.id,
            code=link.code,
            target_url=link.target_url,
            short_url=f"{base_url.rstrip('/')}/s/{link.code}",
            is_active=link.is_active,
            expires_at=as_utc(link.expires_at),
            password_protected=link.password_protected,
            owner_id=link.owner_id,
            qr_generated=link.qr_generated,
            created_at=as_utc(link.created_at),
            updated_at=as_utc(link.updated_at),
        )


class EventCounts(BaseModel):
    total_clicks: int = 0
    link_clicks: int = 0
    qr_scans: int = 0
    ad_views: int = 0
    ad_clicks: int = 0

    def add(self, event_type: str, count: int) -> None:
        field_name = EVENT_TYPE_FIELDS.get(event_type)
        if field_name is None:
            return
        setattr(self, field_name, getattr(self, field_name) + count)
        self.total_clicks += count


EVENT_TYPE_FIELDS: dict[str, str] = {
    EventType.LINK_CLICK.value: "link_clicks",
    EventType.QR_SCAN.value: "qr_scans",
    EventType.AD_VIEW.value: "ad_views",
    EventType.AD_CLICK.value: "ad_clicks",
}


class LinkTotals(EventCounts):
    last_clicked_at: datetime.datetime | None = None


class DailyCount(EventCounts):
    date: datetime.date


class LinkListItem(LinkResponse):
    stats: LinkTotals


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class LinkListResponse(BaseModel):
    data: list[LinkListItem]
    pagination: Pagination


class LinkStatsResponse(BaseModel):
    link_id: int
    code: str
    days: int
    total: LinkTotals
    daily: list[DailyCount]


class SummaryResponse(BaseModel):
    total_links: int
    active_links: int
    today: EventCounts
    week: EventCounts
    month: EventCounts
    all_time: EventCounts


class PasswordSubmit(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class ResolvedLinkResponse(BaseModel):
    code: str
    target_url: str


class AdEventResponse(BaseModel):
    success: bool = True
    target_url: str | None = None


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
    ingestor: HealthStatus
    queue_depth: int
