"""Shared enums for the short-link service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "EventSource",
    "EventType",
    "HealthStatus",
    "RedirectOutcome",
]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"

    @classmethod
    def from_str(cls, value: str) -> "HealthStatus":
        """Safely parse from string, falling back to UNHEALTHY for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNHEALTHY


class EventType(StrEnum):
    """Click event classification."""

    LINK_CLICK = "link_click"
    QR_SCAN = "qr_scan"
    AD_VIEW = "ad_view"
    AD_CLICK = "ad_click"


class EventSource(StrEnum):
    """Which capture path produced a click event."""

    INLINE = "inline"
    LOG_TAIL = "log_tail"


class RedirectOutcome(StrEnum):
    """Terminal outcomes of a redirect lookup, used as a metrics label."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    PASSWORD_REQUIRED = "password_required"
    INVALID_PASSWORD = "invalid_password"
