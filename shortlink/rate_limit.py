"""Per-client fixed-window rate limiting.

Each client identity owns one record ``(count, reset_at)``. The first
request after the record expires opens a new window of
``window_seconds`` starting at that request. State lives in process
memory only: it is lost on restart and is not shared between instances.

Decision Flow
=============
::
    ┌──────────────┐
    │  hit(key)    │
    └──────┬───────┘
           ▼
    ┌──────────────┐  none / expired  ┌──────────────┐
    │ load record  │─────────────────►│ count = 1    │──► allow
    └──────┬───────┘                  │ reset = now+W│
           ▼                          └──────────────┘
    ┌──────────────┐  yes
    │ count >= max │─────► reject, retry_after = ceil(reset - now)
    └──────┬───────┘
           ▼ no
      count += 1 ──► allow

Client identity is taken from the first ``X-Forwarded-For`` hop, then
``X-Real-IP``, then the connection address; requests with none of these
share the ``"unknown"`` bucket.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request
from prometheus_client import Counter

from shortlink.audit import AuditAction
from shortlink.errors import RateLimitError

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimitGuard",
    "UNKNOWN_CLIENT",
    "client_identity",
]

logger = logging.getLogger(__name__)

RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "shortlink_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["limiter"],
)

UNKNOWN_CLIENT = "unknown"
SWEEP_THRESHOLD = 10000


@dataclass
class _WindowRecord:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int
    reset_at: float


class FixedWindowRateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sweep_threshold: int = SWEEP_THRESHOLD,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._records: dict[str, _WindowRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        if len(self._records) >= self._sweep_threshold:
            self.sweep(now)

        record = self._records.get(key)
        if record is None or now >= record.reset_at:
            record = _WindowRecord(count=1, reset_at=now + self.window_seconds)
            self._records[key] = record
            return RateLimitDecision(True, self.max_requests - 1, 0, record.reset_at)

        if record.count >= self.max_requests:
            retry_after = min(max(1, math.ceil(record.reset_at - now)), math.ceil(self.window_seconds))
            return RateLimitDecision(False, 0, retry_after, record.reset_at)

        record.count += 1
        return RateLimitDecision(True, self.max_requests - record.count, 0, record.reset_at)

    def sweep(self, now: float | None = None) -> int:
        """Drop expired records and return how many were removed."""
        now = self._clock() if now is None else now
        expired = [key for key, record in self._records.items() if now >= record.reset_at]
        for key in expired:
            del self._records[key]
        return len(expired)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._records.clear()
        else:
            self._records.pop(key, None)


# ============================================================================
# CLIENT IDENTITY
# ============================================================================


def _forwarded_for(request: Request) -> str | None:
    header = request.headers.get("x-forwarded-for")
    if not header:
        return None
    first = header.split(",")[0].strip()
    return first or None


def _real_ip(request: Request) -> str | None:
    value = request.headers.get("x-real-ip", "").strip()
    return value or None


def _peer_address(request: Request) -> str | None:
    return request.client.host if request.client else None


IDENTITY_EXTRACTORS: tuple[Callable[[Request], str | None], ...] = (
    _forwarded_for,
    _real_ip,
    _peer_address,
)


def client_identity(request: Request) -> str:
    for extractor in IDENTITY_EXTRACTORS:
        identity = extractor(request)
        if identity:
            return identity
    return UNKNOWN_CLIENT


# ============================================================================
# FASTAPI DEPENDENCY
# ============================================================================


class RateLimitGuard:
    """Dependency that charges one hit to the named limiter on the ServiceManager.

    Example::

        @router.get("/s/{code}", dependencies=[Depends(RateLimitGuard("general"))])
    """

    def __init__(self, limiter_name: str, only_with_header: str | None = None) -> None:
        self.limiter_name = limiter_name
        self.only_with_header = only_with_header

    async def __call__(self, request: Request) -> None:
        services = request.app.state.services
        if not services.settings.RATE_LIMIT_ENABLED:
            return
        if self.only_with_header and self.only_with_header not in request.headers:
            return
        limiter: FixedWindowRateLimiter = services.rate_limiters[self.limiter_name]
        identity = client_identity(request)
        decision = limiter.hit(identity)
        if not decision.allowed:
            RATE_LIMIT_REJECTIONS_TOTAL.labels(limiter=self.limiter_name).inc()
            logger.warning(
                f"Rate limit '{self.limiter_name}' exceeded by {identity} on {request.url.path}, "
                f"retry in {decision.retry_after}s"
            )
            services.audit.record(
                identity,
                AuditAction.SECURITY_RATE_LIMIT,
                "rejected",
                details={"limiter": self.limiter_name, "path": request.url.path},
            )
            raise RateLimitError(decision.retry_after)
