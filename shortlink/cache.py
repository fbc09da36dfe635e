"""Redis cache-aside for short link lookups.

The redirect hot path reads a compact snapshot of the link (everything the
dispatcher needs to enforce its invariants) from Redis before falling back
to the database. The cache is optional: with ``REDIS_URL`` unset the
dispatcher talks to the database directly.

Flow Diagram — Cached Lookup
============================
::
    ┌─────────────┐
    │ get(code)   │
    └──────┬──────┘
           ▼
    ┌─────────────┐  error   ┌─────────────┐
    │ Redis GET   │─────────►│ log + treat │
    └──────┬──────┘          │ as a miss   │
    HIT?   │                 └─────────────┘
    ┌──────┴─────┐
    │ NO or      │ YES
    │ TOMBSTONE  │
    ▼            ▼
┌─────────┐  ┌─────────┐
│ caller  │  │ decode  │
│ reads DB│  │ snapshot│
│ + set() │  └─────────┘
└─────────┘

Fill vs. Invalidate
===================
::
    lookup:  GET (miss) ── SELECT row ─────────────── SET NX ✗ (tombstone wins)
    update:                    COMMIT ── SET tombstone EX

A fill that read the row before a management write commits can only land
after that write's tombstone, and ``SET NX`` never replaces a tombstone or
an existing snapshot. The stale fill is dropped and the next lookup reads
the database again until the tombstone expires.

Key Behaviours
===============
- Only existing links are cached; unknown codes are never cached.
- Redis failures never fail a redirect; they are logged and counted.
- Management writes call invalidate(), which writes a short-lived tombstone.
- Password hashes stay in the database; snapshots only carry a flag.
- Keys are namespaced as ``link:<code>`` with a TTL.
"""

import datetime
import logging

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import BaseModel, ValidationError

from shortlink.config import Settings
from shortlink.models import ShortLink
from shortlink.timeutils import as_utc

__all__ = ["CachedLink", "LinkCache", "close_redis", "create_redis"]

logger = logging.getLogger(__name__)

CACHE_REQUESTS_TOTAL = Counter(
    "shortlink_link_cache_requests_total",
    "Link cache lookups",
    ["result"],
)
CACHE_ERRORS_TOTAL = Counter(
    "shortlink_link_cache_errors_total",
    "Redis errors while reading or writing the link cache",
)

CACHE_KEY_PREFIX = "link"
TOMBSTONE = "__invalidated__"


class CachedLink(BaseModel):
    id: int
    code: str
    target_url: str
    is_active: bool
    expires_at: datetime.datetime | None = None
    password_protected: bool = False
    updated_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, link: ShortLink) -> "CachedLink":
        snapshot = cls.model_validate(link)
        snapshot.expires_at = as_utc(snapshot.expires_at)
        snapshot.updated_at = as_utc(snapshot.updated_at)
        return snapshot


def create_redis(url: str) -> redis.Redis:
    return redis.from_url(url, encoding="utf-8", decode_responses=True)


async def close_redis(client: redis.Redis | None) -> None:
    if client is not None:
        await client.aclose()


class LinkCache:
    def __init__(self, client: redis.Redis, ttl_seconds: int = 300, tombstone_ttl_seconds: int = 30) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._tombstone_ttl = tombstone_ttl_seconds

    @classmethod
    def from_settings(cls, client: redis.Redis, settings: Settings) -> "LinkCache":
        return cls(client, settings.LINK_CACHE_TTL_SECONDS, settings.LINK_CACHE_TOMBSTONE_SECONDS)

    @staticmethod
    def key(code: str) -> str:
        return f"{CACHE_KEY_PREFIX}:{code}"

    async def get(self, code: str) -> CachedLink | None:
        try:
            raw = await self._client.get(self.key(code))
        except redis.RedisError as exc:
            CACHE_ERRORS_TOTAL.inc()
            logger.warning(f"Link cache read failed for {code}: {exc}")
            return None

        if raw is None:
            CACHE_REQUESTS_TOTAL.labels(result="miss").inc()
            return None
        if raw == TOMBSTONE:
            CACHE_REQUESTS_TOTAL.labels(result="tombstone").inc()
            return None
        try:
            snapshot = CachedLink.model_validate_json(raw)
        except ValidationError as exc:
            CACHE_ERRORS_TOTAL.inc()
            logger.warning(f"Discarding undecodable cache entry for {code}: {exc}")
            return None
        CACHE_REQUESTS_TOTAL.labels(result="hit").inc()
        return snapshot

    async def set(self, snapshot: CachedLink) -> bool:
        """Fill the entry for a snapshot read from the database.

        Returns False when an entry or a tombstone is already present.
        """
        try:
            stored = await self._client.set(
                self.key(snapshot.code), snapshot.model_dump_json(), ex=self._ttl, nx=True
            )
        except redis.RedisError as exc:
            CACHE_ERRORS_TOTAL.inc()
            logger.warning(f"Link cache write failed for {snapshot.code}: {exc}")
            return False
        if not stored:
            logger.debug(f"Link cache fill for {snapshot.code} skipped, entry already present")
        return bool(stored)

    async def invalidate(self, code: str) -> None:
        try:
            await self._client.set(self.key(code), TOMBSTONE, ex=self._tombstone_ttl)
        except redis.RedisError as exc:
            CACHE_ERRORS_TOTAL.inc()
            logger.warning(f"Link cache invalidation failed for {code}: {exc}")

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError as exc:
            logger.warning(f"Redis ping failed: {exc}")
            return False
