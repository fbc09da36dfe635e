"""Edge proxy cache purge.

Redirects cached by the edge proxy never reach the dispatcher, so a link
that is disabled, re-targeted, re-protected or deleted must also be evicted
from the proxy. ``EdgeCachePurger`` issues ``GET <EDGE_PURGE_URL>`` with the
short code substituted, after the management write has committed.

Response Handling
=================
::
    2xx   ── purged
    404   ── nothing cached for the code, treated as purged
    other ── logged + counted, the management write still succeeds
    error ── logged + counted, the management write still succeeds

How to Use
===========
::
    purger = EdgeCachePurger("http://127.0.0.1:8080/purge/s/{code}")
    await purger.purge("abc123")
    await purger.aclose()
"""

import logging

import httpx
from prometheus_client import Counter

from shortlink.config import Settings

__all__ = ["EdgeCachePurger"]

logger = logging.getLogger(__name__)

EDGE_PURGES_TOTAL = Counter(
    "shortlink_edge_purges_total",
    "Edge proxy cache purge requests",
    ["result"],
)


class EdgeCachePurger:
    def __init__(
        self,
        url_template: str,
        timeout: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url_template = url_template
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EdgeCachePurger | None":
        if not settings.EDGE_PURGE_URL:
            return None
        return cls(settings.EDGE_PURGE_URL, timeout=settings.EDGE_PURGE_TIMEOUT_SECONDS)

    def url_for(self, code: str) -> str:
        if "{code}" in self._url_template:
            return self._url_template.replace("{code}", code)
        return f"{self._url_template.rstrip('/')}/{code}"

    async def purge(self, code: str) -> bool:
        """Evict *code* from the edge cache. Never raises."""
        url = self.url_for(code)
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            EDGE_PURGES_TOTAL.labels(result="error").inc()
            logger.warning(f"Edge cache purge for {code} failed: {exc}")
            return False

        if response.is_success:
            EDGE_PURGES_TOTAL.labels(result="purged").inc()
            logger.info(f"Edge cache purged for {code}")
            return True
        if response.status_code == 404:
            EDGE_PURGES_TOTAL.labels(result="not_cached").inc()
            logger.debug(f"No edge cache entry for {code}")
            return True
        EDGE_PURGES_TOTAL.labels(result="rejected").inc()
        logger.warning(f"Edge cache purge for {code} rejected: HTTP {response.status_code}")
        return False

    async def aclose(self) -> None:
        await self._client.aclose()
