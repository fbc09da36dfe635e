"""Link management: create, read, list, update and delete short links.

Creation delegates code selection to ``CodeAllocator``; every write that can
change how a code resolves invalidates the Redis link cache entry and purges
the edge proxy cache, so a disabled, re-targeted or deleted link takes
effect on the next redirect.

Deleting a link leaves its click events in place: ``click_events.link_id``
has no foreign key and ids are never reused.
"""

import logging
import math
import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from shortlink.allocator import CodeAllocator
from shortlink.audit import AuditAction, AuditLogger
from shortlink.cache import LinkCache
from shortlink.edge_cache import EdgeCachePurger
from shortlink.errors import AppError, NotFoundError, ValidationError
from shortlink.models import ShortLink
from shortlink.passwords import hash_password
from shortlink.schemas import LinkCreate, LinkUpdate, Pagination

if TYPE_CHECKING:
    from shortlink.dependencies import RequestContext

__all__ = ["LinkService"]

LINK_OPERATIONS_TOTAL = Counter(
    "shortlink_link_operations_total",
    "Link management operations",
    ["operation", "status"],
)
LINK_CREATION_DURATION = Histogram(
    "shortlink_link_creation_duration_seconds",
    "Time taken to create short links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)


class LinkService:
    def __init__(
        self,
        session: AsyncSession,
        allocator: CodeAllocator,
        cache: LinkCache | None = None,
        edge_purger: EdgeCachePurger | None = None,
        audit: AuditLogger | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        actor: str | None = None,
    ) -> None:
        self._db = session
        self._allocator = allocator
        self._cache = cache
        self._edge_purger = edge_purger
        self._audit = audit or AuditLogger(enabled=False)
        self._logger = logger or logging.getLogger(__name__)
        self._actor = actor

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "LinkService":
        services = ctx.service_manager
        return cls(
            ctx.database,
            services.allocator,
            cache=services.link_cache,
            edge_purger=services.edge_purger,
            audit=services.audit,
            logger=ctx.logger,
            actor=ctx.client_ip,
        )

    async def create(self, request: LinkCreate) -> ShortLink:
        """Allocate a code and persist the link.

        Raises:
            ValidationError: malformed custom code.
            ConflictError: custom code reserved or taken.
            AllocationExhaustedError: no generated code could be placed.
        """
        start_time = time.perf_counter()
        password_hash = await run_in_threadpool(hash_password, request.password) if request.password else None

        def build_link(code: str) -> ShortLink:
            return ShortLink(
                code=code,
                target_url=request.url,
                expires_at=request.expires_at,
                password_hash=password_hash,
                owner_id=request.owner_id,
                is_active=True,
                qr_generated=False,
            )

        try:
            link = await self._allocator.allocate(self._db, build_link, custom_code=request.custom_code)
        except AppError as exc:
            LINK_OPERATIONS_TOTAL.labels(operation="create", status=exc.error_code).inc()
            self._logger.warning(f"Link creation failed: {exc.message}")
            self._audit.record(
                self._actor,
                AuditAction.URL_CREATE,
                "failure",
                details={"custom_code": request.custom_code, "error": exc.error_code},
            )
            raise

        duration = time.perf_counter() - start_time
        LINK_CREATION_DURATION.observe(duration)
        LINK_OPERATIONS_TOTAL.labels(operation="create", status="success").inc()
        self._logger.info(f"Link created: {link.code} (id={link.id}) in {duration:.3f}s")
        self._audit.record(
            self._actor,
            AuditAction.URL_CREATE,
            "success",
            resource_id=link.id,
            details={"code": link.code, "password_protected": link.password_protected},
        )
        return link

    async def get(self, link_id: int) -> ShortLink:
        link = await self._db.get(ShortLink, link_id)
        if link is None:
            raise NotFoundError("Link not found", details={"id": link_id})
        return link

    async def list_links(
        self,
        page: int = 1,
        limit: int = 20,
        active: bool | None = None,
        owner_id: str | None = None,
    ) -> tuple[list[ShortLink], Pagination]:
        stmt = select(ShortLink)
        count_stmt = select(func.count(ShortLink.id))
        if active is not None:
            stmt = stmt.where(ShortLink.is_active == active)
            count_stmt = count_stmt.where(ShortLink.is_active == active)
        if owner_id is not None:
            stmt = stmt.where(ShortLink.owner_id == owner_id)
            count_stmt = count_stmt.where(ShortLink.owner_id == owner_id)

        total = (await self._db.execute(count_stmt)).scalar_one()
        result = await self._db.execute(
            stmt.order_by(ShortLink.created_at.desc(), ShortLink.id.desc()).offset((page - 1) * limit).limit(limit)
        )
        links = list(result.scalars().all())

        total_pages = math.ceil(total / limit) if total else 0
        pagination = Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )
        return links, pagination

    async def update(self, link_id: int, request: LinkUpdate) -> ShortLink:
        link = await self.get(link_id)
        fields = request.model_fields_set
        changed: list[str] = []

        if "url" in fields:
            if request.url is None:
                raise ValidationError("url cannot be cleared", field="url")
            link.target_url = request.url
            changed.append("url")
        if "expires_at" in fields:
            link.expires_at = request.expires_at
            changed.append("expires_at")
        if "is_active" in fields and request.is_active is not None:
            link.is_active = request.is_active
            changed.append("is_active")
        if "qr_generated" in fields and request.qr_generated is not None:
            link.qr_generated = request.qr_generated
            changed.append("qr_generated")

        if request.password_protected is False:
            if request.password:
                raise ValidationError("password given while disabling protection", field="password")
            link.password_hash = None
            changed.append("password")
        elif request.password:
            link.password_hash = await run_in_threadpool(hash_password, request.password)
            changed.append("password")
        elif request.password_protected and link.password_hash is None:
            raise ValidationError("a password is required to protect the link", field="password")

        await self._db.commit()
        await self._db.refresh(link)
        await self._invalidate(link.code)

        LINK_OPERATIONS_TOTAL.labels(operation="update", status="success").inc()
        self._logger.info(f"Link {link.code} updated: {', '.join(changed) or 'no changes'}")
        self._audit.record(
            self._actor,
            AuditAction.URL_UPDATE,
            "success",
            resource_id=link.id,
            details={"fields": changed},
        )
        return link

    async def delete(self, link_id: int) -> None:
        link = await self.get(link_id)
        code = link.code
        await self._db.delete(link)
        await self._db.commit()
        await self._invalidate(code)

        LINK_OPERATIONS_TOTAL.labels(operation="delete", status="success").inc()
        self._logger.info(f"Link {code} (id={link_id}) deleted")
        self._audit.record(self._actor, AuditAction.URL_DELETE, "success", resource_id=link_id, details={"code": code})

    async def _invalidate(self, code: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate(code)
        if self._edge_purger is not None:
            await self._edge_purger.purge(code)
