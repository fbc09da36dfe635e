"""FastAPI route definitions for the short-link REST API.

This module provides all HTTP endpoints with dependency injection,
typed errors and response serialization for the short-link service.

API Endpoint Overview
=====================
::
    GET    /health                       └─ HealthResponse (200)

    POST   /api/urls                     ├─ LinkCreate
                                         └─ LinkResponse (201) or 400/409/503
    GET    /api/urls                     └─ LinkListResponse (200)
    GET    /api/urls/stats/summary       └─ SummaryResponse (200)
    GET    /api/stats/daily              └─ list[DailyCount] (200)
    GET    /api/urls/{id}                └─ LinkResponse (200) or 404
    PUT    /api/urls/{id}                └─ LinkResponse (200) or 400/404
    DELETE /api/urls/{id}                └─ 204 or 404
    GET    /api/urls/{id}/stats          └─ LinkStatsResponse (200) or 404

    GET    /s/{code}                     └─ 302 or 401/403/404/410/429
    POST   /s/{code}                     └─ ResolvedLinkResponse (200) or 401/403/404/410/429
    POST   /ad/{code}/view               └─ AdEventResponse (200) or 404/410
    POST   /ad/{code}/click              └─ AdEventResponse (200) or 404/410

Request Flow Diagram
====================
::
    ┌─────────────┐
    │  HTTP       │
    │  Request    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ RateLimit   │── over limit ──► 429 + Retry-After
    │ Guard       │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Validate &  │── invalid ─────► 400
    │ Parse       │
    │ (Pydantic)  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Inject      │
    │ Dependencies│
    │ (DB, Cache) │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Call Service│── AppError ────► JSON error (errors.py)
    │ Layer       │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Serialize   │
    │ Response    │
    └─────────────┘

Key Behaviours
===============
- Every route is behind the general per-client rate limiter.
- Password attempts are additionally limited by the stricter password limiter.
- Redirects answer 302; the password for GET travels in ``X-Link-Password``.
- Error responses never contain the target URL of an unresolved link.
"""

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from shortlink.audit import AuditAction
from shortlink.dependencies import (
    RequestContext,
    ServiceManager,
    get_dispatcher,
    get_link_service,
    get_request_context,
    get_service_manager,
    get_stats_service,
)
from shortlink.dispatcher import RedirectDispatcher, is_qr_marker
from shortlink.enums import EventType, HealthStatus
from shortlink.errors import AuthError, ValidationError
from shortlink.link_service import LinkService
from shortlink.rate_limit import RateLimitGuard
from shortlink.schemas import (
    AdEventResponse,
    DailyCount,
    HealthResponse,
    LinkCreate,
    LinkListItem,
    LinkListResponse,
    LinkResponse,
    LinkStatsResponse,
    LinkUpdate,
    PasswordSubmit,
    ResolvedLinkResponse,
    SummaryResponse,
)
from shortlink.stats import StatsService

__all__ = ["router"]

PASSWORD_HEADER = "X-Link-Password"

general_limit = RateLimitGuard("general")
password_header_limit = RateLimitGuard("password", only_with_header=PASSWORD_HEADER)
password_limit = RateLimitGuard("password")

router = APIRouter(dependencies=[Depends(general_limit)])


def _stats_days(days: int | None, ctx: RequestContext) -> int:
    if days is None:
        return ctx.settings.STATS_DEFAULT_DAYS
    if days > ctx.settings.STATS_MAX_DAYS:
        raise ValidationError(f"days must be at most {ctx.settings.STATS_MAX_DAYS}", field="days")
    return days


# ============================================================================
# HEALTH
# ============================================================================


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(
    ctx: RequestContext = Depends(get_request_context),
    manager: ServiceManager = Depends(get_service_manager),
) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as exc:
        ctx.logger.error(f"Database health check failed: {exc}")
        db_status = HealthStatus.UNHEALTHY

    cache_status = HealthStatus.DISABLED
    if manager.link_cache is not None:
        cache_status = HealthStatus.HEALTHY if await manager.link_cache.ping() else HealthStatus.UNHEALTHY

    ingestor_status = HealthStatus.HEALTHY if manager.ingestor.running else HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY
        and ingestor_status is HealthStatus.HEALTHY
        and cache_status is not HealthStatus.UNHEALTHY
        else HealthStatus.UNHEALTHY
    )
    if status is not HealthStatus.HEALTHY:
        ctx.logger.warning(f"Health check degraded: db={db_status} cache={cache_status} ingestor={ingestor_status}")
    return HealthResponse(
        status=status,
        database=db_status,
        cache=cache_status,
        ingestor=ingestor_status,
        queue_depth=manager.ingestor.depth,
    )


# ============================================================================
# LINK MANAGEMENT
# ============================================================================


@router.post("/api/urls", response_model=LinkResponse, status_code=201, tags=["urls"])
async def create_link(
    payload: LinkCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.create(payload)
    return LinkResponse.from_model(link, ctx.settings.BASE_URL)


@router.get("/api/urls", response_model=LinkListResponse, tags=["urls"])
async def list_links(
    response: Response,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    active: bool | None = None,
    owner_id: str | None = None,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    stats: StatsService = Depends(get_stats_service),
) -> LinkListResponse:
    links, pagination = await service.list_links(page=page, limit=limit, active=active, owner_id=owner_id)
    totals = await stats.link_totals(link.id for link in links)
    base_url = ctx.settings.BASE_URL
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return LinkListResponse(
        data=[
            LinkListItem(**LinkResponse.from_model(link, base_url).model_dump(), stats=totals[link.id])
            for link in links
        ],
        pagination=pagination,
    )


@router.get("/api/urls/stats/summary", response_model=SummaryResponse, tags=["stats"])
async def stats_summary(
    owner_id: str | None = None,
    stats: StatsService = Depends(get_stats_service),
) -> SummaryResponse:
    return await stats.summary(owner_id=owner_id)


@router.get("/api/stats/daily", response_model=list[DailyCount], tags=["stats"])
async def daily_stats(
    days: int | None = Query(None, ge=1),
    owner_id: str | None = None,
    ctx: RequestContext = Depends(get_request_context),
    stats: StatsService = Depends(get_stats_service),
) -> list[DailyCount]:
    return await stats.daily_counts(days=_stats_days(days, ctx), owner_id=owner_id)


@router.get("/api/urls/{link_id}", response_model=LinkResponse, tags=["urls"])
async def get_link(
    link_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.get(link_id)
    return LinkResponse.from_model(link, ctx.settings.BASE_URL)


@router.put("/api/urls/{link_id}", response_model=LinkResponse, tags=["urls"])
async def update_link(
    link_id: int,
    payload: LinkUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.update(link_id, payload)
    return LinkResponse.from_model(link, ctx.settings.BASE_URL)


@router.delete("/api/urls/{link_id}", status_code=204, tags=["urls"])
async def delete_link(
    link_id: int,
    service: LinkService = Depends(get_link_service),
) -> Response:
    await service.delete(link_id)
    return Response(status_code=204)


@router.get("/api/urls/{link_id}/stats", response_model=LinkStatsResponse, tags=["stats"])
async def link_stats(
    link_id: int,
    days: int | None = Query(None, ge=1),
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    stats: StatsService = Depends(get_stats_service),
) -> LinkStatsResponse:
    link = await service.get(link_id)
    days = _stats_days(days, ctx)
    return LinkStatsResponse(
        link_id=link.id,
        code=link.code,
        days=days,
        total=await stats.link_total(link.id),
        daily=await stats.daily_counts(link_id=link.id, days=days),
    )


# ============================================================================
# REDIRECT
# ============================================================================


@router.get("/s/{code}", tags=["redirect"], dependencies=[Depends(password_header_limit)])
async def redirect_to_target(
    code: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: RedirectDispatcher = Depends(get_dispatcher),
) -> RedirectResponse:
    qr = is_qr_marker(request.query_params.get(ctx.settings.QR_MARKER_PARAM))
    resolution = await dispatcher.resolve(
        code,
        password=request.headers.get(PASSWORD_HEADER),
        qr=qr,
        user_agent=ctx.user_agent,
    )
    ctx.logger.debug(f"Redirect {code} -> link {resolution.link_id} ({resolution.event_type})")
    return RedirectResponse(url=resolution.target_url, status_code=302)


@router.post(
    "/s/{code}",
    response_model=ResolvedLinkResponse,
    tags=["redirect"],
    dependencies=[Depends(password_limit)],
)
async def submit_link_password(
    code: str,
    payload: PasswordSubmit,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: RedirectDispatcher = Depends(get_dispatcher),
) -> ResolvedLinkResponse:
    audit = ctx.service_manager.audit
    qr = is_qr_marker(request.query_params.get(ctx.settings.QR_MARKER_PARAM))
    try:
        resolution = await dispatcher.resolve(code, password=payload.password, qr=qr, user_agent=ctx.user_agent)
    except AuthError:
        audit.record(ctx.client_ip, AuditAction.URL_PASSWORD_CHECK, "failure", details={"code": code})
        raise
    audit.record(
        ctx.client_ip,
        AuditAction.URL_PASSWORD_CHECK,
        "success",
        resource_id=resolution.link_id,
        details={"code": code},
    )
    return ResolvedLinkResponse(code=resolution.code, target_url=resolution.target_url)


# ============================================================================
# AD INTERACTIONS
# ============================================================================


@router.post("/ad/{code}/view", response_model=AdEventResponse, tags=["ads"])
async def record_ad_view(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: RedirectDispatcher = Depends(get_dispatcher),
) -> AdEventResponse:
    await dispatcher.record_ad_event(code, EventType.AD_VIEW, user_agent=ctx.user_agent)
    return AdEventResponse()


@router.post("/ad/{code}/click", response_model=AdEventResponse, tags=["ads"])
async def record_ad_click(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: RedirectDispatcher = Depends(get_dispatcher),
) -> AdEventResponse:
    resolution = await dispatcher.record_ad_event(code, EventType.AD_CLICK, user_agent=ctx.user_agent)
    return AdEventResponse(target_url=resolution.target_url)
