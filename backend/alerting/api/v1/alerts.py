"""
FastAPI route: alert dispatch endpoints.

Provides endpoints to:
    POST /api/v1/alerts/send               — create and dispatch an alert
    GET  /api/v1/alerts/status/{id}        — alert with delivery statistics
    POST /api/v1/alerts/retry/{id}         — retry failed deliveries only
    GET  /api/v1/alerts                    — recent alerts (paginated)
    GET  /api/v1/alerts/active             — unexpired alerts
    GET  /api/v1/alerts/analytics          — campaign analytics
    GET  /api/v1/alerts/recipients/by-region — eligible recipients per region
    GET  /api/v1/alerts/health             — service health

Authentication happens upstream; the caller is identified by X-Actor-Id.
Mutating endpoints are rate limited per actor (or client IP) and report
the remaining budget in X-RateLimit-Remaining.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from backend.alerting.alerts.alert_service import AlertService
from backend.alerting.alerts.models import Region
from backend.alerting.api.schemas import (
    AlertDispatchIn,
    AlertStatusOut,
    DispatchOut,
    RetryOut,
)
from backend.alerting.core.errors import RateLimitError
from backend.alerting.core.rate_limit import RateLimiter

router = APIRouter(prefix="/api/v1/alerts", tags=["alert-dispatch"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_alert_service(request: Request) -> AlertService:
    return request.app.state.alert_service


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


async def enforce_rate_limit(
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
    x_actor_id: Optional[str] = Header(None),
) -> None:
    client_ip = request.client.host if request.client else "unknown"
    key = f"actor:{x_actor_id}" if x_actor_id else f"ip:{client_ip}"
    if not await limiter.hit(key):
        raise RateLimitError(
            "Too many alert requests, please try again later",
            retry_after=int(limiter.window_seconds),
        )
    response.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
    response.headers["X-RateLimit-Remaining"] = str(await limiter.remaining(key))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/send",
    response_model=DispatchOut,
    summary="Create and dispatch an alert",
    description=(
        "Validates the request, resolves recipients in the target regions and "
        "delivers over email, SMS and push. Partial delivery still returns 200."
    ),
    dependencies=[Depends(enforce_rate_limit)],
)
async def send_alert(
    body: AlertDispatchIn,
    service: AlertService = Depends(get_alert_service),
    x_actor_id: Optional[str] = Header(None),
):
    result = await service.dispatch(body.to_request(), actor_id=x_actor_id)
    return {"success": True, **result.to_dict()}


@router.get(
    "/status/{alert_id}",
    response_model=AlertStatusOut,
    summary="Get alert delivery status",
)
async def get_alert_status(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
):
    found = await service.get_alert(alert_id)
    return {
        "success": True,
        "alert": found.alert.to_dict(),
        "delivery_stats": found.delivery_stats.to_dict(),
    }


@router.post(
    "/retry/{alert_id}",
    response_model=RetryOut,
    summary="Retry failed deliveries",
    description="Re-sends only to recipients not yet reached on any channel.",
    dependencies=[Depends(enforce_rate_limit)],
)
async def retry_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service),
):
    result = await service.retry_failed_deliveries(alert_id)
    return {"success": True, "alert_id": alert_id, "retry": result.to_dict()}


@router.get("", summary="Recent alerts")
async def list_recent_alerts(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    regions: Optional[List[Region]] = Query(None),
    service: AlertService = Depends(get_alert_service),
):
    alerts, total = await service.get_recent_alerts(limit, offset, regions)
    return {
        "success": True,
        "alerts": [a.to_dict() for a in alerts],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/active", summary="Unexpired alerts, most severe first")
async def list_active_alerts(
    regions: Optional[List[Region]] = Query(None),
    service: AlertService = Depends(get_alert_service),
):
    alerts = await service.get_active_alerts(regions)
    return {"success": True, "alerts": [a.to_dict() for a in alerts]}


@router.get("/analytics", summary="Alert delivery analytics")
async def alert_analytics(
    start: Optional[datetime] = Query(None, description="Defaults to 30 days ago"),
    end: Optional[datetime] = Query(None, description="Defaults to now"),
    regions: Optional[List[Region]] = Query(None),
    service: AlertService = Depends(get_alert_service),
):
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=30)
    analytics = await service.get_alert_analytics(start, end, regions)
    return {
        "success": True,
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "analytics": analytics,
    }


@router.get("/recipients/by-region", summary="Eligible recipients per region")
async def recipients_by_region(service: AlertService = Depends(get_alert_service)):
    counts = await service.get_recipient_count_by_region()
    return {
        "success": True,
        "counts": {region.value: count for region, count in counts.items()},
    }


@router.get("/health", summary="Alert service health check")
async def health(service: AlertService = Depends(get_alert_service)):
    status = await service.health()
    healthy = status["database"] and any(status["notifications"].values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "service": "alert-dispatch",
        **status,
    }
