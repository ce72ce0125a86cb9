"""
Health check aggregation — deep health check for the dispatch service.

Checks:
    • Store reachability (SELECT 1 / in-memory ping)
    • Channel readiness (email / SMS / push provider configured)
    • Rate-limiter backend (Redis ping when configured)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness checks
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from backend.alerting.core.config import settings

if TYPE_CHECKING:
    from backend.alerting.alerts.alert_service import AlertService
    from backend.alerting.core.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # alerts still go out on some channels
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_store(service: "AlertService") -> ComponentHealth:
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    try:
        await service.store.ping()
        comp.message = "Store reachable"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(service: "AlertService") -> ComponentHealth:
    """Degraded while at least one channel is still ready."""
    comp = ComponentHealth(name="channels")
    start = time.monotonic()
    readiness = await service.dispatcher.health()
    comp.details = readiness

    down = [name for name, ok in readiness.items() if not ok]
    if not down:
        comp.message = "All channels ready"
    elif len(down) == len(readiness):
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "No delivery channel ready"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Channels not ready: {', '.join(down)}"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_rate_limiter(limiter: "RateLimiter") -> ComponentHealth:
    comp = ComponentHealth(name="rate_limiter")
    start = time.monotonic()
    comp.details = {"backend": type(limiter).__name__}
    try:
        await limiter.ping()
        comp.message = "Rate limiter available"
    except Exception as e:
        # requests are still served; only the budget check is lost
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    service: "AlertService",
    limiter: Optional["RateLimiter"] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [check_store(service), check_channels(service)]
    if limiter is not None:
        checks.append(check_rate_limiter(limiter))

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check: %s", report.status.value)
    return report
