"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Record store reachability (memory or SQL)
    • Change feed (open channels, disconnected channels)
    • Redis change relay (when CHANGEFEED_BACKEND=redis)
    • Dispatch configuration (concierge number, webhook)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.relay.runtime import RelayRuntime

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
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


# Track application start time
_start_time = time.monotonic()


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


async def check_store(runtime: "RelayRuntime") -> ComponentHealth:
    """Round-trip the record store."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    try:
        await runtime.stores.ping()
        comp.message = f"{settings.STORE_BACKEND} store reachable"
        if settings.STORE_BACKEND == "sql":
            comp.details = {"url": _redact(settings.DATABASE_URL)}
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_change_feed(runtime: "RelayRuntime") -> ComponentHealth:
    """Count open and disconnected channels."""
    comp = ComponentHealth(name="change_feed")
    start = time.monotonic()
    names = runtime.feed.channel_names
    offline = [
        name for name in names
        if not runtime.feed.get_channel(name).connected
    ]
    comp.details = {"channels": len(names), "disconnected": len(offline)}
    if offline:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{len(offline)} channel(s) disconnected"
    else:
        comp.message = "Delivering"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis_relay(runtime: "RelayRuntime") -> ComponentHealth:
    """Redis pub/sub relay state (only when enabled)."""
    comp = ComponentHealth(name="redis_relay")
    start = time.monotonic()
    relay = runtime.redis_relay
    if relay is None:
        comp.message = "Disabled (single process)"
    else:
        comp.details = {**relay.status(), "url": _redact(relay.url)}
        if relay.connected:
            comp.message = "Subscribed"
        else:
            comp.status = HealthStatus.DEGRADED
            comp.message = "Not subscribed; cross-process delivery paused"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_dispatch(runtime: "RelayRuntime") -> ComponentHealth:
    """Dispatch bridge configuration."""
    comp = ComponentHealth(name="dispatch")
    start = time.monotonic()
    comp.details = {
        "concierge_number": runtime.bridge.concierge_number,
        "channels": [c.name for c in runtime.bridge.channels],
        "webhook": bool(settings.DISPATCH_WEBHOOK_URL),
    }
    comp.message = "Dispatch configured"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(runtime: "RelayRuntime") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_store(runtime),
        check_change_feed(runtime),
        check_redis_relay(runtime),
        check_dispatch(runtime),
    ]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
