"""
Health probes for the running bot.

Each probe returns a ComponentHealth; check_all folds them into one status.

Probes:
    - database: trivial query round trip
    - scheduler: circuit breaker state and whether it is running
    - rate_limit: remaining daily publish budget
    - offer_feed: websocket connection and event staleness (when configured)
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Optional

if TYPE_CHECKING:
    from ens_bot.core.scheduler import Orchestrator
    from ens_bot.publishing.rate_limiter import RateLimiter
    from ens_bot.storage import Database

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    component: str
    status: HealthStatus
    message: str
    latency_ms: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "component": self.component,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 1) if self.latency_ms is not None else None,
        }


@dataclass
class AggregateHealth:
    """Worst status across all probes, plus the individual results."""

    status: HealthStatus
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "components": [c.to_dict() for c in self.components],
            "checked_at": self.checked_at.isoformat(),
        }


class HealthChecker:
    """
    Usage:
        checker = HealthChecker(db, orchestrator, limiter)
        overall = await checker.check_all()
        if overall.status == HealthStatus.UNHEALTHY:
            ...
    """

    def __init__(
        self,
        db: Optional["Database"] = None,
        orchestrator: Optional["Orchestrator"] = None,
        limiter: Optional["RateLimiter"] = None,
        offer_feed: Optional[Any] = None,
        low_budget_threshold: int = 10,
        feed_staleness_threshold: float = 1800.0,
        on_unhealthy: Optional[Callable[[ComponentHealth], None]] = None,
    ) -> None:
        """
        Args:
            db: Database to ping
            orchestrator: Scheduler whose breaker is checked
            limiter: Rate limiter whose remaining budget is checked
            offer_feed: Optional websocket feed (is_connected, last_event_at)
            low_budget_threshold: Remaining posts below which rate_limit warns
            feed_staleness_threshold: Seconds without offers before the feed is degraded
            on_unhealthy: Called for every UNHEALTHY component after check_all
        """
        self.db = db
        self._orchestrator = orchestrator
        self._limiter = limiter
        self._offer_feed = offer_feed
        self._low_budget_threshold = low_budget_threshold
        self._feed_staleness_threshold = feed_staleness_threshold
        self._on_unhealthy = on_unhealthy

    async def check_database(self) -> ComponentHealth:
        start_time = time.time()

        if self.db is None:
            return ComponentHealth(
                component="database",
                status=HealthStatus.UNHEALTHY,
                message="No database connection configured",
            )

        ok = await self.db.health_check()
        latency_ms = (time.time() - start_time) * 1000
        if not ok:
            return ComponentHealth(
                component="database",
                status=HealthStatus.UNHEALTHY,
                message="Database is not reachable",
                latency_ms=latency_ms,
            )
        return ComponentHealth(
            component="database",
            status=HealthStatus.HEALTHY,
            message="Database is accessible",
            latency_ms=latency_ms,
        )

    async def check_scheduler(self) -> ComponentHealth:
        if self._orchestrator is None:
            return ComponentHealth(
                component="scheduler",
                status=HealthStatus.WARNING,
                message="No scheduler configured",
            )

        if not self._orchestrator.is_healthy():
            return ComponentHealth(
                component="scheduler",
                status=HealthStatus.UNHEALTHY,
                message=(
                    f"Circuit breaker tripped after "
                    f"{self._orchestrator.consecutive_errors} consecutive errors"
                ),
            )
        if not self._orchestrator.is_running:
            return ComponentHealth(
                component="scheduler",
                status=HealthStatus.WARNING,
                message="Scheduler is stopped",
            )
        if self._orchestrator.consecutive_errors:
            return ComponentHealth(
                component="scheduler",
                status=HealthStatus.DEGRADED,
                message=f"{self._orchestrator.consecutive_errors} consecutive errors",
            )
        return ComponentHealth(
            component="scheduler",
            status=HealthStatus.HEALTHY,
            message="Scheduler is running",
        )

    async def check_rate_limit(self) -> ComponentHealth:
        if self._limiter is None:
            return ComponentHealth(
                component="rate_limit",
                status=HealthStatus.WARNING,
                message="No rate limiter configured",
            )

        status = await self._limiter.can_publish()
        if not status.allowed:
            return ComponentHealth(
                component="rate_limit",
                status=HealthStatus.DEGRADED,
                message=f"Daily cap reached, next slot at {status.reset_at}",
            )
        if status.remaining < self._low_budget_threshold:
            return ComponentHealth(
                component="rate_limit",
                status=HealthStatus.WARNING,
                message=f"Only {status.remaining} posts left in window",
            )
        return ComponentHealth(
            component="rate_limit",
            status=HealthStatus.HEALTHY,
            message=f"{status.remaining}/{status.cap} posts available",
        )

    async def check_offer_feed(self) -> ComponentHealth:
        if not getattr(self._offer_feed, "is_connected", False):
            return ComponentHealth(
                component="offer_feed",
                status=HealthStatus.DEGRADED,
                message="Offer feed is disconnected",
            )

        last_event_at = getattr(self._offer_feed, "last_event_at", None)
        if last_event_at is not None:
            age_seconds = (datetime.now(timezone.utc) - last_event_at).total_seconds()
            if age_seconds > self._feed_staleness_threshold:
                return ComponentHealth(
                    component="offer_feed",
                    status=HealthStatus.DEGRADED,
                    message=f"No offers for {age_seconds:.0f}s",
                )

        return ComponentHealth(
            component="offer_feed",
            status=HealthStatus.HEALTHY,
            message="Offer feed is connected",
        )

    async def _probe(self, name: str, check: Callable, budget: float) -> ComponentHealth:
        try:
            return await asyncio.wait_for(check(), timeout=budget)
        except asyncio.TimeoutError:
            problem = f"no answer within {budget:.1f}s, timed out"
        except Exception as e:
            problem = f"probe raised {type(e).__name__}: {e}"
        return ComponentHealth(component=name, status=HealthStatus.UNHEALTHY, message=problem)

    async def check_all(self, timeout: float = 5.0) -> AggregateHealth:
        """Probe each component in turn; `timeout` is split evenly between them."""
        probes = {
            "database": self.check_database,
            "scheduler": self.check_scheduler,
            "rate_limit": self.check_rate_limit,
        }
        if self._offer_feed is not None:
            probes["offer_feed"] = self.check_offer_feed

        budget = timeout / len(probes)
        components = [await self._probe(name, check, budget) for name, check in probes.items()]

        for component in components:
            if component.status is HealthStatus.UNHEALTHY and self._on_unhealthy:
                try:
                    self._on_unhealthy(component)
                except Exception as e:
                    logger.error(f"on_unhealthy hook raised for {component.component}: {e}")

        return AggregateHealth(status=_worst(components), components=components)


def _worst(components: List[ComponentHealth]) -> HealthStatus:
    seen = {c.status for c in components}
    if HealthStatus.UNHEALTHY in seen:
        return HealthStatus.UNHEALTHY
    if seen & {HealthStatus.DEGRADED, HealthStatus.WARNING}:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY
