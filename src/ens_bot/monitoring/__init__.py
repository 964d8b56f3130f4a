"""
Operational monitoring: health probes, Telegram alerts and the operator
dashboard.

HealthChecker probes the database, the scheduler's circuit breaker, the
remaining daily publish budget and the offer feed (connection and event
staleness), each under its own timeout. AlertManager sends Telegram
messages and suppresses repeats of the same dedup key within a cooldown.
Dashboard is the Flask app used to start, stop and reset the scheduler and
to change autopost settings.
"""

from .alerting import AlertManager
from .dashboard import Dashboard
from .health_checker import (
    AggregateHealth,
    ComponentHealth,
    HealthChecker,
    HealthStatus,
)

__all__ = [
    "AggregateHealth",
    "AlertManager",
    "ComponentHealth",
    "Dashboard",
    "HealthChecker",
    "HealthStatus",
]
