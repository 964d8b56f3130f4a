"""
Core Layer - scheduling and post-publish reactions.

    - Orchestrator: interval-driven poll adapters, re-entry guard, circuit breaker
    - FollowUpConsumer: one action per unposted -> posted transition
"""
from .follow_up import FollowUpAction, FollowUpConsumer, ReplyAction
from .scheduler import (
    SCHEDULER_ENABLED_KEY,
    AdapterRunState,
    AdapterState,
    Orchestrator,
    RunReport,
    SchedulerConfig,
)

__all__ = [
    "FollowUpAction",
    "FollowUpConsumer",
    "ReplyAction",
    "SCHEDULER_ENABLED_KEY",
    "AdapterRunState",
    "AdapterState",
    "Orchestrator",
    "RunReport",
    "SchedulerConfig",
]
