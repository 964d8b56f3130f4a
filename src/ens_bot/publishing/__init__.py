"""
Publishing Layer - rate-limited, exactly-once posting of stored records.

    - RateLimiter: rolling 24h cap derived from publish_attempts
    - Dispatcher: unposted -> posted / failed, one in-flight publish per record
    - PublishWorker: background drain, newest first, autopost toggles
    - XPublisher / DryRunPublisher: publishing targets
    - PostFormatter: category post text
"""
from .dispatcher import DispatchPreconditionError, DispatchResult, Dispatcher
from .formatter import PostFormatter
from .publisher import (
    DryRunPublisher,
    PublishError,
    PublishErrorKind,
    PublishResult,
    Publisher,
    XPublisher,
)
from .rate_limiter import RateLimiter, RateLimitStatus
from .worker import AutopostSettings, PublishWorker

__all__ = [
    "DispatchPreconditionError",
    "DispatchResult",
    "Dispatcher",
    "PostFormatter",
    "DryRunPublisher",
    "PublishError",
    "PublishErrorKind",
    "PublishResult",
    "Publisher",
    "XPublisher",
    "RateLimiter",
    "RateLimitStatus",
    "AutopostSettings",
    "PublishWorker",
]
