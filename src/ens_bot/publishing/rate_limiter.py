"""
Rolling 24-hour publish cap.

State lives entirely in publish_attempts: an attempt counts against the cap
for 24 hours after it was made, whether it succeeded or not. can_publish()
reads the window on every call; nothing is cached, because several records
can be ready to publish at the same moment.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ens_bot.storage.repositories import PublishAttemptRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    """
    Window snapshot.

    reset_at is when the oldest attempt in the window leaves it, i.e. when
    one slot frees up. None while the window is empty.
    """

    allowed: bool
    remaining: int
    reset_at: Optional[datetime]
    used: int = 0
    cap: int = 0

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "used": self.used,
            "cap": self.cap,
        }


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(PublishAttemptRepository(db), daily_cap=100)
        status = await limiter.can_publish()
        if status.allowed:
            ...
            await limiter.record(success=True, timestamp=now, record_id=record.id)
    """

    def __init__(
        self,
        attempts: PublishAttemptRepository,
        daily_cap: int = 100,
        window: timedelta = timedelta(hours=24),
    ) -> None:
        if daily_cap < 0:
            raise ValueError(f"daily_cap must be >= 0, got {daily_cap}")
        self._attempts = attempts
        self.daily_cap = daily_cap
        self.window = window

    async def can_publish(self, now: Optional[datetime] = None) -> RateLimitStatus:
        now = now or datetime.now(timezone.utc)
        used, oldest = await self._attempts.window_stats(now - self.window)
        remaining = max(self.daily_cap - used, 0)
        return RateLimitStatus(
            allowed=used < self.daily_cap,
            remaining=remaining,
            reset_at=oldest + self.window if oldest is not None else None,
            used=used,
            cap=self.daily_cap,
        )

    async def record(
        self,
        success: bool,
        timestamp: Optional[datetime] = None,
        record_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log one attempt. Failed attempts consume a slot too."""
        timestamp = timestamp or datetime.now(timezone.utc)
        await self._attempts.record(timestamp, success, record_id=record_id, error=error)
        if not success:
            logger.debug(f"Failed publish attempt recorded for record {record_id}: {error}")
