"""
PublishWorker - drains unposted records through the dispatcher.

Each pass, for every category with autopost enabled:
    - take the newest unposted records
    - stop at the first one older than the category's post max age; it and
      everything older stay unposted
    - check the rate limiter before every attempt; stop the pass when it
      says no
    - pause post_interval between posts

A pass runs every idle_interval seconds, or as soon as the pipeline stores
a new record (wake()).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from ens_bot.storage.models import EventCategory, IngestedRecord, RecordStatus
from ens_bot.storage.repositories import RecordRepository, SystemStateRepository

from .dispatcher import DispatchPreconditionError, Dispatcher
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

AUTOPOST_KEY = "autopost_enabled"


def _category_key(category: EventCategory) -> str:
    return f"autopost_{category.value}_enabled"


def _default_max_ages() -> dict[EventCategory, timedelta]:
    return {
        EventCategory.SALE: timedelta(hours=1),
        EventCategory.REGISTRATION: timedelta(hours=2),
        EventCategory.BID: timedelta(hours=24),
    }


@dataclass
class AutopostSettings:
    """Operator toggles, persisted in system_state."""

    enabled: bool = False
    categories: dict[EventCategory, bool] = field(
        default_factory=lambda: {c: True for c in EventCategory}
    )
    max_ages: dict[EventCategory, timedelta] = field(default_factory=_default_max_ages)

    def is_enabled(self, category: EventCategory) -> bool:
        return self.enabled and self.categories.get(category, False)

    @classmethod
    async def load(
        cls, state: SystemStateRepository, defaults: Optional["AutopostSettings"] = None
    ) -> "AutopostSettings":
        defaults = defaults or cls()
        settings = cls(
            enabled=await state.get_bool(AUTOPOST_KEY, defaults.enabled),
            max_ages=dict(defaults.max_ages),
        )
        for category in EventCategory:
            settings.categories[category] = await state.get_bool(
                _category_key(category), defaults.categories.get(category, True)
            )
        return settings

    async def save(self, state: SystemStateRepository) -> None:
        await state.set_bool(AUTOPOST_KEY, self.enabled)
        for category, enabled in self.categories.items():
            await state.set_bool(_category_key(category), enabled)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "categories": {c.value: v for c, v in self.categories.items()},
            "max_age_seconds": {
                c.value: int(a.total_seconds()) for c, a in self.max_ages.items()
            },
        }


class PublishWorker:
    """
    Background publisher.

    Usage:
        worker = PublishWorker(records, dispatcher, limiter, state)
        pipeline.add_listener(worker.wake)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        records: RecordRepository,
        dispatcher: Dispatcher,
        limiter: RateLimiter,
        state: SystemStateRepository,
        settings: Optional[AutopostSettings] = None,
        post_interval: float = 20.0,
        idle_interval: float = 60.0,
        batch_size: int = 10,
    ) -> None:
        self._records = records
        self._dispatcher = dispatcher
        self._limiter = limiter
        self._state = state
        self.settings = settings or AutopostSettings()
        self.post_interval = post_interval
        self.idle_interval = idle_interval
        self.batch_size = batch_size

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self.last_pass_at: Optional[datetime] = None
        self.posted_total = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def load_settings(self) -> AutopostSettings:
        self.settings = await AutopostSettings.load(self._state, self.settings)
        logger.info(f"Autopost settings: {self.settings.to_dict()}")
        return self.settings

    async def update_settings(
        self,
        enabled: Optional[bool] = None,
        categories: Optional[dict[EventCategory, bool]] = None,
    ) -> AutopostSettings:
        if enabled is not None:
            self.settings.enabled = enabled
        for category, value in (categories or {}).items():
            self.settings.categories[category] = value
        await self.settings.save(self._state)
        self.wake()
        return self.settings

    def sync_max_ages(self, policies: dict) -> None:
        """Follow the filter's max age per category (PolicyStore on_change hook)."""
        for category, policy in policies.items():
            self.settings.max_ages[category] = policy.max_age
        self.wake()

    def wake(self, record: Optional[IngestedRecord] = None) -> None:
        """Run a pass now. Usable as a pipeline listener."""
        self._wake_event.set()

    async def start(self) -> None:
        if self._running:
            logger.warning("PublishWorker already running")
            return
        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="publish_worker")
        logger.info(f"Publish worker started (post_interval={self.post_interval}s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        self._wake_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=30.0)
            except asyncio.TimeoutError:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Publish worker stopped")

    async def _loop(self) -> None:
        while self._running:
            self._wake_event.clear()
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in publish pass: {e}")

            if not self._running:
                break
            wake = asyncio.ensure_future(self._wake_event.wait())
            stop = asyncio.ensure_future(self._stop_event.wait())
            try:
                await asyncio.wait(
                    {wake, stop},
                    timeout=self.idle_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                wake.cancel()
                stop.cancel()

    async def _pause(self, seconds: float) -> bool:
        """Sleep unless stopped first. True if the worker should keep going."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return False
        except asyncio.TimeoutError:
            return not self._stop_event.is_set()

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """One drain pass. Returns the number of records posted."""
        self.last_pass_at = datetime.now(timezone.utc)
        if not self.settings.enabled:
            return 0

        posted = 0
        for category in EventCategory:
            if not self.settings.is_enabled(category):
                continue
            count, keep_going = await self._drain_category(category, now)
            posted += count
            if not keep_going:
                break
        self.posted_total += posted
        return posted

    async def _drain_category(
        self, category: EventCategory, now: Optional[datetime]
    ) -> tuple[int, bool]:
        """(posts made for one category, whether the pass may continue)."""
        max_age = self.settings.max_ages.get(category)
        candidates = await self._records.list_recent(
            category, limit=self.batch_size, status=RecordStatus.UNPOSTED
        )
        posted = 0

        for record in candidates:
            current = now or datetime.now(timezone.utc)
            if max_age is not None and current - record.occurred_at > max_age:
                logger.info(
                    f"Stopping {category.value} drain at #{record.id} {record.display_name}: "
                    f"older than {max_age}"
                )
                break
            if self._dispatcher.is_in_flight(record.id):
                continue

            status = await self._limiter.can_publish(current)
            if not status.allowed:
                logger.warning(
                    f"Daily post cap reached ({status.used}/{status.cap}), "
                    f"next slot at {status.reset_at}"
                )
                return posted, False

            try:
                result = await self._dispatcher.publish(record)
            except DispatchPreconditionError as e:
                logger.warning(f"Skipping #{record.id}: {e}")
                continue

            if not result.success:
                if not result.permanent:
                    # Target is struggling; try again next pass
                    break
                continue

            posted += 1
            if not await self._pause(self.post_interval):
                return posted, False

        return posted, True
