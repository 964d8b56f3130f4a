"""
Orchestrator - runs poll adapters on fixed, independent intervals.

Per adapter:
    Idle -> Running -> Idle, guarded by an asyncio.Lock checked without
    waiting. A tick (or run_now) that finds the lock held is dropped, never
    queued, so a slow upstream can not cause overlapping polls.

Circuit breaker:
    Any run that raises increments a shared consecutive-error count; any
    successful run resets it. At max_consecutive_errors every adapter is
    stopped, the scheduler_enabled flag is persisted as false and an alert
    is raised. Scheduling stays off until reset_error_counter() and start().

stop() persists scheduler_enabled=false (a manual stop survives restarts);
shutdown() leaves the flag alone so the next process resumes scheduling.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from ens_bot.storage.repositories import SystemStateRepository

logger = logging.getLogger(__name__)

SCHEDULER_ENABLED_KEY = "scheduler_enabled"


class Pollable(Protocol):
    source_id: str

    async def poll(self) -> Any:
        ...


TripCallback = Callable[[int, str], Union[None, Awaitable[None]]]


class AdapterRunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class SchedulerConfig:
    """Intervals per source id and the breaker ceiling."""

    intervals: dict[str, float] = field(
        default_factory=lambda: {"sales": 300.0, "bids": 120.0}
    )
    default_interval: float = 300.0
    max_consecutive_errors: int = 5
    initial_delay: float = 0.0

    def interval_for(self, source_id: str) -> float:
        return self.intervals.get(source_id, self.default_interval)


@dataclass
class AdapterState:
    """Bookkeeping for one adapter."""

    adapter: Pollable
    interval: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    runs: int = 0
    failures: int = 0
    skipped_ticks: int = 0
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Any = None
    next_run_at: Optional[datetime] = None
    in_flight: set = field(default_factory=set)

    @property
    def source_id(self) -> str:
        return self.adapter.source_id

    @property
    def state(self) -> AdapterRunState:
        return AdapterRunState.RUNNING if self.lock.locked() else AdapterRunState.IDLE

    def to_dict(self) -> dict:
        result = self.last_result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {
            "source_id": self.source_id,
            "state": self.state.value,
            "interval_seconds": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "skipped_ticks": self.skipped_ticks,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
            "last_result": result,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }


@dataclass(frozen=True)
class RunReport:
    """What one guarded run did. ran=False means the run was dropped."""

    source_id: str
    ran: bool
    success: bool = False
    result: Any = None
    error: Optional[str] = None


class Orchestrator:
    """
    Usage:
        orchestrator = Orchestrator([sales_poller, bids_poller], state_repo, config)
        await orchestrator.initialize()      # resumes if previously enabled
        await orchestrator.run_now("sales")
        status = orchestrator.status()
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        adapters: list[Pollable],
        state: SystemStateRepository,
        config: Optional[SchedulerConfig] = None,
        on_trip: Optional[TripCallback] = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._state = state
        self._on_trip = on_trip
        self._adapters: dict[str, AdapterState] = {}
        for adapter in adapters:
            if adapter.source_id in self._adapters:
                raise ValueError(f"Duplicate adapter source_id '{adapter.source_id}'")
            self._adapters[adapter.source_id] = AdapterState(
                adapter=adapter,
                interval=self._config.interval_for(adapter.source_id),
            )

        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self.consecutive_errors = 0
        self.tripped = False
        self.tripped_at: Optional[datetime] = None
        self.started_at: Optional[datetime] = None

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def source_ids(self) -> list[str]:
        return list(self._adapters)

    def adapter_state(self, source_id: str) -> AdapterState:
        try:
            return self._adapters[source_id]
        except KeyError:
            raise KeyError(f"Unknown adapter '{source_id}'") from None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> bool:
        """Start if the persisted flag says scheduling was enabled."""
        try:
            enabled = await self._state.get_bool(SCHEDULER_ENABLED_KEY, False)
        except Exception as e:
            logger.error(f"Failed to load scheduler state, staying stopped: {e}")
            return False

        if not enabled:
            logger.info("Scheduler remains stopped (scheduler_enabled is false or unset)")
            return False
        logger.info("Scheduler was previously enabled, resuming")
        return await self.start()

    async def start(self) -> bool:
        """Start every adapter loop. Refused while the breaker is tripped."""
        if self._running:
            logger.warning("Scheduler already running")
            return True
        if self.tripped:
            logger.warning(
                f"Scheduler not started: breaker tripped after {self.consecutive_errors} "
                f"consecutive errors; reset the error counter first"
            )
            return False

        await self._halt()
        self._running = True
        self._stop_event.clear()
        self.started_at = datetime.now(timezone.utc)
        await self._state.set_bool(SCHEDULER_ENABLED_KEY, True)

        for state in self._adapters.values():
            task = asyncio.create_task(
                self._adapter_loop(state),
                name=f"poll_{state.source_id}",
            )
            self._tasks.append(task)
            logger.info(f"Scheduled {state.source_id} every {state.interval:.0f}s")
        return True

    async def stop(self) -> None:
        """Stop and persist scheduler_enabled=false. Idempotent."""
        await self._halt()
        await self._state.set_bool(SCHEDULER_ENABLED_KEY, False)
        logger.info("Scheduler stopped (disabled across restarts)")

    async def shutdown(self) -> None:
        """Stop without touching the persisted flag."""
        await self._halt()
        logger.info("Scheduler shut down")

    async def _halt(self) -> None:
        was_running = self._running
        self._running = False
        self._stop_event.set()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

        for state in self._adapters.values():
            if state.in_flight:
                await asyncio.gather(*state.in_flight, return_exceptions=True)
            state.next_run_at = None

        if was_running:
            logger.info("All adapter loops stopped")

    async def _wait_for_stop(self, timeout: float) -> bool:
        """True if stop was requested before `timeout` elapsed."""
        if timeout <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _adapter_loop(self, state: AdapterState) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._config.initial_delay

        while self._running:
            delay = max(0.0, next_tick - loop.time())
            state.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            if await self._wait_for_stop(delay):
                break
            if not self._running:
                break
            next_tick += state.interval

            if state.lock.locked():
                state.skipped_ticks += 1
                logger.warning(f"[{state.source_id}] previous run still in progress, tick dropped")
                continue

            task = asyncio.create_task(self._run_guarded(state))
            state.in_flight.add(task)
            task.add_done_callback(state.in_flight.discard)

    # =========================================================================
    # Runs
    # =========================================================================

    async def _run_guarded(self, state: AdapterState) -> RunReport:
        if state.lock.locked():
            state.skipped_ticks += 1
            return RunReport(state.source_id, ran=False)

        async with state.lock:
            state.runs += 1
            state.last_run_at = datetime.now(timezone.utc)
            try:
                result = await state.adapter.poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                state.failures += 1
                state.last_error = str(e) or type(e).__name__
                await self._record_failure(state, e)
                return RunReport(state.source_id, ran=True, success=False, error=state.last_error)

            state.last_success_at = datetime.now(timezone.utc)
            state.last_result = result
            state.last_error = None
            if self.consecutive_errors:
                logger.info(f"[{state.source_id}] succeeded, error counter reset")
            self.consecutive_errors = 0
            return RunReport(state.source_id, ran=True, success=True, result=result)

    async def _record_failure(self, state: AdapterState, error: Exception) -> None:
        self.consecutive_errors += 1
        ceiling = self._config.max_consecutive_errors
        logger.error(
            f"[{state.source_id}] run failed "
            f"({self.consecutive_errors}/{ceiling} consecutive): {error}"
        )
        if self.consecutive_errors >= ceiling and not self.tripped:
            await self._trip(state.source_id, str(error))

    async def _trip(self, source_id: str, error: str) -> None:
        self.tripped = True
        self.tripped_at = datetime.now(timezone.utc)
        self._running = False
        self._stop_event.set()
        logger.error(
            f"Circuit breaker tripped after {self.consecutive_errors} consecutive errors "
            f"(last: {source_id}: {error}). All adapters stopped; manual reset required."
        )
        try:
            await self._state.set_bool(SCHEDULER_ENABLED_KEY, False)
        except Exception as e:
            logger.error(f"Could not persist disabled scheduler state: {e}")

        if self._on_trip:
            try:
                result = self._on_trip(self.consecutive_errors, f"{source_id}: {error}")
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Breaker trip callback failed: {e}")

    async def run_now(self, source_id: str) -> RunReport:
        """One guarded run of a single adapter, outside its schedule."""
        state = self.adapter_state(source_id)
        report = await self._run_guarded(state)
        if not report.ran:
            logger.warning(f"[{source_id}] manual run dropped: already running")
        return report

    def reset_error_counter(self) -> None:
        """Clear the counter and re-arm the breaker."""
        self.consecutive_errors = 0
        self.tripped = False
        self.tripped_at = None
        logger.info("Scheduler error counter reset")

    # =========================================================================
    # Status
    # =========================================================================

    def is_healthy(self) -> bool:
        return not self.tripped

    def status(self) -> dict:
        return {
            "running": self._running,
            "healthy": self.is_healthy(),
            "consecutive_errors": self.consecutive_errors,
            "max_consecutive_errors": self._config.max_consecutive_errors,
            "breaker_tripped": self.tripped,
            "tripped_at": self.tripped_at.isoformat() if self.tripped_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "adapters": {sid: s.to_dict() for sid, s in self._adapters.items()},
        }
