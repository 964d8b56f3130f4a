"""
Dispatcher - the only writer of record status.

publish(record):
    1. take the record's lock (one in-flight publish per record id)
    2. re-read the record; it must still be unposted
    3. ask the rate limiter; it must allow
    4. post
    5. log the attempt with the rate limiter (success or failure)
    6. success   -> unposted -> posted, publish_ref stored
       transient -> stays unposted, last_error noted
       permanent -> unposted -> failed

Steps 2 and 3 failing are caller errors (DispatchPreconditionError). The
worker checks both before calling, so seeing one means two dispatchers are
racing or the caller skipped the checks.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from ens_bot.storage.models import IngestedRecord, RecordStatus
from ens_bot.storage.repositories import RecordRepository

from .formatter import PostFormatter
from .publisher import PublishError, Publisher
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class DispatchPreconditionError(Exception):
    """publish() was called for a record that is not publishable right now."""


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    publish_ref: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False


FailureCallback = Callable[[IngestedRecord, str, bool], None]


class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(records, limiter, publisher)
        result = await dispatcher.publish(record)
    """

    def __init__(
        self,
        records: RecordRepository,
        limiter: RateLimiter,
        publisher: Publisher,
        formatter: Optional[PostFormatter] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self._records = records
        self._limiter = limiter
        self._publisher = publisher
        self._formatter = formatter or PostFormatter()
        self._on_failure = on_failure
        # record id -> (lock, number of callers holding or waiting on it)
        self._locks: dict[int, tuple[asyncio.Lock, int]] = {}

    def _acquire_slot(self, record_id: int) -> asyncio.Lock:
        lock, users = self._locks.get(record_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[record_id] = (lock, users + 1)
        return lock

    def _release_slot(self, record_id: int) -> None:
        lock, users = self._locks[record_id]
        if users <= 1:
            del self._locks[record_id]
        else:
            self._locks[record_id] = (lock, users - 1)

    def is_in_flight(self, record_id: int) -> bool:
        entry = self._locks.get(record_id)
        return entry is not None and entry[0].locked()

    async def publish(self, record: IngestedRecord) -> DispatchResult:
        """
        Publish one record.

        Raises:
            DispatchPreconditionError: record not unposted, or no rate budget
        """
        lock = self._acquire_slot(record.id)
        try:
            async with lock:
                return await self._publish_locked(record.id)
        finally:
            self._release_slot(record.id)

    async def _publish_locked(self, record_id: int) -> DispatchResult:
        record = await self._records.get(record_id)
        if record is None:
            raise DispatchPreconditionError(f"Record {record_id} does not exist")
        if record.status != RecordStatus.UNPOSTED:
            raise DispatchPreconditionError(
                f"Record {record_id} is {record.status.value}, not unposted"
            )

        status = await self._limiter.can_publish()
        if not status.allowed:
            raise DispatchPreconditionError(
                f"Rate limit reached ({status.used}/{status.cap}), resets at {status.reset_at}"
            )

        text = self._formatter.format(record)
        try:
            result = await self._publisher.publish(text)
        except PublishError as e:
            now = datetime.now(timezone.utc)
            await self._limiter.record(False, now, record_id=record_id, error=str(e))
            return await self._handle_failure(record, e)
        except asyncio.TimeoutError:
            now = datetime.now(timezone.utc)
            await self._limiter.record(False, now, record_id=record_id, error="timeout")
            return await self._handle_failure(record, PublishError("Publish timed out"))

        now = datetime.now(timezone.utc)
        await self._limiter.record(True, now, record_id=record_id)
        await self._records.set_status(
            record_id,
            RecordStatus.UNPOSTED,
            RecordStatus.POSTED,
            publish_ref=result.id,
        )
        logger.info(
            f"Published {record.category.value} #{record_id} {record.display_name} -> {result.id}"
        )
        return DispatchResult(success=True, publish_ref=result.id)

    async def _handle_failure(self, record: IngestedRecord, error: PublishError) -> DispatchResult:
        message = str(error)
        if error.is_permanent:
            await self._records.set_status(
                record.id,
                RecordStatus.UNPOSTED,
                RecordStatus.FAILED,
                error=message,
            )
            logger.error(f"Publish of #{record.id} {record.display_name} rejected: {message}")
        else:
            await self._records.note_error(record.id, message)
            logger.warning(f"Publish of #{record.id} {record.display_name} failed, will retry: {message}")

        if self._on_failure:
            try:
                self._on_failure(record, message, error.is_permanent)
            except Exception as e:
                logger.warning(f"Publish failure callback raised: {e}")

        return DispatchResult(success=False, error=message, permanent=error.is_permanent)
