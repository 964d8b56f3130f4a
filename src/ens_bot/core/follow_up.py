"""
Follow-up consumer for posted records.

A trigger on ingested_records sends NOTIFY record_posted whenever a record
moves unposted -> posted, whatever its category. The consumer LISTENs on
that channel and runs one action per record. Delivery is at-least-once;
the (record_id, action) row in follow_ups makes redelivery a no-op.

Notifications sent while the process was down are lost, so start() also
replays recently posted records that have no follow-up row yet.

A claimed follow-up whose action never finished (crash mid-action) stays
claimed: the action runs at most once per record.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from ens_bot.publishing.formatter import PostFormatter
from ens_bot.publishing.publisher import Publisher
from ens_bot.storage import (
    POSTED_CHANNEL,
    Database,
    FollowUpRepository,
    IngestedRecord,
    RecordRepository,
    RecordStatus,
)

logger = logging.getLogger(__name__)


class FollowUpAction(Protocol):
    name: str

    async def run(self, record: IngestedRecord) -> Optional[str]:
        """Perform the action; return a reference to what it produced."""
        ...


class ReplyAction:
    """Posts a reply under the published post, spaced at least min_interval apart."""

    name = "reply"

    def __init__(
        self,
        publisher: Publisher,
        formatter: Optional[PostFormatter] = None,
        min_interval: float = 30.0,
    ) -> None:
        self._publisher = publisher
        self._formatter = formatter or PostFormatter()
        self.min_interval = min_interval
        self._last_reply_at: Optional[float] = None

    async def run(self, record: IngestedRecord) -> Optional[str]:
        if not record.publish_ref:
            raise ValueError(f"Record {record.id} has no publish_ref to reply to")

        loop = asyncio.get_running_loop()
        if self._last_reply_at is not None:
            wait = self.min_interval - (loop.time() - self._last_reply_at)
            if wait > 0:
                await asyncio.sleep(wait)

        text = self._formatter.format_reply(record)
        try:
            result = await self._publisher.publish(text, reply_to=record.publish_ref)
        finally:
            self._last_reply_at = loop.time()
        return result.id


class FollowUpConsumer:
    """
    Usage:
        consumer = FollowUpConsumer(db, records, follow_ups, ReplyAction(publisher))
        await consumer.start()
        ...
        await consumer.stop()
    """

    def __init__(
        self,
        db: Database,
        records: RecordRepository,
        follow_ups: FollowUpRepository,
        action: FollowUpAction,
        channel: str = POSTED_CHANNEL,
        recovery_window: timedelta = timedelta(hours=6),
        recovery_limit: int = 50,
    ) -> None:
        self._db = db
        self._records = records
        self._follow_ups = follow_ups
        self._action = action
        self._channel = channel
        self.recovery_window = recovery_window
        self.recovery_limit = recovery_limit

        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.processed = 0
        self.duplicates = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self._db.listen(self._channel, self.handle_notification)
        self._task = asyncio.create_task(self._worker(), name="follow_up_consumer")
        recovered = await self.recover()
        logger.info(
            f"Follow-up consumer '{self._action.name}' started "
            f"({recovered} posted records queued for recovery)"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await self._db.unlisten(self._channel)
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Follow-up consumer stopped")

    async def handle_notification(self, channel: str, payload: str) -> None:
        """NOTIFY handler: queue the record if it became posted."""
        try:
            data = json.loads(payload)
            record_id = int(data["record_id"])
            status = data.get("status", RecordStatus.POSTED.value)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed notification on {channel}: {payload!r} ({e})")
            return
        if status != RecordStatus.POSTED.value:
            return
        await self._queue.put(record_id)

    async def recover(self, now: Optional[datetime] = None) -> int:
        """Queue posted records from the recovery window that have no follow-up."""
        now = now or datetime.now(timezone.utc)
        missing = await self._follow_ups.find_missing(
            self._action.name, now - self.recovery_window, limit=self.recovery_limit
        )
        for record_id in missing:
            await self._queue.put(record_id)
        return len(missing)

    async def _worker(self) -> None:
        while self._running:
            record_id = await self._queue.get()
            try:
                await self.process(record_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Follow-up for record {record_id} failed: {e}")
            finally:
                self._queue.task_done()

    async def process(self, record_id: int, status: str = RecordStatus.POSTED.value) -> bool:
        """
        Run the action for one record, at most once.

        Returns True if the action ran and succeeded, False for duplicates,
        non-posted statuses and failed actions.
        """
        if status != RecordStatus.POSTED.value:
            return False

        claimed = await self._follow_ups.claim(record_id, self._action.name)
        if not claimed:
            self.duplicates += 1
            logger.debug(f"Follow-up '{self._action.name}' for record {record_id} already claimed")
            return False

        record = await self._records.get(record_id)
        if record is None or record.status != RecordStatus.POSTED:
            await self._follow_ups.fail(record_id, self._action.name, "record not posted")
            self.failures += 1
            return False

        try:
            result_ref = await self._action.run(record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(f"Follow-up '{self._action.name}' for #{record_id} failed: {e}")
            await self._follow_ups.fail(record_id, self._action.name, str(e))
            return False

        await self._follow_ups.complete(record_id, self._action.name, result_ref)
        self.processed += 1
        logger.info(f"Follow-up '{self._action.name}' done for #{record_id} -> {result_ref}")
        return True

    def stats(self) -> dict:
        return {
            "action": self._action.name,
            "running": self._running,
            "queued": self._queue.qsize(),
            "processed": self.processed,
            "duplicates": self.duplicates,
            "failures": self.failures,
        }
