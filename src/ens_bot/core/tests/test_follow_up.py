"""
Tests for the follow-up consumer.

Notifications are at-least-once; the follow_ups claim makes the action run
at most once per (record, action).
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ens_bot.core.follow_up import FollowUpConsumer, ReplyAction
from ens_bot.publishing.publisher import DryRunPublisher, PublishResult
from ens_bot.storage import POSTED_CHANNEL
from ens_bot.storage.models import RecordStatus


@pytest.fixture
def action():
    action = MagicMock()
    action.name = "reply"
    action.run = AsyncMock(return_value="reply-1")
    return action


@pytest.fixture
def consumer(mock_db, records, follow_ups, action):
    return FollowUpConsumer(mock_db, records, follow_ups, action)


def notification(record_id, status="posted"):
    return json.dumps({"record_id": record_id, "status": status, "category": "sale"})


class TestProcess:

    async def test_runs_action_and_completes(self, consumer, follow_ups, action):
        assert await consumer.process(7)

        action.run.assert_awaited_once()
        row = follow_ups.rows[(7, "reply")]
        assert row.status == "done"
        assert row.result_ref == "reply-1"
        assert consumer.processed == 1

    async def test_duplicate_delivery_runs_once(self, consumer, action):
        first = await consumer.process(7)
        second = await consumer.process(7)

        assert first
        assert not second
        assert action.run.await_count == 1
        assert consumer.duplicates == 1

    async def test_concurrent_deliveries_run_once(self, consumer, action):
        results = await asyncio.gather(*(consumer.process(7) for _ in range(5)))

        assert results.count(True) == 1
        assert action.run.await_count == 1

    async def test_non_posted_status_ignored(self, consumer, follow_ups, action):
        assert not await consumer.process(7, status="failed")

        action.run.assert_not_awaited()
        assert follow_ups.rows == {}

    async def test_record_not_posted_marks_failed(self, consumer, records, follow_ups, posted_record):
        records.get.return_value = posted_record.model_copy(update={"status": RecordStatus.UNPOSTED})

        assert not await consumer.process(7)

        assert follow_ups.rows[(7, "reply")].status == "failed"

    async def test_failed_action_is_not_retried(self, consumer, follow_ups, action):
        """GOTCHA: at most once. A failed reply is recorded, never re-run."""
        action.run.side_effect = RuntimeError("HTTP 503")

        assert not await consumer.process(7)
        assert not await consumer.process(7)

        assert action.run.await_count == 1
        assert follow_ups.rows[(7, "reply")].error == "HTTP 503"
        assert consumer.failures == 1


class TestNotifications:

    async def test_posted_notification_queued(self, consumer):
        await consumer.handle_notification(POSTED_CHANNEL, notification(7))

        assert consumer.stats()["queued"] == 1

    @pytest.mark.parametrize("payload", ["not json", json.dumps({"status": "posted"}), "[]"])
    async def test_malformed_notification_ignored(self, consumer, payload):
        await consumer.handle_notification(POSTED_CHANNEL, payload)

        assert consumer.stats()["queued"] == 0

    async def test_other_status_ignored(self, consumer):
        await consumer.handle_notification(POSTED_CHANNEL, notification(7, status="failed"))

        assert consumer.stats()["queued"] == 0

    async def test_recover_queues_missing(self, consumer, follow_ups):
        follow_ups.missing = [3, 4, 5]
        await follow_ups.claim(4, "reply")

        queued = await consumer.recover()

        assert queued == 2


class TestLifecycle:

    async def test_start_listens_and_processes(self, consumer, mock_db, action):
        await consumer.start()
        mock_db.listen.assert_awaited_once_with(POSTED_CHANNEL, consumer.handle_notification)

        await consumer.handle_notification(POSTED_CHANNEL, notification(7))
        await consumer.handle_notification(POSTED_CHANNEL, notification(7))
        for _ in range(50):
            if consumer.stats()["queued"] == 0 and consumer.processed + consumer.duplicates == 2:
                break
            await asyncio.sleep(0.01)
        await consumer.stop()

        assert action.run.await_count == 1
        assert consumer.duplicates == 1
        mock_db.unlisten.assert_awaited_once_with(POSTED_CHANNEL)
        assert not consumer.is_running

    async def test_start_recovers_missed_records(self, consumer, follow_ups, action):
        follow_ups.missing = [7]

        await consumer.start()
        for _ in range(50):
            if consumer.processed:
                break
            await asyncio.sleep(0.01)
        await consumer.stop()

        assert consumer.processed == 1


class TestReplyAction:

    async def test_replies_to_publish_ref(self, posted_record):
        publisher = DryRunPublisher()

        ref = await ReplyAction(publisher, min_interval=0).run(posted_record)

        assert ref == "dry-run-1"
        text, reply_to = publisher.published[0]
        assert reply_to == "1789"
        assert "etherscan.io/tx/0xabc" in text

    async def test_requires_publish_ref(self, posted_record):
        record = posted_record.model_copy(update={"publish_ref": None})

        with pytest.raises(ValueError):
            await ReplyAction(DryRunPublisher()).run(record)

    async def test_spaces_replies(self, posted_record, monkeypatch):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("ens_bot.core.follow_up.asyncio.sleep", fake_sleep)
        publisher = MagicMock()
        publisher.publish = AsyncMock(return_value=PublishResult(id="r"))
        action = ReplyAction(publisher, min_interval=30)

        await action.run(posted_record)
        await action.run(posted_record)

        assert len(sleeps) == 1
        assert 29 < sleeps[0] <= 30
