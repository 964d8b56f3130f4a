"""
Core layer test fixtures.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from ens_bot.storage.models import EventCategory, FollowUp, IngestedRecord, RecordStatus


class FakeStateRepository:
    def __init__(self, values: Optional[dict] = None):
        self.values = dict(values or {})

    async def get_bool(self, key, default):
        value = self.values.get(key)
        if value is None:
            return default
        return value.lower() == "true"

    async def set_bool(self, key, value):
        self.values[key] = "true" if value else "false"


class FakeFollowUpRepository:
    """(record_id, action) primary key, like the follow_ups table."""

    def __init__(self):
        self.rows: dict = {}
        self.missing: list[int] = []

    async def claim(self, record_id, action):
        if (record_id, action) in self.rows:
            return False
        self.rows[(record_id, action)] = FollowUp(
            record_id=record_id,
            action=action,
            status="claimed",
            claimed_at=datetime.now(timezone.utc),
        )
        return True

    async def complete(self, record_id, action, result_ref=None):
        row = self.rows[(record_id, action)]
        self.rows[(record_id, action)] = row.model_copy(
            update={"status": "done", "result_ref": result_ref}
        )

    async def fail(self, record_id, action, error):
        row = self.rows[(record_id, action)]
        self.rows[(record_id, action)] = row.model_copy(update={"status": "failed", "error": error})

    async def find_missing(self, action, posted_since, limit=50):
        return [rid for rid in self.missing if (rid, action) not in self.rows][:limit]


class FakeAdapter:
    """Poll adapter whose poll() follows a script of results and exceptions."""

    def __init__(self, source_id, *script, gate: Optional[asyncio.Event] = None):
        self.source_id = source_id
        self._script = list(script)
        self.gate = gate
        self.calls = 0

    async def poll(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self._script:
            item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
            if isinstance(item, Exception):
                raise item
            return item
        return {"polled": self.calls}


@pytest.fixture
def state():
    return FakeStateRepository()


@pytest.fixture
def follow_ups():
    return FakeFollowUpRepository()


@pytest.fixture
def make_adapter():
    return FakeAdapter


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.listen = AsyncMock()
    db.unlisten = AsyncMock()
    return db


@pytest.fixture
def posted_record():
    now = datetime.now(timezone.utc)
    return IngestedRecord(
        id=7,
        category=EventCategory.SALE,
        natural_key="0xabc:1",
        source_id="sales",
        subject_name="vitalik.eth",
        value=Decimal("2"),
        occurred_at=now - timedelta(minutes=5),
        received_at=now - timedelta(minutes=4),
        status=RecordStatus.POSTED,
        publish_ref="1789",
        posted_at=now,
        payload={"details": {"transaction_hash": "0xabc"}},
    )


@pytest.fixture
def records(posted_record):
    records = MagicMock()
    records.get = AsyncMock(return_value=posted_record)
    return records
