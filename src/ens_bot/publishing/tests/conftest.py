"""
Publishing layer test fixtures.

In-memory stand-ins for the record store, the attempt log and system
state. They enforce the same status transitions and window rules as the
SQL repositories.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from typing import Optional

import pytest

from ens_bot.publishing.publisher import PublishError, PublishErrorKind, PublishResult
from ens_bot.publishing.rate_limiter import RateLimiter
from ens_bot.storage.models import (
    Enrichment,
    EventCategory,
    IngestedRecord,
    PublishAttempt,
    RecordStatus,
)
from ens_bot.storage.repositories.record_repo import ALLOWED_TRANSITIONS, StatusTransitionError


class FakeRecordStore:
    def __init__(self):
        self.records: dict[int, IngestedRecord] = {}
        self.status_calls = []

    def add(self, record: IngestedRecord) -> IngestedRecord:
        self.records[record.id] = record
        return record

    async def get(self, record_id):
        return self.records.get(record_id)

    async def set_status(self, record_id, from_status, to_status, publish_ref=None, error=None):
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            raise ValueError(f"Illegal transition {from_status.value} -> {to_status.value}")
        self.status_calls.append((record_id, from_status, to_status))
        record = self.records.get(record_id)
        if record is None or record.status != from_status:
            raise StatusTransitionError(record_id, from_status, record.status if record else None)
        updated = record.model_copy(update={
            "status": to_status,
            "publish_ref": publish_ref or record.publish_ref,
            "posted_at": datetime.now(timezone.utc) if to_status == RecordStatus.POSTED else None,
            "last_error": error,
        })
        self.records[record_id] = updated
        return updated

    async def note_error(self, record_id, error):
        record = self.records[record_id]
        self.records[record_id] = record.model_copy(update={"last_error": error})

    async def list_recent(self, category, limit=20, status=None):
        matching = [
            r for r in self.records.values()
            if r.category == category and (status is None or r.status == status)
        ]
        matching.sort(key=lambda r: r.occurred_at, reverse=True)
        return matching[:limit]


class FakeAttemptRepository:
    def __init__(self):
        self.attempts: list[PublishAttempt] = []
        self._ids = count(1)

    async def record(self, published_at, success, record_id=None, error=None):
        attempt = PublishAttempt(
            id=next(self._ids),
            published_at=published_at,
            success=success,
            record_id=record_id,
            error=error,
        )
        self.attempts.append(attempt)
        return attempt

    async def window_stats(self, since):
        inside = [a.published_at for a in self.attempts if a.published_at > since]
        return len(inside), (min(inside) if inside else None)

    async def get_recent(self, limit=50):
        return sorted(self.attempts, key=lambda a: a.published_at, reverse=True)[:limit]


class FakeStateRepository:
    def __init__(self, values: Optional[dict] = None):
        self.values = dict(values or {})

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value

    async def get_bool(self, key, default):
        value = self.values.get(key)
        if value is None:
            return default
        return value.lower() == "true"

    async def set_bool(self, key, value):
        self.values[key] = "true" if value else "false"

    async def get_all(self):
        return dict(self.values)


class ScriptedPublisher:
    """Returns ids, or raises queued PublishErrors first."""

    def __init__(self, *failures):
        self._failures = list(failures)
        self._ids = count(100)
        self.posts = []

    async def publish(self, content, media=None, reply_to=None):
        self.posts.append((content, reply_to))
        if self._failures:
            raise self._failures.pop(0)
        return PublishResult(id=str(next(self._ids)), text=content)


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def attempts():
    return FakeAttemptRepository()


@pytest.fixture
def state():
    return FakeStateRepository()


@pytest.fixture
def limiter(attempts):
    return RateLimiter(attempts, daily_cap=3)


@pytest.fixture
def transient_error():
    return PublishError("HTTP 503: unavailable", PublishErrorKind.TRANSIENT)


@pytest.fixture
def permanent_error():
    return PublishError("HTTP 403: duplicate content", PublishErrorKind.PERMANENT)


@pytest.fixture
def make_record(now):
    ids = count(1)

    def _make(
        category=EventCategory.SALE,
        name="vitalik.eth",
        value="2",
        currency="ETH",
        age=timedelta(minutes=5),
        status=RecordStatus.UNPOSTED,
        details=None,
        enrichment=None,
        **overrides,
    ) -> IngestedRecord:
        record_id = next(ids)
        fields = dict(
            id=record_id,
            category=category,
            natural_key=f"key-{record_id}",
            source_id="sales",
            subject_name=name,
            token_id="1234",
            value=Decimal(value),
            currency=currency,
            occurred_at=now - age,
            received_at=now,
            status=status,
            payload={"details": details or {}, "raw": {}},
            enrichment=enrichment,
        )
        fields.update(overrides)
        return IngestedRecord(**fields)

    return _make


@pytest.fixture
def default_enrichment():
    return Enrichment(display_name="vitalik.eth", value_usd=Decimal("6000"))


@pytest.fixture
def make_publisher():
    """ScriptedPublisher factory: make_publisher(error1, error2, ...)."""
    return ScriptedPublisher
