"""
Shared test fixtures for end-to-end flow tests.

These fixtures span multiple components, unlike the component-specific
fixtures in src/ens_bot/{component}/tests/conftest.py. Every repository is
an in-memory fake that honours the same uniqueness rules and status
transitions as the PostgreSQL tables, so a whole flow runs without a
database.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from unittest.mock import AsyncMock, MagicMock

import pytest

from ens_bot.enrichment import FilterStage
from ens_bot.ingestion.dedup import Deduplicator
from ens_bot.ingestion.models import ENS_REGISTRAR, SaleCandidate
from ens_bot.ingestion.pipeline import IngestionPipeline
from ens_bot.publishing.dispatcher import Dispatcher
from ens_bot.publishing.publisher import PublishResult
from ens_bot.publishing.rate_limiter import RateLimiter
from ens_bot.publishing.worker import AutopostSettings, PublishWorker
from ens_bot.storage.models import Enrichment, IngestedRecord, PublishAttempt, RecordStatus
from ens_bot.storage.repositories.record_repo import (
    ALLOWED_TRANSITIONS,
    InsertResult,
    StatusTransitionError,
)


# =============================================================================
# In-memory repositories
# =============================================================================


class InMemoryRecords:
    """ingested_records: insert_unique on (category, natural_key) plus status moves."""

    def __init__(self):
        self.by_id: dict[int, IngestedRecord] = {}
        self._keys: set = set()
        self._ids = count(1)

    async def insert_unique(self, new) -> InsertResult:
        if (new.category, new.natural_key) in self._keys:
            return InsertResult(ok=False)
        record = IngestedRecord(id=next(self._ids), status=RecordStatus.UNPOSTED, **new.model_dump())
        self._keys.add((new.category, new.natural_key))
        self.by_id[record.id] = record
        return InsertResult(ok=True, record=record)

    async def get(self, record_id):
        return self.by_id.get(record_id)

    async def set_status(self, record_id, from_status, to_status, publish_ref=None, error=None):
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            raise ValueError(f"Illegal transition {from_status.value} -> {to_status.value}")
        record = self.by_id.get(record_id)
        if record is None or record.status != from_status:
            raise StatusTransitionError(record_id, from_status, record.status if record else None)
        updated = record.model_copy(update={
            "status": to_status,
            "publish_ref": publish_ref or record.publish_ref,
            "posted_at": datetime.now(timezone.utc) if to_status == RecordStatus.POSTED else None,
            "last_error": error,
        })
        self.by_id[record_id] = updated
        return updated

    async def note_error(self, record_id, error):
        self.by_id[record_id] = self.by_id[record_id].model_copy(update={"last_error": error})

    async def list_recent(self, category, limit=20, status=None):
        matching = [
            r for r in self.by_id.values()
            if r.category == category and (status is None or r.status == status)
        ]
        matching.sort(key=lambda r: r.occurred_at, reverse=True)
        return matching[:limit]

    def with_status(self, status):
        return [r for r in self.by_id.values() if r.status == status]


class InMemoryEventKeys:
    def __init__(self):
        self.rows: dict = {}

    async def claim(self, category, key, source_id, now, lease) -> bool:
        row = self.rows.get((category, key))
        if row is not None:
            if row["outcome"] != "pending" or now - row["claimed_at"] < lease:
                return False
        self.rows[(category, key)] = {"outcome": "pending", "source_id": source_id, "claimed_at": now}
        return True

    async def settle(self, category, key, outcome, now) -> None:
        self.rows[(category, key)]["outcome"] = outcome

    async def release(self, category, key) -> bool:
        row = self.rows.get((category, key))
        if row is None or row["outcome"] != "pending":
            return False
        del self.rows[(category, key)]
        return True


class InMemoryCursors:
    def __init__(self):
        self.values: dict = {}

    async def get(self, source_id):
        return self.values.get(source_id)

    async def set(self, source_id, value):
        current = self.values.get(source_id)
        self.values[source_id] = value if current is None else max(current, value)
        return self.values[source_id]


class InMemoryAttempts:
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


class InMemoryState:
    def __init__(self):
        self.values: dict = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value

    async def get_bool(self, key, default):
        value = self.values.get(key)
        return default if value is None else value.lower() == "true"

    async def set_bool(self, key, value):
        self.values[key] = "true" if value else "false"


class RecordingPublisher:
    """Publishes into a list; queued errors are raised first."""

    def __init__(self):
        self.failures: list = []
        self.posts: list = []
        self._ids = count(1000)

    async def publish(self, content, media=None, reply_to=None):
        self.posts.append(content)
        if self.failures:
            raise self.failures.pop(0)
        return PublishResult(id=str(next(self._ids)), text=content)


# =============================================================================
# Wired components
# =============================================================================


@pytest.fixture
def records():
    return InMemoryRecords()


@pytest.fixture
def event_keys():
    return InMemoryEventKeys()


@pytest.fixture
def cursors():
    return InMemoryCursors()


@pytest.fixture
def attempts():
    return InMemoryAttempts()


@pytest.fixture
def state():
    return InMemoryState()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def pipeline(event_keys, records):
    enricher = MagicMock()
    enricher.resolve_name = AsyncMock(return_value=None)
    enricher.enrich = AsyncMock(return_value=Enrichment(value_usd=Decimal("3000.00")))
    return IngestionPipeline(Deduplicator(event_keys), FilterStage(), enricher, records)


@pytest.fixture
def limiter(attempts):
    return RateLimiter(attempts, daily_cap=3)


@pytest.fixture
def dispatcher(records, limiter, publisher):
    return Dispatcher(records, limiter, publisher)


@pytest.fixture
def worker(records, dispatcher, limiter, state):
    return PublishWorker(
        records,
        dispatcher,
        limiter,
        state,
        settings=AutopostSettings(enabled=True),
        post_interval=0,
        idle_interval=0.05,
    )


@pytest.fixture
def make_sale():
    """Sale candidates keyed by (tx, log_index), a few minutes old."""
    def _make(tx="0xabc", log_index=1, name="vitalik.eth", value="1.0",
              age=timedelta(minutes=5), source_id="sales"):
        return SaleCandidate(
            source_id=source_id,
            occurred_at=datetime.now(timezone.utc) - age,
            value=Decimal(value),
            subject_name=name,
            token_id="1234",
            contract_address=ENS_REGISTRAR,
            transaction_hash=tx,
            log_index=log_index,
        )

    return _make
