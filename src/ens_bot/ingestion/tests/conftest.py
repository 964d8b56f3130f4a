"""
Ingestion layer test fixtures.

The event key ledger and record store are replaced with small in-memory
fakes that honour the same uniqueness rules as the PostgreSQL tables.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from unittest.mock import AsyncMock, MagicMock

import pytest

from ens_bot.enrichment import FilterStage
from ens_bot.ingestion.dedup import Deduplicator
from ens_bot.ingestion.models import ENS_REGISTRAR, BidCandidate, SaleCandidate
from ens_bot.ingestion.pipeline import IngestionPipeline
from ens_bot.storage.models import Enrichment, IngestedRecord, RecordStatus
from ens_bot.storage.repositories.record_repo import InsertResult


class FakeEventKeyRepository:
    """Pending/settled claims keyed on (category, natural_key)."""

    def __init__(self):
        self.rows: dict = {}

    async def claim(self, category, key, source_id, now, lease) -> bool:
        row = self.rows.get((category, key))
        if row is not None:
            if row["outcome"] != "pending" or now - row["claimed_at"] < lease:
                return False
        self.rows[(category, key)] = {
            "outcome": "pending",
            "source_id": source_id,
            "claimed_at": now,
        }
        return True

    async def settle(self, category, key, outcome, now) -> None:
        self.rows[(category, key)]["outcome"] = outcome

    async def release(self, category, key) -> bool:
        row = self.rows.get((category, key))
        if row is None or row["outcome"] != "pending":
            return False
        del self.rows[(category, key)]
        return True


class FakeRecordRepository:
    """insert_unique with the (category, natural_key) constraint."""

    def __init__(self):
        self.records: dict = {}
        self._ids = count(1)

    async def insert_unique(self, new) -> InsertResult:
        if (new.category, new.natural_key) in self.records:
            return InsertResult(ok=False)
        record = IngestedRecord(
            id=next(self._ids),
            status=RecordStatus.UNPOSTED,
            **new.model_dump(),
        )
        self.records[(new.category, new.natural_key)] = record
        return InsertResult(ok=True, record=record)


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def event_keys():
    return FakeEventKeyRepository()


@pytest.fixture
def records():
    return FakeRecordRepository()


@pytest.fixture
def mock_enricher():
    enricher = MagicMock()
    enricher.resolve_name = AsyncMock(return_value=None)
    enricher.enrich = AsyncMock(return_value=Enrichment(value_usd=Decimal("3000.00")))
    return enricher


@pytest.fixture
def pipeline(event_keys, records, mock_enricher):
    return IngestionPipeline(
        Deduplicator(event_keys),
        FilterStage(),
        mock_enricher,
        records,
    )


@pytest.fixture
def make_sale(now):
    def _make(
        tx="0xabc",
        log_index=1,
        name="vitalik.eth",
        value="1.0",
        age=timedelta(minutes=5),
        **overrides,
    ) -> SaleCandidate:
        fields = dict(
            source_id="sales",
            occurred_at=now - age,
            value=Decimal(value),
            subject_name=name,
            token_id="1234",
            contract_address=ENS_REGISTRAR,
            transaction_hash=tx,
            log_index=log_index,
        )
        fields.update(overrides)
        return SaleCandidate(**fields)

    return _make


@pytest.fixture
def make_bid(now):
    def _make(bid_id="0xorder", name="vitalik.eth", value="10", age=timedelta(minutes=5), **overrides):
        fields = dict(
            source_id="bids",
            occurred_at=now - age,
            value=Decimal(value),
            currency="WETH",
            subject_name=name,
            token_id="1234",
            contract_address=ENS_REGISTRAR,
            bid_id=bid_id,
            valid_until=now + timedelta(days=3),
        )
        fields.update(overrides)
        return BidCandidate(**fields)

    return _make
