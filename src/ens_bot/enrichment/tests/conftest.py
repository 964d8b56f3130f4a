"""
Enrichment layer test fixtures.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from ens_bot.ingestion.models import (
    ENS_REGISTRAR,
    BidCandidate,
    RegistrationCandidate,
    SaleCandidate,
)


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_sale(now):
    def _make(
        name="vitalik.eth",
        value="1.0",
        age=timedelta(minutes=5),
        currency="ETH",
        **overrides,
    ) -> SaleCandidate:
        fields = dict(
            source_id="sales",
            occurred_at=now - age,
            value=Decimal(value),
            currency=currency,
            subject_name=name,
            token_id="1234",
            contract_address=ENS_REGISTRAR,
            transaction_hash="0xfeed",
            log_index=3,
        )
        fields.update(overrides)
        return SaleCandidate(**fields)

    return _make


@pytest.fixture
def make_registration(now):
    def _make(name="newname.eth", value="0.2", age=timedelta(minutes=5), **overrides):
        fields = dict(
            source_id="webhook",
            occurred_at=now - age,
            value=Decimal(value),
            subject_name=name,
            token_id="5678",
            contract_address=ENS_REGISTRAR,
            owner="0x0wner",
        )
        fields.update(overrides)
        return RegistrationCandidate(**fields)

    return _make


@pytest.fixture
def make_bid(now):
    def _make(
        name="vitalik.eth",
        value="10",
        currency="WETH",
        status="active",
        valid_for=timedelta(days=3),
        age=timedelta(minutes=5),
        **overrides,
    ) -> BidCandidate:
        fields = dict(
            source_id="bids",
            occurred_at=now - age,
            value=Decimal(value),
            currency=currency,
            subject_name=name,
            token_id="1234",
            contract_address=ENS_REGISTRAR,
            bid_id="0xorder",
            status=status,
            valid_until=now + valid_for if valid_for is not None else None,
        )
        fields.update(overrides)
        return BidCandidate(**fields)

    return _make


@pytest.fixture
def mock_resolver():
    resolver = MagicMock()
    resolver.resolve = AsyncMock(
        return_value={
            "name": "vitalik.eth",
            "image": "https://metadata.ens.domains/mainnet/image.svg",
            "description": "vitalik.eth, an ENS name.",
        }
    )
    resolver.resolve_name = AsyncMock(return_value="vitalik.eth")
    return resolver


@pytest.fixture
def mock_oracle():
    oracle = MagicMock()
    oracle.get_eth_usd = AsyncMock(return_value=Decimal("3000"))
    return oracle


class FakeStateRepository:
    """system_state as a dict of strings."""

    def __init__(self):
        self.values: dict[str, str] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value


@pytest.fixture
def state():
    return FakeStateRepository()
