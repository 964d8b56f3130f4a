"""
Tests for push payload parsers and the push adapter.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from ens_bot.ingestion.models import ENS_REGISTRAR, WETH_ADDRESS, PayloadValidationError
from ens_bot.ingestion.pipeline import SubmitOutcome, SubmitStatus
from ens_bot.ingestion.push import (
    DEFAULT_OFFER_VALIDITY,
    PushAdapter,
    parse_name_registered,
    parse_offer_event,
    parse_seaport_order,
)

RECEIVED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ONE_ETH = str(10**18)


def seaport_order(**overrides):
    order = {
        "orderHash": "0xhash",
        "offerer": "0xSeller",
        "recipient": "0xBuyer",
        "txHash": "0xTX",
        "logIndex": "0x5",
        "contractLabel": "opensea",
        "offer": [
            {"itemType": 2, "token": ENS_REGISTRAR, "identifier": "1234", "amount": "1"},
        ],
        "consideration": [
            {"itemType": 0, "token": "0x0", "amount": str(95 * 10**16), "recipient": "0xSeller"},
            {"itemType": 0, "token": "0x0", "amount": str(5 * 10**16), "recipient": "0xFees"},
        ],
    }
    order.update(overrides)
    return order


class TestParseSeaportOrder:

    def test_listing_fill(self):
        sale = parse_seaport_order(seaport_order(), received_at=RECEIVED_AT)

        assert sale.value == Decimal("1")
        assert sale.seller == "0xseller"
        assert sale.buyer == "0xbuyer"
        assert sale.log_index == 5
        assert sale.natural_key == "0xtx:5"
        assert sale.token_id == "1234"
        assert sale.occurred_at == RECEIVED_AT
        assert sale.subject_name is None

    def test_accepted_offer_with_weth_in_offer(self):
        """ENS token in the consideration, WETH paid by the offerer."""
        order = seaport_order(
            offerer="0xBidder",
            offer=[{"itemType": 1, "token": WETH_ADDRESS, "amount": ONE_ETH}],
            consideration=[
                {"itemType": 2, "token": ENS_REGISTRAR, "identifier": "1234", "amount": "1",
                 "recipient": "0xBidder"},
            ],
        )

        sale = parse_seaport_order(order, received_at=RECEIVED_AT)

        assert sale.value == Decimal("1")

    def test_not_ens_is_ignored(self):
        order = seaport_order(offer=[{"itemType": 2, "token": "0xdead", "identifier": "1"}])

        assert parse_seaport_order(order) is None

    def test_no_eth_leg_is_ignored(self):
        order = seaport_order(consideration=[
            {"itemType": 1, "token": "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", "amount": "1000000"},
        ])

        assert parse_seaport_order(order) is None

    def test_missing_log_index_rejected(self):
        order = seaport_order()
        del order["logIndex"]

        with pytest.raises(PayloadValidationError):
            parse_seaport_order(order)

    def test_explicit_timestamp_used(self):
        sale = parse_seaport_order(seaport_order(timestamp=1772366400), received_at=RECEIVED_AT + timedelta(hours=1))

        assert sale.occurred_at == RECEIVED_AT


class TestParseNameRegistered:

    def test_parses_event(self):
        event = {
            "name": "newname",
            "label": "0x" + "0" * 62 + "ff",
            "owner": "0xOwner",
            "totalCostWei": str(2 * 10**17),
            "expires": "1803902400",
            "txHash": "0xreg",
        }

        reg = parse_name_registered(event, received_at=RECEIVED_AT)

        assert reg.subject_name == "newname.eth"
        assert reg.token_id == "255"
        assert reg.natural_key == "255"
        assert reg.value == Decimal("0.2")
        assert reg.owner == "0xowner"
        assert reg.expires_at is not None
        assert reg.occurred_at == RECEIVED_AT

    def test_missing_label_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_name_registered({"name": "x", "totalCostWei": "1"})

    def test_missing_cost_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_name_registered({"name": "x", "label": "0x01"})


class TestParseOfferEvent:

    def _event(self, **overrides):
        event = {
            "event_type": "offer_made",
            "name": "vitalik.eth",
            "token_id": "1234",
            "price_wei": str(6 * 10**18),
            "currency_address": WETH_ADDRESS,
            "actor_address": "0xMaker",
            "platform": "opensea",
            "created_at": "2026-03-01T11:59:00Z",
            "metadata": {"order_hash": "0xorder"},
        }
        event.update(overrides)
        return event

    def test_parses_offer(self):
        bid = parse_offer_event(self._event(), received_at=RECEIVED_AT)

        assert bid.bid_id == "0xorder"
        assert bid.value == Decimal("6")
        assert bid.currency == "WETH"
        assert bid.maker == "0xmaker"
        assert bid.valid_until == bid.occurred_at + DEFAULT_OFFER_VALIDITY

    def test_stablecoin_uses_its_decimals(self):
        bid = parse_offer_event(self._event(
            price_wei="250000000",
            currency_address="0xA0b86991c6218b36c1d19d4a2e9eb0ce3606eB48",
        ))

        assert bid.currency == "USDC"
        assert bid.value == Decimal("250")

    def test_without_order_hash_dropped(self):
        assert parse_offer_event(self._event(metadata={})) is None

    def test_invalid_price_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_offer_event(self._event(price_wei=None))


class TestPushAdapter:

    async def test_forwards_and_counts(self, make_sale):
        pipeline = MagicMock()
        pipeline.submit = AsyncMock(return_value=SubmitOutcome(SubmitStatus.STORED, record_id=1))
        adapter = PushAdapter(pipeline, source_id="webhook")

        outcome = await adapter.accept(make_sale())

        assert outcome.code == "stored"
        assert adapter.received == 1
        pipeline.submit.assert_awaited_once()
