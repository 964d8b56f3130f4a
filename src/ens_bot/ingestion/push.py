"""
Push-based source adapter and the payload parsers for push transports.

A PushAdapter has no cursor: whatever the transport delivers is forwarded
to the pipeline immediately. Three payload shapes arrive this way:

    - Seaport orderFulfilled events (webhook, sales)
    - ENS registrar nameRegistered events (webhook, registrations)
    - offer_made activity events (offer feed websocket, bids)

Parsers return None for payloads that are well-formed but not relevant
(not an ENS token, no ETH leg) and raise PayloadValidationError for
payloads that claim to be relevant but cannot be turned into a candidate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from .models import (
    ENS_CONTRACTS,
    ENS_REGISTRAR,
    WETH_ADDRESS,
    BidCandidate,
    CandidateEvent,
    PayloadValidationError,
    RegistrationCandidate,
    SaleCandidate,
    normalize_ens_name,
    parse_timestamp,
    wei_to_eth,
)
from .pipeline import IngestionPipeline, SubmitOutcome

logger = logging.getLogger(__name__)

NATIVE_ITEM_TYPE = 0
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# currency contract -> (symbol, decimals)
CURRENCIES: dict[str, tuple[str, int]] = {
    ZERO_ADDRESS: ("ETH", 18),
    WETH_ADDRESS: ("WETH", 18),
    "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": ("USDC", 6),
    "0xdac17f958d2ee523a2206206994597c13d831ec7": ("USDT", 6),
}

# Offer feed events carry no expiry
DEFAULT_OFFER_VALIDITY = timedelta(days=7)


class PushAdapter:
    """
    Forwards pushed candidates to the pipeline.

    Usage:
        adapter = PushAdapter(pipeline, source_id="webhook")
        outcome = await adapter.accept(candidate)
    """

    def __init__(self, pipeline: IngestionPipeline, source_id: str = "webhook") -> None:
        self._pipeline = pipeline
        self.source_id = source_id
        self.received = 0

    async def accept(
        self, candidate: CandidateEvent, now: Optional[datetime] = None
    ) -> SubmitOutcome:
        self.received += 1
        return await self._pipeline.submit(candidate, now=now)


# =============================================================================
# SEAPORT SALES
# =============================================================================


def _lower(value: Any) -> str:
    return str(value or "").lower()


def _is_eth_payment(item: dict) -> bool:
    return item.get("itemType") == NATIVE_ITEM_TYPE or _lower(item.get("token")) == WETH_ADDRESS


def parse_seaport_order(
    order: dict,
    source_id: str = "webhook",
    received_at: Optional[datetime] = None,
) -> Optional[SaleCandidate]:
    """
    Turn one Seaport orderFulfilled event into a SaleCandidate.

    The ENS token can sit on either side of the order (listing fills put it
    in the offer, accepted bids put it in the consideration). The price is
    the sum of every ETH/WETH leg, since fees split the payment. The seller
    is the recipient of the largest payment, falling back to the offerer;
    the buyer is the order recipient.

    The event carries no block time, so occurred_at is the delivery time
    unless a timestamp field is present.
    """
    offer = order.get("offer") or []
    consideration = order.get("consideration") or []

    ens_item = next(
        (i for i in list(offer) + list(consideration) if _lower(i.get("token")) in ENS_CONTRACTS),
        None,
    )
    if ens_item is None:
        return None

    payments = [i for i in list(consideration) + list(offer) if _is_eth_payment(i)]
    if not payments:
        logger.debug(f"No ETH/WETH leg in order {order.get('orderHash')}")
        return None

    try:
        total_wei = sum(int(str(p.get("amount") or 0), 0) for p in payments)
    except ValueError as e:
        raise PayloadValidationError(f"Invalid payment amount in {order.get('orderHash')}") from e

    with_recipient = [p for p in payments if p.get("recipient")]
    if with_recipient:
        main = max(with_recipient, key=lambda p: int(str(p.get("amount") or 0), 0))
        seller = _lower(main["recipient"])
    else:
        seller = _lower(order.get("offerer")) or None

    log_index = order.get("logIndex")
    if log_index is None:
        raise PayloadValidationError(f"Order {order.get('orderHash')} has no logIndex")

    timestamp = order.get("timestamp")
    occurred_at = (
        parse_timestamp(timestamp) if timestamp else received_at or datetime.now(timezone.utc)
    )

    return SaleCandidate(
        source_id=source_id,
        occurred_at=occurred_at,
        value=Decimal(total_wei) / Decimal(10**18),
        currency="ETH",
        subject_name=None,
        token_id=str(int(str(ens_item.get("identifier")), 0)) if ens_item.get("identifier") else None,
        contract_address=_lower(ens_item.get("token")),
        transaction_hash=order.get("txHash") or "",
        log_index=int(str(log_index), 0),
        buyer=_lower(order.get("recipient")) or None,
        seller=seller,
        marketplace=order.get("contractLabel") or "seaport",
        payload=order,
    )


# =============================================================================
# REGISTRATIONS
# =============================================================================


def parse_name_registered(
    event: dict,
    source_id: str = "webhook",
    received_at: Optional[datetime] = None,
) -> RegistrationCandidate:
    """
    Turn one nameRegistered event into a RegistrationCandidate.

    `label` is the labelhash in hex; the token id is its decimal form.
    `expires` is unix seconds. `name` is the bare label.
    """
    label = event.get("label")
    if not label:
        raise PayloadValidationError(f"nameRegistered for {event.get('name')} has no label")
    try:
        token_id = str(int(str(label), 16))
    except ValueError as e:
        raise PayloadValidationError(f"Invalid label {label!r}") from e

    cost = event.get("totalCostWei")
    if cost is None:
        raise PayloadValidationError(f"nameRegistered for {event.get('name')} has no cost")

    expires = event.get("expires")
    timestamp = event.get("timestamp")

    return RegistrationCandidate(
        source_id=source_id,
        occurred_at=(
            parse_timestamp(timestamp) if timestamp else received_at or datetime.now(timezone.utc)
        ),
        value=wei_to_eth(cost),
        currency="ETH",
        subject_name=normalize_ens_name(event.get("name")),
        token_id=token_id,
        contract_address=ENS_REGISTRAR,
        transaction_hash=event.get("txHash"),
        owner=_lower(event.get("owner")) or None,
        expires_at=parse_timestamp(int(str(expires))) if expires else None,
        payload=event,
    )


# =============================================================================
# OFFER FEED
# =============================================================================


def parse_offer_event(
    event: dict,
    source_id: str = "offers",
    received_at: Optional[datetime] = None,
) -> Optional[BidCandidate]:
    """
    Turn one offer_made activity event into a BidCandidate.

    The marketplace order hash is the bid id, so offers seen here and on the
    bids poller share a key. Events without one cannot be deduplicated and
    are dropped.
    """
    order_hash = (event.get("metadata") or {}).get("order_hash")
    if not order_hash:
        logger.warning(f"Skipping offer for {event.get('name')} without order_hash")
        return None

    currency_address = _lower(event.get("currency_address")) or ZERO_ADDRESS
    symbol, decimals = CURRENCIES.get(currency_address, ("UNKNOWN", 18))
    try:
        value = Decimal(int(str(event.get("price_wei")), 0)) / Decimal(10**decimals)
    except (TypeError, ValueError) as e:
        raise PayloadValidationError(f"Invalid price_wei for offer {order_hash}") from e

    received_at = received_at or datetime.now(timezone.utc)
    created_at = event.get("created_at")
    occurred_at = parse_timestamp(created_at) if created_at else received_at

    return BidCandidate(
        source_id=source_id,
        occurred_at=occurred_at,
        value=value,
        currency=symbol,
        subject_name=normalize_ens_name(event.get("name")),
        token_id=str(event["token_id"]) if event.get("token_id") else None,
        contract_address=ENS_REGISTRAR,
        bid_id=order_hash,
        maker=_lower(event.get("actor_address")) or None,
        status="active",
        valid_until=occurred_at + DEFAULT_OFFER_VALIDITY,
        marketplace=event.get("platform"),
        payload=event,
    )
