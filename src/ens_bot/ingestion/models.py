"""
Candidate events produced by source adapters.

One frozen dataclass per category. Each validates itself on construction so
malformed payloads are stopped at the adapter boundary, before the
deduplicator ever sees them. The natural key is derived from the category's
own identifying fields and is only ever compared within that category.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Optional

from ens_bot.storage.models import Enrichment, EventCategory, NewRecord

# ENS token contracts
ENS_REGISTRAR = "0x57f1887a8bf19b14fc0df6fd9b2acc9af147ea85"
ENS_NAME_WRAPPER = "0xd4416b13d2b3a9abae7acd5d6c2bbdbe25686401"
ENS_CONTRACTS = (ENS_REGISTRAR, ENS_NAME_WRAPPER)

WETH_ADDRESS = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"

ETH_CURRENCIES = frozenset({"ETH", "WETH"})
STABLECOINS = frozenset({"USDC", "USDT"})

BID_ACTIVE = "active"


class PayloadValidationError(ValueError):
    """Raised when an upstream payload cannot form a valid candidate."""


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an upstream timestamp into an aware UTC datetime.

    Accepts unix seconds, unix milliseconds, ISO-8601 strings (with or
    without a trailing Z) and datetimes.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts > 4102444800:
            ts = ts / 1000
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    if isinstance(value, str) and value:
        if value.isdigit():
            return parse_timestamp(int(value))
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise PayloadValidationError(f"Unparseable timestamp: {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise PayloadValidationError(f"Missing or invalid timestamp: {value!r}")


def parse_decimal(value: Any, name: str = "value") -> Decimal:
    if value is None or isinstance(value, bool):
        raise PayloadValidationError(f"Missing {name}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise PayloadValidationError(f"Invalid {name}: {value!r}") from e


def wei_to_eth(wei: Any) -> Decimal:
    try:
        return Decimal(int(str(wei), 0)) / Decimal(10**18)
    except (TypeError, ValueError) as e:
        raise PayloadValidationError(f"Invalid wei amount: {wei!r}") from e


def normalize_ens_name(name: Optional[str]) -> Optional[str]:
    """
    Clean a display name from a marketplace.

    Marketplaces sometimes append junk after the TLD ("vitalik.eth, an ENS
    name."); everything after ".eth" is dropped. Bare labels get ".eth".
    Names that are not ENS-shaped come back as None.
    """
    if not name:
        return None
    name = name.strip()
    lowered = name.lower()
    idx = lowered.find(".eth")
    if idx > 0:
        return name[: idx + 4]
    if "." in name or " " in name:
        return None
    return f"{name}.eth"


@dataclass(frozen=True)
class CandidateEvent:
    """
    Base candidate: what every category shares.

    Attributes:
        source_id: adapter that produced it ("sales", "bids", "webhook", ...)
        occurred_at: event time (aware, UTC)
        value: amount in `currency` units
        currency: symbol, ETH for native
        subject_name: ENS name if the upstream supplied one
        token_id: decimal token id
        contract_address: lowercase token contract
        payload: raw upstream body, kept for audit
    """

    category: ClassVar[EventCategory]

    source_id: str
    occurred_at: datetime
    value: Decimal
    currency: str = "ETH"
    subject_name: Optional[str] = None
    token_id: Optional[str] = None
    contract_address: Optional[str] = None
    payload: dict = field(default_factory=dict, compare=False, hash=False, repr=False)

    def __post_init__(self):
        if not self.source_id:
            raise PayloadValidationError("source_id is required")
        if self.occurred_at.tzinfo is None:
            raise PayloadValidationError("occurred_at must be timezone-aware")
        if not isinstance(self.value, Decimal):
            raise PayloadValidationError(f"value must be Decimal, got {type(self.value).__name__}")
        if self.value < 0:
            raise PayloadValidationError(f"value must be non-negative, got {self.value}")
        if not self.natural_key:
            raise PayloadValidationError(f"{type(self).__name__} has no natural key")

    @property
    def natural_key(self) -> str:
        raise NotImplementedError

    @property
    def is_eth(self) -> bool:
        return self.currency.upper() in ETH_CURRENCIES

    @property
    def is_stablecoin(self) -> bool:
        return self.currency.upper() in STABLECOINS

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.occurred_at).total_seconds()

    def details(self) -> dict[str, Any]:
        """Category-specific fields persisted alongside the raw payload."""
        return {}

    def to_new_record(
        self,
        received_at: datetime,
        enrichment: Optional[Enrichment] = None,
    ) -> NewRecord:
        return NewRecord(
            category=self.category,
            natural_key=self.natural_key,
            source_id=self.source_id,
            subject_name=self.subject_name,
            token_id=self.token_id,
            contract_address=self.contract_address,
            value=self.value,
            currency=self.currency.upper(),
            occurred_at=self.occurred_at,
            received_at=received_at,
            payload={"details": self.details(), "raw": self.payload},
            enrichment=enrichment,
        )


@dataclass(frozen=True)
class SaleCandidate(CandidateEvent):
    """A completed sale, keyed on transaction hash and log index."""

    category: ClassVar[EventCategory] = EventCategory.SALE

    transaction_hash: str = ""
    log_index: int = 0
    buyer: Optional[str] = None
    seller: Optional[str] = None
    marketplace: Optional[str] = None

    def __post_init__(self):
        if not self.transaction_hash:
            raise PayloadValidationError("sale requires transaction_hash")
        if self.log_index < 0:
            raise PayloadValidationError(f"invalid log_index {self.log_index}")
        super().__post_init__()

    @property
    def natural_key(self) -> str:
        return f"{self.transaction_hash.lower()}:{self.log_index}"

    def details(self) -> dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "buyer": self.buyer,
            "seller": self.seller,
            "marketplace": self.marketplace,
        }


@dataclass(frozen=True)
class RegistrationCandidate(CandidateEvent):
    """A new name registration, keyed on token id."""

    category: ClassVar[EventCategory] = EventCategory.REGISTRATION

    transaction_hash: Optional[str] = None
    owner: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def natural_key(self) -> str:
        return self.token_id or ""

    def details(self) -> dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "owner": self.owner,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class BidCandidate(CandidateEvent):
    """A marketplace offer, keyed on the marketplace order id."""

    category: ClassVar[EventCategory] = EventCategory.BID

    bid_id: str = ""
    maker: Optional[str] = None
    status: str = BID_ACTIVE
    valid_until: Optional[datetime] = None
    marketplace: Optional[str] = None

    @property
    def natural_key(self) -> str:
        return self.bid_id

    @property
    def is_active(self) -> bool:
        return self.status.lower() == BID_ACTIVE

    def details(self) -> dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "maker": self.maker,
            "status": self.status,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "marketplace": self.marketplace,
        }
