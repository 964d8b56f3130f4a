"""
Pydantic models mirroring the tables in storage/schema.py.

Monetary amounts use Decimal. Timestamps are timezone-aware datetimes.
JSONB columns come back from asyncpg as text and are decoded here.
"""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventCategory(str, Enum):
    """Kinds of marketplace activity the bot tracks."""

    SALE = "sale"
    REGISTRATION = "registration"
    BID = "bid"


class RecordStatus(str, Enum):
    """Publishing lifecycle of an ingested record."""

    UNPOSTED = "unposted"
    POSTED = "posted"
    FAILED = "failed"


def _decode_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


# =============================================================================
# INGESTED EVENTS
# =============================================================================


class Enrichment(BaseModel):
    """
    Display metadata attached to an accepted event.

    degraded is True when one of the lookups failed; the formatter then falls
    back to the raw on-chain name and value.
    """

    display_name: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    value_usd: Optional[Decimal] = None
    degraded: bool = False
    errors: list[str] = Field(default_factory=list)


class IngestedRecord(BaseModel):
    """One accepted event, unique per (category, natural_key)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: int
    category: EventCategory
    natural_key: str
    source_id: str
    subject_name: Optional[str] = None
    token_id: Optional[str] = None
    contract_address: Optional[str] = None
    value: Decimal
    currency: str = "ETH"
    occurred_at: datetime
    received_at: datetime
    status: RecordStatus = RecordStatus.UNPOSTED
    publish_ref: Optional[str] = None
    posted_at: Optional[datetime] = None
    last_error: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    enrichment: Optional[Enrichment] = None

    @field_validator("payload", "enrichment", mode="before")
    @classmethod
    def _decode_jsonb(cls, value: Any) -> Any:
        return _decode_json(value)

    @property
    def age_seconds(self) -> float:
        return (datetime.now(self.occurred_at.tzinfo) - self.occurred_at).total_seconds()

    @property
    def display_name(self) -> str:
        """Enriched name if present, otherwise the raw subject or token id."""
        if self.enrichment and self.enrichment.display_name:
            return self.enrichment.display_name
        return self.subject_name or self.token_id or self.natural_key


class NewRecord(BaseModel):
    """Fields for inserting an IngestedRecord; the store assigns id and status."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    category: EventCategory
    natural_key: str
    source_id: str
    subject_name: Optional[str] = None
    token_id: Optional[str] = None
    contract_address: Optional[str] = None
    value: Decimal
    currency: str = "ETH"
    occurred_at: datetime
    received_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    enrichment: Optional[Enrichment] = None


class EventKey(BaseModel):
    """Dedup ledger entry for a (category, natural_key)."""

    category: EventCategory
    natural_key: str
    source_id: str
    outcome: str
    claimed_at: datetime
    settled_at: Optional[datetime] = None


# =============================================================================
# WATERMARKS / STATE
# =============================================================================


class Cursor(BaseModel):
    """Per-source poll watermark."""

    source_id: str
    last_seen_at: datetime
    updated_at: datetime


class SystemStateEntry(BaseModel):
    """Persisted operator setting."""

    key: str
    value: str
    updated_at: datetime


# =============================================================================
# PUBLISHING
# =============================================================================


class PublishAttempt(BaseModel):
    """One publish attempt; the rate limiter's window is built from these."""

    id: int
    published_at: datetime
    success: bool
    record_id: Optional[int] = None
    error: Optional[str] = None


class FollowUp(BaseModel):
    """Downstream action claimed for a posted record."""

    record_id: int
    action: str
    status: str
    claimed_at: datetime
    completed_at: Optional[datetime] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None
