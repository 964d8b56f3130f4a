"""
Post text for each record category.

    💰 SOLD

    hernandez.eth

    Price: 2.00 ETH ($8,000.00)
    Seller: 0x1234...abcd
    Buyer: 0xabcd...1234

    https://vision.io/name/ens/hernandez.eth

Only stored fields are used, so formatting never touches the network. When
enrichment is missing or degraded the name falls back to the raw on-chain
subject and the USD figure is left out.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from ens_bot.storage.models import EventCategory, IngestedRecord

MAX_POST_LENGTH = 280
MARKETPLACE_URL = "https://vision.io/name/ens"
ETHERSCAN_TX_URL = "https://etherscan.io/tx"

HEADERS = {
    EventCategory.SALE: "💰 SOLD",
    EventCategory.REGISTRATION: "🏛️ Registered",
    EventCategory.BID: "✋ Offer",
}


def shorten_address(address: Optional[str]) -> str:
    if not address:
        return "unknown"
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def format_usd(value: Optional[Decimal]) -> str:
    if value is None:
        return ""
    return f"(${value:,.2f})"


def format_duration(seconds: float) -> str:
    hours = int(seconds // 3600)
    days = hours // 24
    months = days // 30
    if months >= 1:
        return f"{months} month{'s' if months > 1 else ''}"
    if days >= 1:
        return f"{days} day{'s' if days > 1 else ''}"
    if hours >= 1:
        return f"{hours}h"
    return "< 1h"


def marketplace_link(name: str) -> str:
    label = name[:-4] if name.lower().endswith(".eth") else name
    label = label.replace("\ufe0f", "").strip()
    if not label:
        return "https://vision.io/marketplace"
    return f"{MARKETPLACE_URL}/{label}.eth"


class PostFormatter:
    """
    Builds post and reply text from an IngestedRecord.

    Usage:
        formatter = PostFormatter()
        text = formatter.format(record)
    """

    def __init__(self, max_length: int = MAX_POST_LENGTH) -> None:
        self.max_length = max_length

    def _name(self, record: IngestedRecord) -> str:
        return record.display_name

    def _price_line(self, record: IngestedRecord) -> str:
        currency = "ETH" if record.currency in ("ETH", "WETH") else record.currency
        usd = ""
        if record.enrichment is not None and record.currency not in ("USDC", "USDT"):
            usd = format_usd(record.enrichment.value_usd)
        return f"Price: {record.value:.2f} {currency} {usd}".strip()

    def _details(self, record: IngestedRecord) -> dict:
        return record.payload.get("details") or {}

    def format(self, record: IngestedRecord) -> str:
        name = self._name(record)
        details = self._details(record)
        lines = [HEADERS[record.category], "", name, "", self._price_line(record)]

        if record.category == EventCategory.SALE:
            lines.append(f"Seller: {shorten_address(details.get('seller'))}")
            lines.append(f"Buyer: {shorten_address(details.get('buyer'))}")
        elif record.category == EventCategory.REGISTRATION:
            lines.append(f"New Owner: {shorten_address(details.get('owner'))}")
        elif record.category == EventCategory.BID:
            lines.append(f"From: {shorten_address(details.get('maker'))}")
            lines.append("")
            lines.append(f"Marketplace: {details.get('marketplace') or 'Unknown'}")
            valid_until = details.get("valid_until")
            if valid_until:
                remaining = datetime.fromisoformat(valid_until) - record.occurred_at
                lines.append(f"Valid: {format_duration(remaining.total_seconds())}")

        lines.extend(["", marketplace_link(name)])
        return self._fit("\n".join(lines))

    def format_reply(self, record: IngestedRecord) -> str:
        """Follow-up text posted under the original post."""
        details = self._details(record)
        parts = []
        tx = details.get("transaction_hash")
        if tx:
            parts.append(f"Tx: {ETHERSCAN_TX_URL}/{tx}")
        if record.enrichment and record.enrichment.description:
            parts.append(record.enrichment.description)
        if not parts:
            parts.append(f"More on {self._name(record)}: {marketplace_link(self._name(record))}")
        return self._fit("\n\n".join(parts))

    def _fit(self, text: str) -> str:
        if len(text) <= self.max_length:
            return text
        return text[: self.max_length - 1].rstrip() + "…"
