"""
REST client for the marketplace aggregator API (sales and bids feeds).

Both feeds return newest-first pages linked by a continuation token. This
client only fetches and parses single pages; paging policy (boundary, page
cap, pause between pages) belongs to the poll adapters.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from .models import (
    ENS_CONTRACTS,
    BidCandidate,
    PayloadValidationError,
    SaleCandidate,
    normalize_ens_name,
    parse_decimal,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class MarketplaceAPIError(Exception):
    """Base exception for marketplace API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(MarketplaceAPIError):
    """HTTP 429 from the marketplace."""
    pass


@dataclass
class Page:
    """One parsed page plus what is needed to continue."""

    items: list = field(default_factory=list)
    continuation: Optional[str] = None
    raw_count: int = 0
    invalid: int = 0


def parse_sale(raw: dict, source_id: str) -> SaleCandidate:
    """Build a SaleCandidate from a /sales/v6 entry."""
    token = raw.get("token") or {}
    price = raw.get("price") or {}
    amount = price.get("amount") or {}
    currency = (price.get("currency") or {}).get("symbol") or "ETH"

    return SaleCandidate(
        source_id=source_id,
        occurred_at=parse_timestamp(raw.get("timestamp")),
        value=parse_decimal(amount.get("decimal"), "price"),
        currency=currency.upper(),
        subject_name=normalize_ens_name(token.get("name")),
        token_id=str(token["tokenId"]) if token.get("tokenId") is not None else None,
        contract_address=(token.get("contract") or "").lower() or None,
        transaction_hash=raw.get("txHash") or "",
        log_index=int(raw.get("logIndex") or 0),
        buyer=(raw.get("to") or "").lower() or None,
        seller=(raw.get("from") or "").lower() or None,
        marketplace=(raw.get("orderSource") or None),
        payload=raw,
    )


def parse_bid(raw: dict, source_id: str) -> BidCandidate:
    """
    Build a BidCandidate from an /orders/bids/v6 entry.

    tokenSetId looks like "token:<contract>:<tokenId>"; the token id comes
    from there when criteria metadata is missing.
    """
    price = raw.get("price") or {}
    amount = price.get("amount") or {}
    currency = (price.get("currency") or {}).get("symbol") or "WETH"
    criteria_token = ((raw.get("criteria") or {}).get("data") or {}).get("token") or {}

    token_id = criteria_token.get("tokenId")
    token_set = raw.get("tokenSetId") or ""
    parts = token_set.split(":")
    if token_id is None and len(parts) == 3 and parts[0] == "token":
        token_id = parts[2]

    valid_until = raw.get("validUntil")
    source = raw.get("source") or {}

    return BidCandidate(
        source_id=source_id,
        occurred_at=parse_timestamp(raw.get("createdAt")),
        value=parse_decimal(amount.get("decimal"), "price"),
        currency=currency.upper(),
        subject_name=normalize_ens_name(criteria_token.get("name")),
        token_id=str(token_id) if token_id is not None else None,
        contract_address=(raw.get("contract") or "").lower() or None,
        bid_id=raw.get("id") or "",
        maker=(raw.get("maker") or "").lower() or None,
        status=raw.get("status") or "unknown",
        valid_until=parse_timestamp(valid_until) if valid_until else None,
        marketplace=source.get("name") if isinstance(source, dict) else None,
        payload=raw,
    )


class MarketplaceClient:
    """
    Async client for the marketplace REST API.

    Features:
        - Requests-per-second throttle shared across calls
        - Bounded retries with exponential backoff on 5xx, 429 and timeouts
        - 4xx errors fail immediately

    Usage:
        async with MarketplaceClient(api_key="...") as client:
            page = await client.get_bids_page()
            while page.continuation:
                page = await client.get_bids_page(page.continuation)
    """

    BASE_URL = "https://api-mainnet.magiceden.dev/v3/rtp/ethereum"

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
        contracts: tuple[str, ...] = ENS_CONTRACTS,
        rate_limit: float = 2.0,
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None
        self._base_url = (base_url or self.BASE_URL).rstrip("/")
        self._contracts = contracts
        self._rate_limit = rate_limit
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max_retries
        self._retry_delay = retry_delay

        self._request_times: list[float] = []
        self._rate_lock = asyncio.Lock()

    async def __aenter__(self) -> "MarketplaceClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": "ens-activity-bot/0.1"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _rate_limit_wait(self) -> None:
        async with self._rate_lock:
            now = time.time()
            self._request_times = [t for t in self._request_times if now - t < 1.0]
            if len(self._request_times) >= self._rate_limit:
                wait_time = 1.0 - (now - self._request_times[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
            self._request_times.append(time.time())

    async def _get(self, path: str, params: list[tuple[str, Any]]) -> Any:
        """
        GET a JSON document with throttling and bounded retries.

        Raises:
            MarketplaceAPIError: 4xx immediately, anything else once retries run out
            asyncio.CancelledError: always propagated
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        url = f"{self._base_url}{path}"
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                await self._rate_limit_wait()
                async with self._session.get(url, params=params, headers=self._headers()) as response:
                    if response.status == 429:
                        raise RateLimitError("Rate limit exceeded", status_code=429)
                    if response.status >= 400:
                        text = await response.text()
                        raise MarketplaceAPIError(
                            f"HTTP {response.status} from {path}: {text[:200]}",
                            status_code=response.status,
                        )
                    return await response.json()

            except RateLimitError as e:
                delay = self._retry_delay * (2 ** attempt) * 2
                logger.warning(f"Marketplace rate limited, waiting {delay}s")
                await asyncio.sleep(delay)
                last_error = e

            except MarketplaceAPIError as e:
                if e.status_code and e.status_code >= 500:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Marketplace server error {e.status_code}, "
                        f"retry {attempt + 1}/{self._max_retries}"
                    )
                    await asyncio.sleep(delay)
                    last_error = e
                else:
                    raise

            except asyncio.TimeoutError:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(f"Marketplace timeout, retry {attempt + 1}/{self._max_retries}")
                await asyncio.sleep(delay)
                last_error = MarketplaceAPIError("Request timed out")

            except asyncio.CancelledError:
                raise

            except aiohttp.ClientError as e:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(f"Marketplace request failed: {e}, retry {attempt + 1}/{self._max_retries}")
                await asyncio.sleep(delay)
                last_error = MarketplaceAPIError(str(e))

        raise last_error or MarketplaceAPIError("Request failed after retries")

    def _parse_page(self, entries: list, parser, source_id: str, continuation) -> Page:
        page = Page(continuation=continuation or None, raw_count=len(entries))
        for raw in entries:
            contract = ((raw.get("token") or {}).get("contract") or raw.get("contract") or "").lower()
            if contract and contract not in self._contracts:
                continue
            try:
                page.items.append(parser(raw, source_id))
            except (PayloadValidationError, TypeError, ValueError) as e:
                page.invalid += 1
                logger.warning(f"Skipping malformed {source_id} entry {raw.get('id')}: {e}")
        return page

    # =========================================================================
    # Feeds
    # =========================================================================

    async def get_sales_page(
        self,
        continuation: Optional[str] = None,
        start_timestamp: Optional[int] = None,
        limit: int = 100,
        source_id: str = "sales",
    ) -> Page:
        """One page of recent ENS sales, newest first."""
        params: list[tuple[str, Any]] = [("contract", c) for c in self._contracts]
        params.append(("limit", limit))
        params.append(("sortDirection", "desc"))
        if start_timestamp is not None:
            params.append(("startTimestamp", start_timestamp))
        if continuation:
            params.append(("continuation", continuation))

        data = await self._get("/sales/v6", params)
        return self._parse_page(
            data.get("sales") or [], parse_sale, source_id, data.get("continuation")
        )

    async def get_bids_page(
        self,
        continuation: Optional[str] = None,
        limit: int = 200,
        source_id: str = "bids",
    ) -> Page:
        """One page of active ENS bids, newest first."""
        params: list[tuple[str, Any]] = [("contracts", c) for c in self._contracts]
        params.extend([
            ("status", "active"),
            ("includeCriteriaMetadata", "true"),
            ("sortBy", "createdAt"),
            ("limit", limit),
        ])
        if continuation:
            params.append(("continuation", continuation))

        data = await self._get("/orders/bids/v6", params)
        return self._parse_page(
            data.get("orders") or [], parse_bid, source_id, data.get("continuation")
        )
