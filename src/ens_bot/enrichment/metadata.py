"""
Metadata and price lookups for accepted events.

Both lookups are best effort: every call has its own timeout, and a failure
degrades the enrichment instead of rejecting the event. The record then
carries degraded=True and the formatter falls back to the raw on-chain name
and value.
"""
from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import httpx

from ens_bot.storage.models import Enrichment

if TYPE_CHECKING:
    from ens_bot.ingestion.models import CandidateEvent

logger = logging.getLogger(__name__)

ENS_METADATA_API = "https://metadata.ens.domains/mainnet"
PRICE_API = "https://api.g.alchemy.com/prices/v1"


class MetadataResolver:
    """
    ENS metadata service client.

    resolve() returns the service's JSON for a token or None when the lookup
    fails for any reason.
    """

    def __init__(self, base_url: str = ENS_METADATA_API, timeout: float = 5.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def resolve(self, contract: str, token_id: str) -> Optional[dict]:
        url = f"{self._base_url}/{contract}/{token_id}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                data = resp.json()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"ENS metadata lookup failed for {contract}/{token_id}: {e}")
            return None

        if not isinstance(data, dict):
            return None
        return data

    async def resolve_name(self, contract: str, token_id: str) -> Optional[str]:
        """Display name for a token, or None if the service does not know it."""
        data = await self.resolve(contract, token_id)
        if not data:
            return None
        name = data.get("name")
        if not isinstance(name, str):
            return None
        name = name.strip()
        # Tokens the service cannot decode come back as "[<labelhash>].eth"
        if not name or name.startswith("["):
            return None
        return name


class PriceOracle:
    """
    ETH/USD quote with an in-memory cache.

    get_eth_usd() returns None when no fresh quote can be obtained; the last
    good value is reused while it is younger than cache_ttl.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = PRICE_API,
        timeout: float = 5.0,
        cache_ttl: float = 1800.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._cache_ttl = cache_ttl
        self._cached: Optional[Decimal] = None
        self._cached_at = 0.0

    async def get_eth_usd(self) -> Optional[Decimal]:
        if self._cached is not None and time.time() - self._cached_at < self._cache_ttl:
            return self._cached
        if not self._api_key:
            return self._cached

        url = f"{self._base_url}/{self._api_key}/tokens/by-symbol"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(url, params={"symbols": "ETH"})
                resp.raise_for_status()
                data = resp.json()
            price = data["data"][0]["prices"][0]["value"]
            self._cached = Decimal(str(price))
            self._cached_at = time.time()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"ETH price lookup failed: {e}")
        return self._cached


class Enricher:
    """
    Attaches display metadata and a USD figure to an accepted candidate.

    Never raises for lookup failures. The whole enrichment is also bounded
    by `timeout`; hitting it yields a degraded result.
    """

    def __init__(
        self,
        resolver: Optional[MetadataResolver] = None,
        oracle: Optional[PriceOracle] = None,
        timeout: float = 8.0,
    ) -> None:
        self._resolver = resolver or MetadataResolver()
        self._oracle = oracle or PriceOracle()
        self._timeout = timeout

    async def resolve_name(self, candidate: "CandidateEvent") -> Optional[str]:
        """Look up a missing subject name. None if it cannot be resolved."""
        if not candidate.token_id or not candidate.contract_address:
            return None
        try:
            return await asyncio.wait_for(
                self._resolver.resolve_name(candidate.contract_address, candidate.token_id),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Name resolution timed out for token {candidate.token_id}")
            return None

    async def enrich(self, candidate: "CandidateEvent") -> Enrichment:
        try:
            return await asyncio.wait_for(self._enrich(candidate), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Enrichment timed out for {candidate.natural_key}")
            return Enrichment(
                display_name=candidate.subject_name,
                degraded=True,
                errors=["timeout"],
            )

    async def _enrich(self, candidate: "CandidateEvent") -> Enrichment:
        errors: list[str] = []
        display_name = candidate.subject_name
        image_url = None
        description = None

        if candidate.token_id and candidate.contract_address:
            meta = await self._resolver.resolve(candidate.contract_address, candidate.token_id)
            if meta:
                display_name = meta.get("name") or display_name
                image_url = meta.get("image") or meta.get("image_url")
                description = meta.get("description")
            else:
                errors.append("metadata_unavailable")

        value_usd = None
        if candidate.is_eth:
            eth_usd = await self._oracle.get_eth_usd()
            if eth_usd is not None:
                value_usd = (candidate.value * eth_usd).quantize(Decimal("0.01"))
            else:
                errors.append("price_unavailable")
        elif candidate.is_stablecoin:
            value_usd = candidate.value

        if errors:
            logger.info(f"Degraded enrichment for {display_name}: {errors}")

        return Enrichment(
            display_name=display_name,
            image_url=image_url,
            description=description,
            value_usd=value_usd,
            degraded=bool(errors),
            errors=errors,
        )
