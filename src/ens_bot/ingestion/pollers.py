"""
Poll-based source adapters.

One poll():

    1. read the cursor
    2. boundary = max(cursor, now - max_lookback)
    3. fetch everything strictly newer than the boundary (paged, capped)
    4. submit candidates to the pipeline oldest first
    5. commit cursor = max(newest occurred_at seen, boundary)

The cursor moves even when every candidate was filtered or when nothing was
fetched at all; otherwise a cold or quiet source would rescan the same
window forever. If any submit raises, nothing is committed and the
exception propagates to the scheduler.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from ens_bot.storage.repositories import CursorRepository

from .client import MarketplaceClient, Page
from .models import CandidateEvent
from .pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """What one poll did."""

    source_id: str
    boundary: datetime
    cursor_before: Optional[datetime]
    cursor_after: datetime
    fetched: int = 0
    pages: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def stored(self) -> int:
        return self.outcomes.get("stored", 0)

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "boundary": self.boundary.isoformat(),
            "cursor_before": self.cursor_before.isoformat() if self.cursor_before else None,
            "cursor_after": self.cursor_after.isoformat(),
            "fetched": self.fetched,
            "pages": self.pages,
            "outcomes": dict(self.outcomes),
            "duration_seconds": round(self.duration_seconds, 2),
        }


class PollAdapter(ABC):
    """
    Base class for cursor-driven pollers.

    Subclasses implement fetch_since(boundary) and set source_id.
    """

    source_id: str = "poll"

    def __init__(
        self,
        cursors: CursorRepository,
        pipeline: IngestionPipeline,
        max_lookback: timedelta = timedelta(hours=1),
    ) -> None:
        self._cursors = cursors
        self._pipeline = pipeline
        self.max_lookback = max_lookback
        self._pages_last_fetch = 0

    @abstractmethod
    async def fetch_since(self, boundary: datetime) -> list[CandidateEvent]:
        """Candidates newer than `boundary`, in any order."""

    async def compute_boundary(self, now: datetime) -> tuple[Optional[datetime], datetime]:
        """(stored cursor, boundary) for a poll starting at `now`."""
        last = await self._cursors.get(self.source_id)
        floor = now - self.max_lookback
        boundary = floor if last is None else max(last, floor)
        return last, boundary

    async def poll(self, now: Optional[datetime] = None) -> PollResult:
        now = now or datetime.now(timezone.utc)
        started = asyncio.get_running_loop().time()

        last, boundary = await self.compute_boundary(now)
        logger.info(f"[{self.source_id}] polling since {boundary.isoformat()}")

        fetched = await self.fetch_since(boundary)
        candidates = sorted(
            (c for c in fetched if c.occurred_at > boundary),
            key=lambda c: c.occurred_at,
        )

        outcomes: Counter = Counter()
        for candidate in candidates:
            outcome = await self._pipeline.submit(candidate, now=now)
            outcomes[outcome.code] += 1

        newest = candidates[-1].occurred_at if candidates else boundary
        committed = await self._cursors.set(self.source_id, max(newest, boundary))

        result = PollResult(
            source_id=self.source_id,
            boundary=boundary,
            cursor_before=last,
            cursor_after=committed,
            fetched=len(candidates),
            pages=self._pages_last_fetch,
            outcomes=dict(outcomes),
            duration_seconds=asyncio.get_running_loop().time() - started,
        )
        logger.info(
            f"[{self.source_id}] {result.fetched} candidates, "
            f"outcomes={result.outcomes}, cursor -> {committed.isoformat()}"
        )
        return result


class PagedPollAdapter(PollAdapter):
    """
    Poller over a newest-first feed with continuation tokens.

    Stops when the feed is exhausted, when the oldest item on a page is at
    or before the boundary, or after max_pages.
    """

    def __init__(
        self,
        cursors: CursorRepository,
        pipeline: IngestionPipeline,
        client: MarketplaceClient,
        max_lookback: timedelta = timedelta(hours=1),
        max_pages: int = 5,
        page_size: int = 100,
        page_delay: float = 1.0,
    ) -> None:
        super().__init__(cursors, pipeline, max_lookback)
        self._client = client
        self.max_pages = max_pages
        self.page_size = page_size
        self.page_delay = page_delay

    @abstractmethod
    async def fetch_page(self, continuation: Optional[str], boundary: datetime) -> Page:
        """One newest-first page starting at `continuation` (None for the first)."""

    async def fetch_since(self, boundary: datetime) -> list[CandidateEvent]:
        collected: list[CandidateEvent] = []
        continuation: Optional[str] = None
        pages = 0

        while True:
            page = await self.fetch_page(continuation, boundary)
            pages += 1
            if not page.items and page.raw_count == 0:
                break

            collected.extend(c for c in page.items if c.occurred_at > boundary)

            if page.items:
                oldest = min(c.occurred_at for c in page.items)
                if oldest <= boundary:
                    logger.debug(f"[{self.source_id}] reached boundary on page {pages}")
                    break

            continuation = page.continuation
            if not continuation:
                break
            if pages >= self.max_pages:
                logger.warning(f"[{self.source_id}] hit page cap ({self.max_pages})")
                break
            await asyncio.sleep(self.page_delay)

        self._pages_last_fetch = pages
        return collected


class SalesPoller(PagedPollAdapter):
    """ENS sales from the marketplace sales feed."""

    source_id = "sales"

    async def fetch_page(self, continuation: Optional[str], boundary: datetime) -> Page:
        return await self._client.get_sales_page(
            continuation=continuation,
            start_timestamp=int(boundary.timestamp()),
            limit=self.page_size,
            source_id=self.source_id,
        )


class BidsPoller(PagedPollAdapter):
    """Active ENS bids from the marketplace orders feed."""

    source_id = "bids"

    def __init__(self, *args, page_size: int = 200, **kwargs) -> None:
        super().__init__(*args, page_size=page_size, **kwargs)

    async def fetch_page(self, continuation: Optional[str], boundary: datetime) -> Page:
        return await self._client.get_bids_page(
            continuation=continuation,
            limit=self.page_size,
            source_id=self.source_id,
        )
