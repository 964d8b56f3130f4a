"""
Deduplicator: the single authority on "have we seen this event".

try_admit() is an optimistic insert against the event_keys primary key. It
never reads first; two adapters racing on the same key both issue the
INSERT and exactly one gets a row back.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ens_bot.storage.models import EventCategory
from ens_bot.storage.repositories import EventKeyRepository

logger = logging.getLogger(__name__)

OUTCOME_STORED = "stored"
OUTCOME_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class AdmitResult:
    admitted: bool


class Deduplicator:
    """
    Claims (category, natural_key) pairs.

    A claim stays 'pending' until settle() records what became of the
    candidate (stored, or a filter reason). release() gives a pending claim
    back when processing failed on infrastructure so the next delivery can
    retry. A pending claim older than `lease` counts as abandoned and may be
    claimed again.
    """

    def __init__(
        self,
        repo: EventKeyRepository,
        lease: timedelta = timedelta(minutes=10),
    ) -> None:
        self._repo = repo
        self._lease = lease

    async def try_admit(
        self,
        category: EventCategory,
        natural_key: str,
        source_id: str = "unknown",
        now: Optional[datetime] = None,
    ) -> AdmitResult:
        now = now or datetime.now(timezone.utc)
        admitted = await self._repo.claim(category, natural_key, source_id, now, self._lease)
        if not admitted:
            logger.debug(f"Duplicate {category.value} {natural_key} from {source_id}")
        return AdmitResult(admitted=admitted)

    async def settle(
        self,
        category: EventCategory,
        natural_key: str,
        outcome: str,
        now: Optional[datetime] = None,
    ) -> None:
        await self._repo.settle(
            category, natural_key, outcome, now or datetime.now(timezone.utc)
        )

    async def release(self, category: EventCategory, natural_key: str) -> None:
        released = await self._repo.release(category, natural_key)
        if released:
            logger.info(f"Released claim on {category.value} {natural_key}")
