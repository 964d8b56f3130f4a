"""
Ingestion pipeline: deduplicate, filter, enrich, store.

Every adapter (pollers, webhook, websocket feed) hands candidates to the
same IngestionPipeline.submit(). The outcome is one of:

    stored     - new record in 'unposted'
    duplicate  - another delivery already owns the key
    filtered   - rejected by policy, with the FilterReason code

Infrastructure failures (database down, etc.) are not outcomes: the claim
is released and the exception propagates so the caller (poll adapter or
webhook) can report the failure and retry later.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from ens_bot.enrichment import Enricher, FilterReason, FilterStage
from ens_bot.storage.models import IngestedRecord
from ens_bot.storage.repositories import RecordRepository

from .dedup import OUTCOME_DUPLICATE, OUTCOME_STORED, Deduplicator
from .metrics import MetricsCollector
from .models import CandidateEvent

logger = logging.getLogger(__name__)

StoredCallback = Callable[[IngestedRecord], None]


class SubmitStatus(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    FILTERED = "filtered"


@dataclass(frozen=True)
class SubmitOutcome:
    status: SubmitStatus
    reason: Optional[FilterReason] = None
    record_id: Optional[int] = None

    @property
    def admitted(self) -> bool:
        return self.status != SubmitStatus.DUPLICATE

    @property
    def code(self) -> str:
        """Metric label: 'stored', 'duplicate' or the filter reason."""
        if self.status == SubmitStatus.FILTERED and self.reason is not None:
            return self.reason.value
        return self.status.value


class IngestionPipeline:
    """
    Single entry point shared by all source adapters.

    Usage:
        pipeline = IngestionPipeline(dedup, filters, enricher, records)
        pipeline.add_listener(worker.wake)
        outcome = await pipeline.submit(candidate)
    """

    def __init__(
        self,
        dedup: Deduplicator,
        filter_stage: FilterStage,
        enricher: Enricher,
        records: RecordRepository,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._dedup = dedup
        self._filters = filter_stage
        self._enricher = enricher
        self._records = records
        self.metrics = metrics or MetricsCollector()
        self._listeners: list[StoredCallback] = []

    def add_listener(self, callback: StoredCallback) -> None:
        """Called with every newly stored record."""
        self._listeners.append(callback)

    async def submit(
        self, candidate: CandidateEvent, now: Optional[datetime] = None
    ) -> SubmitOutcome:
        now = now or datetime.now(timezone.utc)
        category = candidate.category
        key = candidate.natural_key

        admit = await self._dedup.try_admit(category, key, candidate.source_id, now)
        if not admit.admitted:
            return self._finish(candidate, SubmitOutcome(SubmitStatus.DUPLICATE))

        try:
            outcome = await self._process(candidate, now)
        except asyncio.CancelledError:
            await self._release_quietly(candidate)
            raise
        except Exception as e:
            self.metrics.record_error(candidate.source_id, f"{key}: {e}")
            await self._release_quietly(candidate)
            raise

        return self._finish(candidate, outcome)

    async def _process(self, candidate: CandidateEvent, now: datetime) -> SubmitOutcome:
        category = candidate.category
        key = candidate.natural_key

        if not candidate.subject_name:
            name = await self._enricher.resolve_name(candidate)
            if name:
                candidate = dataclasses.replace(candidate, subject_name=name)

        decision = self._filters.evaluate(candidate, now)
        if not decision.accepted:
            await self._dedup.settle(category, key, decision.reason.value, now)
            logger.info(
                f"Filtered {category.value} {candidate.subject_name or key}: "
                f"{decision.reason.value} ({decision.detail})"
            )
            return SubmitOutcome(SubmitStatus.FILTERED, reason=decision.reason)

        enrichment = await self._enricher.enrich(candidate)
        result = await self._records.insert_unique(
            candidate.to_new_record(received_at=now, enrichment=enrichment)
        )

        if result.conflict:
            # Record already exists (ledger row was lost or reclaimed)
            await self._dedup.settle(category, key, OUTCOME_DUPLICATE, now)
            return SubmitOutcome(SubmitStatus.DUPLICATE)

        await self._dedup.settle(category, key, OUTCOME_STORED, now)
        record = result.record
        logger.info(
            f"Stored {category.value} #{record.id} {record.display_name} "
            f"{record.value} {record.currency} (source={candidate.source_id})"
        )
        for callback in self._listeners:
            try:
                callback(record)
            except Exception as e:
                logger.warning(f"Stored-record listener failed: {e}")
        return SubmitOutcome(SubmitStatus.STORED, record_id=record.id)

    async def _release_quietly(self, candidate: CandidateEvent) -> None:
        try:
            await asyncio.shield(
                self._dedup.release(candidate.category, candidate.natural_key)
            )
        except Exception as e:
            # Claim will be reclaimable once its lease expires
            logger.warning(f"Could not release claim on {candidate.natural_key}: {e}")

    def _finish(self, candidate: CandidateEvent, outcome: SubmitOutcome) -> SubmitOutcome:
        self.metrics.record_outcome(candidate.source_id, outcome.code)
        return outcome
