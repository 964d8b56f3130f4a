"""
Ingested record repository.

The (category, natural_key) unique constraint is the last line of defence
against double ingestion: insert_unique never reads before writing, it lets
the constraint decide. Status changes are conditional updates so two writers
can never both move a record out of 'unposted'.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ens_bot.storage.models import (
    EventCategory,
    IngestedRecord,
    NewRecord,
    RecordStatus,
)
from ens_bot.storage.repositories.base import BaseRepository

ALLOWED_TRANSITIONS = {
    (RecordStatus.UNPOSTED, RecordStatus.POSTED),
    (RecordStatus.UNPOSTED, RecordStatus.FAILED),
}


class StatusTransitionError(Exception):
    """Raised when a record is not in the status the caller expected."""

    def __init__(
        self,
        record_id: int,
        expected: RecordStatus,
        actual: Optional[RecordStatus],
    ) -> None:
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        found = actual.value if actual else "missing"
        super().__init__(
            f"Record {record_id} expected status '{expected.value}', found '{found}'"
        )


@dataclass(frozen=True)
class InsertResult:
    """Outcome of insert_unique: the stored record, or a conflict."""

    ok: bool
    record: Optional[IngestedRecord] = None

    @property
    def conflict(self) -> bool:
        return not self.ok


class RecordRepository(BaseRepository[IngestedRecord]):
    """Repository for ingested_records."""

    table_name = "ingested_records"
    model_class = IngestedRecord

    async def insert_unique(self, new: NewRecord) -> InsertResult:
        """Insert a record; a (category, natural_key) collision yields ok=False."""
        query = """
            INSERT INTO ingested_records
            (category, natural_key, source_id, subject_name, token_id,
             contract_address, value, currency, occurred_at, received_at,
             payload, enrichment)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12::jsonb)
            ON CONFLICT (category, natural_key) DO NOTHING
            RETURNING *
        """
        enrichment = new.enrichment.model_dump_json() if new.enrichment else None
        record = await self.db.fetchrow(
            query,
            new.category.value,
            new.natural_key,
            new.source_id,
            new.subject_name,
            new.token_id,
            new.contract_address,
            new.value,
            new.currency,
            new.occurred_at,
            new.received_at,
            json.dumps(new.payload, default=str),
            enrichment,
        )
        if record is None:
            return InsertResult(ok=False)
        return InsertResult(ok=True, record=self._record_to_model(record))

    async def get(self, record_id: int) -> Optional[IngestedRecord]:
        return await self.get_by_id(record_id)

    async def get_by_key(
        self, category: EventCategory, natural_key: str
    ) -> Optional[IngestedRecord]:
        query = """
            SELECT * FROM ingested_records
            WHERE category = $1 AND natural_key = $2
        """
        record = await self.db.fetchrow(query, category.value, natural_key)
        return self._record_to_model(record)

    async def set_status(
        self,
        record_id: int,
        from_status: RecordStatus,
        to_status: RecordStatus,
        publish_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> IngestedRecord:
        """
        Move a record from from_status to to_status atomically.

        Raises:
            ValueError: the transition is not part of the record lifecycle
            StatusTransitionError: the record is not currently in from_status
        """
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            raise ValueError(
                f"Illegal transition {from_status.value} -> {to_status.value}"
            )

        posted_at = datetime.now(timezone.utc) if to_status == RecordStatus.POSTED else None
        query = """
            UPDATE ingested_records
            SET status = $3,
                publish_ref = COALESCE($4, publish_ref),
                posted_at = COALESCE($5, posted_at),
                last_error = $6
            WHERE id = $1 AND status = $2
            RETURNING *
        """
        record = await self.db.fetchrow(
            query,
            record_id,
            from_status.value,
            to_status.value,
            publish_ref,
            posted_at,
            error,
        )
        if record is None:
            current = await self.db.fetchval(
                "SELECT status FROM ingested_records WHERE id = $1", record_id
            )
            raise StatusTransitionError(
                record_id, from_status, RecordStatus(current) if current else None
            )
        return self._record_to_model(record)

    async def note_error(self, record_id: int, error: str) -> None:
        """Remember the latest transient failure without changing status."""
        await self.db.execute(
            "UPDATE ingested_records SET last_error = $2 WHERE id = $1",
            record_id,
            error,
        )

    async def list_recent(
        self,
        category: EventCategory,
        limit: int = 20,
        status: Optional[RecordStatus] = None,
    ) -> list[IngestedRecord]:
        """Most recent records of a category by event time, optionally by status."""
        if status is not None:
            query = """
                SELECT * FROM ingested_records
                WHERE category = $1 AND status = $2
                ORDER BY occurred_at DESC
                LIMIT $3
            """
            records = await self.db.fetch(query, category.value, status.value, limit)
        else:
            query = """
                SELECT * FROM ingested_records
                WHERE category = $1
                ORDER BY occurred_at DESC
                LIMIT $2
            """
            records = await self.db.fetch(query, category.value, limit)
        return self._records_to_models(records)

    async def count_by_status(self) -> dict[str, dict[str, int]]:
        """{category: {status: count}} with zeroes filled in."""
        rows = await self.db.fetch(
            """
            SELECT category, status, COUNT(*) AS n
            FROM ingested_records
            GROUP BY category, status
            """
        )
        counts = {
            c.value: {s.value: 0 for s in RecordStatus} for c in EventCategory
        }
        for row in rows:
            counts.setdefault(row["category"], {})[row["status"]] = row["n"]
        return counts
