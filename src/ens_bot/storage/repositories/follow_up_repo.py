"""
Follow-up action ledger.

(record_id, action) is the primary key, so claiming is idempotent: a second
notification for the same record finds the row and gets False back.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ens_bot.storage.models import FollowUp
from ens_bot.storage.repositories.base import BaseRepository


class FollowUpRepository(BaseRepository[FollowUp]):
    """Repository for follow_ups."""

    table_name = "follow_ups"
    model_class = FollowUp

    async def claim(self, record_id: int, action: str) -> bool:
        query = """
            INSERT INTO follow_ups (record_id, action, status, claimed_at)
            VALUES ($1, $2, 'claimed', $3)
            ON CONFLICT (record_id, action) DO NOTHING
            RETURNING record_id
        """
        result = await self.db.fetchval(
            query, record_id, action, datetime.now(timezone.utc)
        )
        return result is not None

    async def complete(
        self, record_id: int, action: str, result_ref: Optional[str] = None
    ) -> None:
        await self.db.execute(
            """
            UPDATE follow_ups
            SET status = 'done', completed_at = $3, result_ref = $4
            WHERE record_id = $1 AND action = $2
            """,
            record_id,
            action,
            datetime.now(timezone.utc),
            result_ref,
        )

    async def fail(self, record_id: int, action: str, error: str) -> None:
        await self.db.execute(
            """
            UPDATE follow_ups
            SET status = 'failed', completed_at = $3, error = $4
            WHERE record_id = $1 AND action = $2
            """,
            record_id,
            action,
            datetime.now(timezone.utc),
            error,
        )

    async def get(self, record_id: int, action: str) -> Optional[FollowUp]:
        row = await self.db.fetchrow(
            "SELECT * FROM follow_ups WHERE record_id = $1 AND action = $2",
            record_id,
            action,
        )
        return self._record_to_model(row)

    async def find_missing(
        self, action: str, posted_since: datetime, limit: int = 50
    ) -> list[int]:
        """Ids of posted records with no follow-up row for `action`, oldest first."""
        query = """
            SELECT r.id
            FROM ingested_records r
            LEFT JOIN follow_ups f
              ON f.record_id = r.id AND f.action = $1
            WHERE r.status = 'posted'
              AND r.posted_at >= $2
              AND f.record_id IS NULL
            ORDER BY r.posted_at ASC
            LIMIT $3
        """
        rows = await self.db.fetch(query, action, posted_since, limit)
        return [row["id"] for row in rows]
