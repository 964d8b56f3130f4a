"""
Publish attempt log.

Every attempt, successful or not, is one row. The rate limiter derives its
whole state from the rows inside the trailing window; there is no counter.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from ens_bot.storage.models import PublishAttempt
from ens_bot.storage.repositories.base import BaseRepository


class PublishAttemptRepository(BaseRepository[PublishAttempt]):
    """Repository for publish_attempts."""

    table_name = "publish_attempts"
    model_class = PublishAttempt

    async def record(
        self,
        published_at: datetime,
        success: bool,
        record_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> PublishAttempt:
        query = """
            INSERT INTO publish_attempts (published_at, success, record_id, error)
            VALUES ($1, $2, $3, $4)
            RETURNING *
        """
        row = await self.db.fetchrow(query, published_at, success, record_id, error)
        return self._record_to_model(row)

    async def window_stats(self, since: datetime) -> tuple[int, Optional[datetime]]:
        """(count, oldest published_at) of attempts strictly after `since`."""
        row = await self.db.fetchrow(
            """
            SELECT COUNT(*) AS n, MIN(published_at) AS oldest
            FROM publish_attempts
            WHERE published_at > $1
            """,
            since,
        )
        if row is None:
            return 0, None
        return row["n"], row["oldest"]

    async def get_recent(self, limit: int = 50) -> list[PublishAttempt]:
        records = await self.db.fetch(
            "SELECT * FROM publish_attempts ORDER BY published_at DESC LIMIT $1",
            limit,
        )
        return self._records_to_models(records)
