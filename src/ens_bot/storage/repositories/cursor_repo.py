"""
Per-source poll watermarks.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ens_bot.storage.models import Cursor
from ens_bot.storage.repositories.base import BaseRepository


class CursorRepository(BaseRepository[Cursor]):
    """
    Watermark store for poll adapters.

    set() only ever moves a cursor forward: GREATEST in the upsert makes a
    stale writer harmless.
    """

    table_name = "cursors"
    model_class = Cursor

    async def get(self, source_id: str) -> Optional[datetime]:
        """Last committed watermark, or None for a cold source."""
        query = "SELECT last_seen_at FROM cursors WHERE source_id = $1"
        return await self.db.fetchval(query, source_id)

    async def set(self, source_id: str, watermark: datetime) -> datetime:
        """Commit a watermark and return the stored (possibly larger) value."""
        query = """
            INSERT INTO cursors (source_id, last_seen_at, updated_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (source_id) DO UPDATE
            SET last_seen_at = GREATEST(cursors.last_seen_at, $2),
                updated_at = $3
            RETURNING last_seen_at
        """
        return await self.db.fetchval(
            query, source_id, watermark, datetime.now(timezone.utc)
        )

    async def list_all(self) -> list[Cursor]:
        records = await self.db.fetch("SELECT * FROM cursors ORDER BY source_id")
        return self._records_to_models(records)
