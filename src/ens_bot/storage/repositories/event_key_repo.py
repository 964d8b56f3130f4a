"""
Dedup ledger.

A claim is a plain INSERT against the (category, natural_key) primary key;
losing the race shows up as "no row returned", never as a read-then-write
gap. A claim left 'pending' past its lease (process died mid-pipeline) can be
taken over by the same statement.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from ens_bot.storage.models import EventCategory, EventKey
from ens_bot.storage.repositories.base import BaseRepository

PENDING = "pending"


class EventKeyRepository(BaseRepository[EventKey]):
    """Repository for event_keys."""

    table_name = "event_keys"
    model_class = EventKey

    async def claim(
        self,
        category: EventCategory,
        natural_key: str,
        source_id: str,
        now: datetime,
        lease: timedelta,
    ) -> bool:
        """True if this caller now owns the key."""
        query = """
            INSERT INTO event_keys (category, natural_key, source_id, outcome, claimed_at)
            VALUES ($1, $2, $3, 'pending', $4)
            ON CONFLICT (category, natural_key) DO UPDATE
            SET source_id = EXCLUDED.source_id,
                claimed_at = EXCLUDED.claimed_at
            WHERE event_keys.outcome = 'pending'
              AND event_keys.claimed_at < $5
            RETURNING natural_key
        """
        result = await self.db.fetchval(
            query, category.value, natural_key, source_id, now, now - lease
        )
        return result is not None

    async def settle(
        self,
        category: EventCategory,
        natural_key: str,
        outcome: str,
        now: datetime,
    ) -> None:
        await self.db.execute(
            """
            UPDATE event_keys
            SET outcome = $3, settled_at = $4
            WHERE category = $1 AND natural_key = $2
            """,
            category.value,
            natural_key,
            outcome,
            now,
        )

    async def release(self, category: EventCategory, natural_key: str) -> bool:
        """Drop a pending claim so a later delivery can retry it."""
        result = await self.db.execute(
            """
            DELETE FROM event_keys
            WHERE category = $1 AND natural_key = $2 AND outcome = 'pending'
            """,
            category.value,
            natural_key,
        )
        return result != "DELETE 0"

    async def get(self, category: EventCategory, natural_key: str):
        row = await self.db.fetchrow(
            "SELECT * FROM event_keys WHERE category = $1 AND natural_key = $2",
            category.value,
            natural_key,
        )
        return self._record_to_model(row)
