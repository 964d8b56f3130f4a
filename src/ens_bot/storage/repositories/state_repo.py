"""
Key/value operator settings (scheduler flag, autopost toggles).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ens_bot.storage.models import SystemStateEntry
from ens_bot.storage.repositories.base import BaseRepository


class SystemStateRepository(BaseRepository[SystemStateEntry]):
    """Repository for system_state."""

    table_name = "system_state"
    model_class = SystemStateEntry

    async def get(self, key: str) -> Optional[str]:
        return await self.db.fetchval(
            "SELECT value FROM system_state WHERE key = $1", key
        )

    async def set(self, key: str, value: str) -> None:
        query = """
            INSERT INTO system_state (key, value, updated_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
        """
        await self.db.execute(query, key, value, datetime.now(timezone.utc))

    async def get_bool(self, key: str, default: bool) -> bool:
        value = await self.get(key)
        if value is None:
            return default
        return value.lower() == "true"

    async def set_bool(self, key: str, value: bool) -> None:
        await self.set(key, "true" if value else "false")

    async def get_all(self) -> dict[str, str]:
        records = await self.db.fetch("SELECT key, value FROM system_state")
        return {r["key"]: r["value"] for r in records}
