"""
Row-to-model plumbing shared by the table repositories.
"""
from __future__ import annotations

from typing import Generic, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel

from ens_bot.storage.database import Database

ModelT = TypeVar("ModelT", bound=BaseModel)


class BaseRepository(Generic[ModelT]):
    """
    Subclasses name their table and pydantic model and write their own SQL.
    """

    table_name: str
    model_class: Type[ModelT]

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record_to_model(self, row) -> Optional[ModelT]:
        return None if row is None else self.model_class.model_validate(dict(row))

    def _records_to_models(self, rows: Iterable) -> list[ModelT]:
        return [self.model_class.model_validate(dict(row)) for row in rows]

    async def get_by_id(self, key, key_column: str = "id") -> Optional[ModelT]:
        row = await self.db.fetchrow(
            f"SELECT * FROM {self.table_name} WHERE {key_column} = $1", key
        )
        return self._record_to_model(row)

    async def count(self) -> int:
        return await self.db.fetchval(f"SELECT COUNT(*) FROM {self.table_name}")
