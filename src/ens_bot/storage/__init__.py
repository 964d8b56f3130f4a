"""
Storage Layer - Async PostgreSQL database and repositories.

Foundation layer for everything else. Built on asyncpg.

Public API:
    Database, DatabaseConfig - Connection pool, LISTEN support, schema setup

    Models:
        EventCategory, RecordStatus
        IngestedRecord, NewRecord, Enrichment
        EventKey, Cursor, SystemStateEntry
        PublishAttempt, FollowUp

    Repositories:
        RecordRepository (insert_unique / get / set_status / list_recent)
        EventKeyRepository (dedup ledger)
        CursorRepository (poll watermarks)
        PublishAttemptRepository (rate window log)
        SystemStateRepository (operator settings)
        FollowUpRepository (follow-up idempotency)
"""
from ens_bot.storage.database import Database, DatabaseConfig
from ens_bot.storage.models import (
    Cursor,
    Enrichment,
    EventCategory,
    EventKey,
    FollowUp,
    IngestedRecord,
    NewRecord,
    PublishAttempt,
    RecordStatus,
    SystemStateEntry,
)
from ens_bot.storage.repositories import (
    CursorRepository,
    EventKeyRepository,
    FollowUpRepository,
    InsertResult,
    PublishAttemptRepository,
    RecordRepository,
    StatusTransitionError,
    SystemStateRepository,
)
from ens_bot.storage.schema import POSTED_CHANNEL

__all__ = [
    "Database",
    "DatabaseConfig",
    "POSTED_CHANNEL",
    # Models
    "Cursor",
    "Enrichment",
    "EventCategory",
    "EventKey",
    "FollowUp",
    "IngestedRecord",
    "NewRecord",
    "PublishAttempt",
    "RecordStatus",
    "SystemStateEntry",
    # Repositories
    "CursorRepository",
    "EventKeyRepository",
    "FollowUpRepository",
    "InsertResult",
    "PublishAttemptRepository",
    "RecordRepository",
    "StatusTransitionError",
    "SystemStateRepository",
]
