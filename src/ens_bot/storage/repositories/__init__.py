"""
Repository exports.
"""
from ens_bot.storage.repositories.cursor_repo import CursorRepository
from ens_bot.storage.repositories.event_key_repo import EventKeyRepository
from ens_bot.storage.repositories.follow_up_repo import FollowUpRepository
from ens_bot.storage.repositories.publish_repo import PublishAttemptRepository
from ens_bot.storage.repositories.record_repo import (
    InsertResult,
    RecordRepository,
    StatusTransitionError,
)
from ens_bot.storage.repositories.state_repo import SystemStateRepository

__all__ = [
    "CursorRepository",
    "EventKeyRepository",
    "FollowUpRepository",
    "InsertResult",
    "PublishAttemptRepository",
    "RecordRepository",
    "StatusTransitionError",
    "SystemStateRepository",
]
