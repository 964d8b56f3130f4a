"""
Ingestion counters.

Every candidate that reaches the pipeline ends in exactly one outcome code
(stored, duplicate, a filter reason, or error). The collector keeps running
totals per source and a rolling window for rates.
"""

from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass
class ErrorRecord:
    """An ingestion failure, kept for the ops dashboard."""
    timestamp: datetime
    source_id: str
    message: str


@dataclass
class IngestionMetrics:
    """Snapshot of ingestion counters."""

    outcomes: dict[str, int] = field(default_factory=dict)
    by_source: dict[str, dict[str, int]] = field(default_factory=dict)
    events_last_window: int = 0
    stored_last_window: int = 0
    errors_last_hour: int = 0
    recent_errors: list[ErrorRecord] = field(default_factory=list)
    last_event_at: Optional[datetime] = None
    started_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return sum(self.outcomes.values())

    def to_dict(self) -> dict:
        return {
            "outcomes": dict(self.outcomes),
            "by_source": {k: dict(v) for k, v in self.by_source.items()},
            "total": self.total,
            "events_last_window": self.events_last_window,
            "stored_last_window": self.stored_last_window,
            "errors_last_hour": self.errors_last_hour,
            "recent_errors": [
                {
                    "timestamp": e.timestamp.isoformat(),
                    "source_id": e.source_id,
                    "message": e.message,
                }
                for e in self.recent_errors
            ],
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


class MetricsCollector:
    """
    Outcome counters with a rolling window.

    Usage:
        collector = MetricsCollector()
        collector.record_outcome("bids", "below_threshold")
        snapshot = collector.get_metrics()
    """

    def __init__(self, window_seconds: float = 300.0, max_errors: int = 100):
        self._window_seconds = window_seconds
        self._outcomes: Counter = Counter()
        self._by_source: dict[str, Counter] = {}
        self._events: deque[tuple[float, str]] = deque()
        self._errors: deque[ErrorRecord] = deque(maxlen=max_errors)
        self._last_event_at: Optional[datetime] = None
        self._started_at = datetime.now(timezone.utc)

    def _prune(self) -> None:
        cutoff = time.time() - self._window_seconds
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()

    def record_outcome(self, source_id: str, outcome: str) -> None:
        self._outcomes[outcome] += 1
        self._by_source.setdefault(source_id, Counter())[outcome] += 1
        self._events.append((time.time(), outcome))
        self._last_event_at = datetime.now(timezone.utc)

    def record_error(self, source_id: str, message: str) -> None:
        self.record_outcome(source_id, "error")
        self._errors.append(ErrorRecord(
            timestamp=datetime.now(timezone.utc),
            source_id=source_id,
            message=message,
        ))

    def get_metrics(self) -> IngestionMetrics:
        self._prune()
        hour_ago = time.time() - 3600
        return IngestionMetrics(
            outcomes=dict(self._outcomes),
            by_source={k: dict(v) for k, v in self._by_source.items()},
            events_last_window=len(self._events),
            stored_last_window=sum(1 for _, o in self._events if o == "stored"),
            errors_last_hour=sum(1 for e in self._errors if e.timestamp.timestamp() > hour_ago),
            recent_errors=list(self._errors)[-10:],
            last_event_at=self._last_event_at,
            started_at=self._started_at,
        )

    def reset(self) -> None:
        self._outcomes.clear()
        self._by_source.clear()
        self._events.clear()
        self._errors.clear()
        self._last_event_at = None
