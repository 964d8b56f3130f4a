"""
Name classification into ENS "clubs".

A club is a category tag that raises the minimum value an event must reach
before it is worth posting (three-digit names trade far higher than
arbitrary words, so a 1 ETH sale of one is not news).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

CLUB_999 = "999"
CLUB_10K = "10k"

CLUB_PATTERNS: dict[str, re.Pattern] = {
    CLUB_999: re.compile(r"^[0-9]{3}\.eth$"),
    CLUB_10K: re.compile(r"^[0-9]{4}\.eth$"),
}


@dataclass(frozen=True)
class ClassifierResult:
    tags: tuple[str, ...] = field(default_factory=tuple)

    def has(self, tag: str) -> bool:
        return tag in self.tags


@runtime_checkable
class Classifier(Protocol):
    """Anything that can tag a name. May raise; callers treat that as no tags."""

    def tags_for(self, identifier: str) -> ClassifierResult:
        ...


class PatternClassifier:
    """Tags names by regex against the full lowercase name."""

    def __init__(self, patterns: Optional[dict[str, re.Pattern]] = None) -> None:
        self._patterns = patterns if patterns is not None else CLUB_PATTERNS

    def tags_for(self, identifier: str) -> ClassifierResult:
        name = (identifier or "").strip().lower()
        if not name:
            return ClassifierResult()
        tags = tuple(tag for tag, pattern in self._patterns.items() if pattern.match(name))
        if tags:
            logger.debug(f"{name} tagged {list(tags)}")
        return ClassifierResult(tags=tags)
