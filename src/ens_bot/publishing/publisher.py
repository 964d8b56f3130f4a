"""
Publishing targets.

A publisher posts text and returns a reference to the created post. It
classifies every failure as transient (retry later) or permanent (the
target refused the content) so the dispatcher never has to guess.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class PublishErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class PublishError(Exception):
    """A publish attempt failed; `kind` says whether it may be retried."""

    def __init__(self, message: str, kind: PublishErrorKind = PublishErrorKind.TRANSIENT):
        super().__init__(message)
        self.kind = kind

    @property
    def is_permanent(self) -> bool:
        return self.kind == PublishErrorKind.PERMANENT


@dataclass(frozen=True)
class PublishResult:
    """Reference to the created post."""

    id: str
    text: str = ""


@runtime_checkable
class Publisher(Protocol):
    async def publish(
        self,
        content: str,
        media: Optional[list[str]] = None,
        reply_to: Optional[str] = None,
    ) -> PublishResult:
        ...


def classify_status(status_code: int) -> PublishErrorKind:
    """5xx and 429 are worth retrying; any other 4xx is a refusal."""
    if status_code >= 500 or status_code == 429:
        return PublishErrorKind.TRANSIENT
    return PublishErrorKind.PERMANENT


class XPublisher:
    """
    Posts to X through the v2 tweets endpoint with an OAuth 2.0 user token.

    Usage:
        publisher = XPublisher(bearer_token="...")
        result = await publisher.publish("vitalik.eth sold for 10 ETH")
        await publisher.publish("details...", reply_to=result.id)
    """

    API_URL = "https://api.x.com/2/tweets"

    def __init__(
        self,
        bearer_token: str,
        api_url: Optional[str] = None,
        timeout: float = 15.0,
    ) -> None:
        if not bearer_token:
            raise ValueError("bearer_token is required")
        self._token = bearer_token
        self._api_url = api_url or self.API_URL
        self._timeout = timeout

    async def publish(
        self,
        content: str,
        media: Optional[list[str]] = None,
        reply_to: Optional[str] = None,
    ) -> PublishResult:
        body: dict = {"text": content}
        if reply_to:
            body["reply"] = {"in_reply_to_tweet_id": reply_to}
        if media:
            body["media"] = {"media_ids": list(media)}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    self._api_url,
                    json=body,
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except asyncio.CancelledError:
            raise
        except httpx.TimeoutException as e:
            raise PublishError(f"Timed out posting: {e}", PublishErrorKind.TRANSIENT) from e
        except httpx.HTTPError as e:
            raise PublishError(f"Network error posting: {e}", PublishErrorKind.TRANSIENT) from e

        if resp.status_code >= 400:
            kind = classify_status(resp.status_code)
            raise PublishError(f"HTTP {resp.status_code}: {resp.text[:200]}", kind)

        try:
            post_id = resp.json()["data"]["id"]
        except (KeyError, TypeError, ValueError) as e:
            raise PublishError(f"Unexpected response: {resp.text[:200]}") from e

        logger.info(f"Posted {post_id}" + (f" in reply to {reply_to}" if reply_to else ""))
        return PublishResult(id=str(post_id), text=content)


class DryRunPublisher:
    """Logs instead of posting; hands out fake sequential ids."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.published: list[tuple[str, Optional[str]]] = []

    async def publish(
        self,
        content: str,
        media: Optional[list[str]] = None,
        reply_to: Optional[str] = None,
    ) -> PublishResult:
        post_id = f"dry-run-{next(self._ids)}"
        self.published.append((content, reply_to))
        logger.info(f"[DRY RUN] {post_id}: {content!r}")
        return PublishResult(id=post_id, text=content)
