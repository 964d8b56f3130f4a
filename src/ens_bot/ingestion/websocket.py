"""
WebSocket consumer for the real-time ENS offer feed.

The connection is reopened with doubling delays (capped) whenever it drops
or stays silent past the heartbeat timeout; the event filter is re-sent
after every connect. Only offer_made activity events become bids.

Each parsed offer is handed to the push adapter; the pipeline decides
whether it is new. Offers the bids poller already stored come back as
duplicates because both use the marketplace order hash as the key.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .models import PayloadValidationError
from .push import PushAdapter, parse_offer_event

logger = logging.getLogger(__name__)


class FeedState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPING = "stopping"


StateCallback = Callable[[FeedState], Awaitable[None]]


class OfferFeed:
    """
    Resilient websocket consumer for offer_made events.

    Usage:
        feed = OfferFeed(url, PushAdapter(pipeline, source_id="offers"))
        await feed.start()
        ...
        await feed.stop()
    """

    def __init__(
        self,
        url: str,
        adapter: PushAdapter,
        on_state_change: Optional[StateCallback] = None,
        heartbeat_timeout: float = 90.0,
        backoff_first: float = 1.0,
        backoff_cap: float = 60.0,
    ):
        self._url = url
        self._adapter = adapter
        self._on_state_change = on_state_change

        self._heartbeat_timeout = heartbeat_timeout
        self._backoff_first = backoff_first
        self._backoff_cap = backoff_cap

        self._state = FeedState.DISCONNECTED
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self._reconnect_count = 0
        self._failures_in_row = 0
        self._last_event_at: Optional[datetime] = None
        self._offers_received = 0
        self._errors = 0

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == FeedState.CONNECTED

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    @property
    def last_event_at(self) -> Optional[datetime]:
        return self._last_event_at

    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "reconnects": self._reconnect_count,
            "offers_received": self._offers_received,
            "errors": self._errors,
            "last_event_at": self._last_event_at.isoformat() if self._last_event_at else None,
        }

    async def _set_state(self, state: FeedState) -> None:
        if self._state != state:
            logger.info(f"Offer feed: {self._state.value} -> {state.value}")
            self._state = state

            if self._on_state_change:
                try:
                    await self._on_state_change(state)
                except Exception as e:
                    logger.error(f"Offer feed state callback raised: {e}")

    async def start(self) -> None:
        if self._task is not None:
            logger.warning(f"Offer feed already started ({self._state.value})")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return

        logger.info("Stopping offer feed...")
        await self._set_state(FeedState.STOPPING)
        self._stop_event.set()

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning(f"Error closing offer feed socket: {e}")

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._ws = None

        await self._set_state(FeedState.DISCONNECTED)
        logger.info("Offer feed stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self._set_state(FeedState.CONNECTING)
            try:
                async with websockets.connect(
                    self._url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5,
                ) as ws:
                    self._ws = ws
                    self._failures_in_row = 0
                    await self._set_state(FeedState.CONNECTED)
                    logger.info(f"Connected to offer feed {self._url}")
                    await self._subscribe(ws)
                    await self._receive_loop(ws)
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                logger.warning(f"Offer feed connection closed: {e}")
            except Exception as e:
                self._errors += 1
                logger.error(f"Offer feed error: {e}")
            finally:
                self._ws = None

            if self._stop_event.is_set():
                break
            await self._schedule_reconnect()

    async def _subscribe(self, ws) -> None:
        await ws.send(json.dumps({"type": "subscribe_all"}))
        await ws.send(json.dumps({
            "type": "set_event_filter",
            "filter_type": "include",
            "event_types": ["offer_made"],
        }))
        logger.info("Subscribed to offer_made events")

    async def _receive_loop(self, ws) -> None:
        while not self._stop_event.is_set():
            try:
                message = await asyncio.wait_for(ws.recv(), timeout=self._heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Offer feed silent for {self._heartbeat_timeout:.0f}s, reconnecting")
                return
            await self.handle_message(message)

    def _next_delay(self) -> float:
        return min(self._backoff_first * 2 ** (self._failures_in_row - 1), self._backoff_cap)

    async def _schedule_reconnect(self) -> None:
        self._reconnect_count += 1
        self._failures_in_row += 1
        await self._set_state(FeedState.RECONNECTING)

        delay = self._next_delay()
        logger.info(f"Offer feed retry #{self._reconnect_count} in {delay:.1f}s")
        # stop() sets the event, which cuts the wait short
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return

    async def handle_message(self, raw_message) -> None:
        """
        Parse one frame and forward any offer in it.

        Pipeline failures are logged and counted, not raised: the feed keeps
        running and the bids poller picks the offer up on its next run.
        """
        if not raw_message or not str(raw_message).strip():
            return
        try:
            data = json.loads(raw_message)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse offer feed message: {e}")
            return

        if not isinstance(data, dict) or data.get("type") != "activity_event":
            logger.debug(f"Ignoring offer feed message: {str(data)[:200]}")
            return

        event = data.get("data") or {}
        if event.get("event_type") != "offer_made":
            return

        self._last_event_at = datetime.now(timezone.utc)
        try:
            candidate = parse_offer_event(
                event, source_id=self._adapter.source_id, received_at=self._last_event_at
            )
        except PayloadValidationError as e:
            logger.warning(f"Rejected offer for {event.get('name')}: {e}")
            return
        if candidate is None:
            return

        self._offers_received += 1
        try:
            outcome = await self._adapter.accept(candidate)
            logger.debug(f"Offer {candidate.natural_key}: {outcome.code}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._errors += 1
            logger.error(f"Offer ingestion failed for {candidate.natural_key}: {e}")
