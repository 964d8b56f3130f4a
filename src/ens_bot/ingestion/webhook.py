"""
FastAPI receiver for QuickNode webhook deliveries.

Routes:
    POST /webhook/sales          {"orderFulfilled": [SeaportOrder, ...]}
    POST /webhook/registrations  {"nameRegistered": [event, ...]}
    GET  /health

Every item in a delivery goes through the push adapter independently.
Malformed items are counted and skipped; a body that is not JSON at all
answers 400. If the pipeline raises (database
unavailable) the whole delivery answers 503 so the sender retries it;
already-stored items come back as duplicates on the retry.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import FastAPI, Header, HTTPException, Request

from .models import PayloadValidationError
from .push import PushAdapter, parse_name_registered, parse_seaport_order

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Webhook-Secret"


def _items(body: Any, key: str) -> list:
    """QuickNode sends either {key: [...]} or a bare list."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        items = body.get(key)
        if isinstance(items, list):
            return items
    return []


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors
        logger.warning(f"Webhook body is not JSON: {e}")
        raise HTTPException(status_code=400, detail="Body must be JSON") from e


def create_webhook_app(adapter: PushAdapter, secret: Optional[str] = None) -> FastAPI:
    """
    Create the webhook FastAPI application.

    Args:
        adapter: Push adapter every parsed candidate is handed to
        secret: When set, requests must carry it in the X-Webhook-Secret header
    """
    app = FastAPI(
        title="ENS Activity Webhooks",
        description="Push ingestion for ENS sales and registrations",
        version="0.1.0",
    )

    def _check_secret(provided: Optional[str]) -> None:
        if secret and not hmac.compare_digest(provided or "", secret):
            raise HTTPException(status_code=401, detail="Invalid webhook secret")

    async def _ingest(items: list, parser: Callable) -> dict:
        received_at = datetime.now(timezone.utc)
        outcomes: Counter = Counter()
        for raw in items:
            if not isinstance(raw, dict):
                outcomes["invalid"] += 1
                continue
            try:
                candidate = parser(raw, source_id=adapter.source_id, received_at=received_at)
            except PayloadValidationError as e:
                logger.warning(f"Rejected webhook item: {e}")
                outcomes["invalid"] += 1
                continue
            if candidate is None:
                outcomes["ignored"] += 1
                continue

            try:
                outcome = await adapter.accept(candidate, now=received_at)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Webhook ingestion failed for {candidate.natural_key}: {e}")
                raise HTTPException(status_code=503, detail="Ingestion unavailable") from e
            outcomes[outcome.code] += 1

        return {"received": len(items), "outcomes": dict(outcomes)}

    @app.get("/health")
    async def health():
        return {"status": "ok", "received": adapter.received}

    @app.post("/webhook/sales")
    async def sales_webhook(
        request: Request,
        x_webhook_secret: Optional[str] = Header(default=None),
    ):
        _check_secret(x_webhook_secret)
        body = await _read_json(request)
        result = await _ingest(_items(body, "orderFulfilled"), parse_seaport_order)
        logger.info(f"Sales webhook: {result}")
        return result

    @app.post("/webhook/registrations")
    async def registrations_webhook(
        request: Request,
        x_webhook_secret: Optional[str] = Header(default=None),
    ):
        _check_secret(x_webhook_secret)
        body = await _read_json(request)
        result = await _ingest(_items(body, "nameRegistered"), parse_name_registered)
        logger.info(f"Registrations webhook: {result}")
        return result

    return app


class WebhookServer:
    """
    Runs the webhook app under uvicorn as a background task.

    Usage:
        server = WebhookServer(adapter, host="0.0.0.0", port=3000)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        adapter: PushAdapter,
        host: str = "0.0.0.0",
        port: int = 3000,
        secret: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.app = create_webhook_app(adapter, secret)
        self._server = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        import uvicorn

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info(f"Webhook receiver listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        self._server = None
        logger.info("Webhook receiver stopped")
