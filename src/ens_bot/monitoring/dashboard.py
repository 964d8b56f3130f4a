"""
Dashboard for operator control and monitoring.

Provides a Flask application with REST endpoints. Flask runs in its own
thread; every async call is dispatched onto the bot's event loop.

SECURITY:
- Optional API key authentication via DASHBOARD_API_KEY env var
- Bind to localhost by default
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Optional

from flask import Flask, Response, abort, jsonify, request
from flask.json.provider import DefaultJSONProvider

from ens_bot.enrichment.filters import apply_policy_changes
from ens_bot.storage import EventCategory, RecordStatus

if TYPE_CHECKING:
    from ens_bot.core import Orchestrator
    from ens_bot.enrichment import PolicyStore
    from ens_bot.ingestion import MetricsCollector
    from ens_bot.monitoring.health_checker import HealthChecker
    from ens_bot.publishing import PublishWorker, RateLimiter
    from ens_bot.storage import PublishAttemptRepository, RecordRepository

logger = logging.getLogger(__name__)

# API key from environment (optional)
DASHBOARD_API_KEY = os.environ.get("DASHBOARD_API_KEY")


class DecimalJSONProvider(DefaultJSONProvider):
    """JSON provider that handles Decimal and datetime values."""

    @staticmethod
    def default(obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return DefaultJSONProvider.default(obj)


def require_api_key(f: Callable) -> Callable:
    """
    Decorator to require API key authentication.

    If DASHBOARD_API_KEY is set, requests must include either the
    X-API-Key header or the api_key query parameter. Otherwise
    authentication is disabled.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if not DASHBOARD_API_KEY:
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key") or request.args.get("api_key")

        if not provided_key or provided_key != DASHBOARD_API_KEY:
            logger.warning(f"Unauthorized API access attempt from {request.remote_addr}")
            abort(401)

        return f(*args, **kwargs)

    return decorated


def _parse_category(value: Optional[str]) -> EventCategory:
    try:
        return EventCategory(value)
    except ValueError:
        abort(400, description=f"Unknown category '{value}'")


class Dashboard:
    """
    Operator dashboard.

    Endpoints:
        GET  /health                      - Aggregate component health
        GET  /api/status                  - Scheduler, worker and feed status
        POST /api/scheduler/start         - Enable scheduling
        POST /api/scheduler/stop          - Disable scheduling (persisted)
        POST /api/scheduler/reset         - Reset the circuit breaker
        POST /api/scheduler/run/<source>  - One manual poll
        GET  /api/autopost                - Autopost settings and filter thresholds
        POST /api/autopost                - Update autopost settings and thresholds
        GET  /api/records                 - Recent records per category
        GET  /api/records/counts          - Record counts by category/status
        GET  /api/rate-limit              - Remaining publish budget
        GET  /api/publish-attempts        - Recent publish attempts
        GET  /api/metrics                 - Ingestion outcome counters

    Usage:
        dashboard = Dashboard(records=records, orchestrator=orchestrator, ...)
        app = dashboard.create_app()
    """

    def __init__(
        self,
        records: Optional["RecordRepository"] = None,
        attempts: Optional["PublishAttemptRepository"] = None,
        orchestrator: Optional["Orchestrator"] = None,
        worker: Optional["PublishWorker"] = None,
        policy_store: Optional["PolicyStore"] = None,
        limiter: Optional["RateLimiter"] = None,
        health_checker: Optional["HealthChecker"] = None,
        metrics_collector: Optional["MetricsCollector"] = None,
        extra_status: Optional[Callable[[], dict]] = None,
        event_loop: Optional[asyncio.AbstractEventLoop] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        """
        Args:
            extra_status: Returns additional sections for /api/status
                (offer feed, webhook, follow-ups)
            event_loop: Main asyncio event loop. Flask runs in a separate
                thread, so async repository calls are dispatched with
                run_coroutine_threadsafe() onto the loop that owns the
                asyncpg pool.
        """
        self._records = records
        self._attempts = attempts
        self._orchestrator = orchestrator
        self._worker = worker
        self._policy_store = policy_store
        self._limiter = limiter
        self._health_checker = health_checker
        self._metrics_collector = metrics_collector
        self._extra_status = extra_status
        self._event_loop = event_loop
        self._started_at = started_at or datetime.now(timezone.utc)

    def _run_async(self, coro, timeout: float = 10.0) -> Any:
        """
        Run an async coroutine from the Flask thread.

        Raises:
            RuntimeError: If the event loop is not running (shutdown in progress)
            TimeoutError: If the operation times out
        """
        if self._event_loop is None:
            # No main loop (tests): run on a private loop
            loop = asyncio.new_event_loop()
            try:
                return loop.run_until_complete(coro)
            finally:
                loop.close()

        if self._event_loop.is_closed() or not self._event_loop.is_running():
            coro.close()
            raise RuntimeError("Event loop is not running (shutdown in progress)")

        future = asyncio.run_coroutine_threadsafe(coro, self._event_loop)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.error(f"Async operation timed out after {timeout}s")
            raise TimeoutError(f"Operation timed out after {timeout}s")

    def create_app(self, testing: bool = False) -> Flask:
        app = Flask(__name__)
        app.config["TESTING"] = testing
        app.json = DecimalJSONProvider(app)

        app.dashboard = self  # type: ignore

        self._register_routes(app)
        return app

    async def _get_status(self) -> dict:
        result: dict[str, Any] = {
            "started_at": self._started_at.isoformat(),
            "uptime_seconds": int(
                (datetime.now(timezone.utc) - self._started_at).total_seconds()
            ),
        }
        if self._orchestrator:
            result["scheduler"] = self._orchestrator.status()
        if self._worker:
            result["autopost"] = {
                **self._worker.settings.to_dict(),
                "running": self._worker.is_running,
                "posted_total": self._worker.posted_total,
                "last_pass_at": (
                    self._worker.last_pass_at.isoformat() if self._worker.last_pass_at else None
                ),
            }
        if self._extra_status:
            result.update(self._extra_status())
        return result

    def _autopost_view(self) -> dict:
        view = self._worker.settings.to_dict()
        if self._policy_store:
            view["thresholds"] = self._policy_store.to_dict()
        return view

    async def _get_records(
        self,
        category: EventCategory,
        limit: int,
        status: Optional[RecordStatus],
    ) -> list[dict]:
        rows = await self._records.list_recent(category, limit=limit, status=status)
        return [r.model_dump(mode="json") for r in rows]

    async def _get_attempts(self, limit: int) -> list[dict]:
        rows = await self._attempts.get_recent(limit)
        return [r.model_dump(mode="json") for r in rows]

    def _register_routes(self, app: Flask) -> None:
        """Register all HTTP routes."""

        @app.route("/health")
        @require_api_key
        def health() -> Response:
            """Get overall system health."""
            dashboard: Dashboard = app.dashboard  # type: ignore

            if not dashboard._health_checker:
                return jsonify({
                    "status": "unknown",
                    "message": "Health checker not configured",
                })

            try:
                health_result = dashboard._run_async(dashboard._health_checker.check_all())
                return jsonify(health_result.to_dict())
            except Exception as e:
                logger.error(f"Health check failed: {e}")
                return jsonify({"status": "error", "error": str(e)}), 500

        @app.route("/api/status")
        @require_api_key
        def status() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            try:
                return jsonify(dashboard._run_async(dashboard._get_status()))
            except Exception as e:
                logger.error(f"Failed to get status: {e}")
                return jsonify({"error": str(e)}), 500

        # ---------------------------------------------------------------------
        # Scheduler control
        # ---------------------------------------------------------------------

        @app.route("/api/scheduler/start", methods=["POST"])
        @require_api_key
        def scheduler_start() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._orchestrator:
                return jsonify({"error": "Scheduler not configured"}), 503

            started = dashboard._run_async(dashboard._orchestrator.start())
            if not started:
                return jsonify({
                    "started": False,
                    "error": "Circuit breaker tripped; reset the error counter first",
                    "scheduler": dashboard._orchestrator.status(),
                }), 409
            logger.info("Dashboard: scheduler started")
            return jsonify({"started": True, "scheduler": dashboard._orchestrator.status()})

        @app.route("/api/scheduler/stop", methods=["POST"])
        @require_api_key
        def scheduler_stop() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._orchestrator:
                return jsonify({"error": "Scheduler not configured"}), 503

            dashboard._run_async(dashboard._orchestrator.stop())
            logger.info("Dashboard: scheduler stopped")
            return jsonify({"stopped": True, "scheduler": dashboard._orchestrator.status()})

        @app.route("/api/scheduler/reset", methods=["POST"])
        @require_api_key
        def scheduler_reset() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._orchestrator:
                return jsonify({"error": "Scheduler not configured"}), 503

            dashboard._orchestrator.reset_error_counter()
            logger.info("Dashboard: circuit breaker reset")
            return jsonify({"reset": True, "scheduler": dashboard._orchestrator.status()})

        @app.route("/api/scheduler/run/<source_id>", methods=["POST"])
        @require_api_key
        def scheduler_run(source_id: str) -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._orchestrator:
                return jsonify({"error": "Scheduler not configured"}), 503
            if source_id not in dashboard._orchestrator.source_ids:
                return jsonify({"error": f"Unknown source '{source_id}'"}), 404

            report = dashboard._run_async(dashboard._orchestrator.run_now(source_id), timeout=120.0)
            result = report.result.to_dict() if hasattr(report.result, "to_dict") else report.result
            return jsonify({
                "source_id": report.source_id,
                "ran": report.ran,
                "success": report.success,
                "result": result,
                "error": report.error,
            })

        # ---------------------------------------------------------------------
        # Autopost
        # ---------------------------------------------------------------------

        @app.route("/api/autopost", methods=["GET", "POST"])
        @require_api_key
        def autopost() -> Response:
            """
            Autopost toggles plus, when a policy store is wired, the filter
            thresholds:

                {"enabled": true, "categories": {"bid": false},
                 "thresholds": {"sale": {"min_eth": "0.2", "max_age_hours": 2,
                                         "club_min_eth": {"999": "8"}}}}

            Everything is validated before anything is saved.
            """
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._worker:
                return jsonify({"error": "Publish worker not configured"}), 503

            if request.method == "GET":
                return jsonify(dashboard._autopost_view())

            payload = request.get_json(silent=True) or {}
            enabled = payload.get("enabled")
            if enabled is not None and not isinstance(enabled, bool):
                return jsonify({"error": "'enabled' must be a boolean"}), 400

            categories = {}
            for name, value in (payload.get("categories") or {}).items():
                if not isinstance(value, bool):
                    return jsonify({"error": f"Category '{name}' must be a boolean"}), 400
                categories[_parse_category(name)] = value

            thresholds = payload.get("thresholds")
            if thresholds is not None:
                if not dashboard._policy_store:
                    return jsonify({"error": "Filter thresholds not configurable"}), 503
                try:
                    apply_policy_changes(dashboard._policy_store.policies, thresholds)
                except ValueError as e:
                    return jsonify({"error": str(e)}), 400

            settings = dashboard._run_async(
                dashboard._worker.update_settings(enabled=enabled, categories=categories)
            )
            if thresholds:
                dashboard._run_async(dashboard._policy_store.update(thresholds))
            logger.info(f"Dashboard: autopost settings updated: {settings.to_dict()}")
            return jsonify(dashboard._autopost_view())

        # ---------------------------------------------------------------------
        # Records and publishing
        # ---------------------------------------------------------------------

        @app.route("/api/records")
        @require_api_key
        def records() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._records:
                return jsonify({"records": [], "error": "Database not configured"})

            category = _parse_category(request.args.get("category", EventCategory.SALE.value))
            status_arg = request.args.get("status")
            try:
                record_status = RecordStatus(status_arg) if status_arg else None
            except ValueError:
                return jsonify({"error": f"Unknown status '{status_arg}'"}), 400
            limit = min(request.args.get("limit", 20, type=int), 200)

            try:
                rows = dashboard._run_async(
                    dashboard._get_records(category, limit, record_status)
                )
                return jsonify({"category": category.value, "records": rows})
            except Exception as e:
                logger.error(f"Failed to get records: {e}")
                return jsonify({"records": [], "error": str(e)}), 500

        @app.route("/api/records/counts")
        @require_api_key
        def record_counts() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._records:
                return jsonify({"counts": {}, "error": "Database not configured"})
            try:
                counts = dashboard._run_async(dashboard._records.count_by_status())
                return jsonify({"counts": counts})
            except Exception as e:
                logger.error(f"Failed to count records: {e}")
                return jsonify({"counts": {}, "error": str(e)}), 500

        @app.route("/api/rate-limit")
        @require_api_key
        def rate_limit() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._limiter:
                return jsonify({"error": "Rate limiter not configured"}), 503
            try:
                result = dashboard._run_async(dashboard._limiter.can_publish())
                return jsonify(result.to_dict())
            except Exception as e:
                logger.error(f"Failed to read rate limit: {e}")
                return jsonify({"error": str(e)}), 500

        @app.route("/api/publish-attempts")
        @require_api_key
        def publish_attempts() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._attempts:
                return jsonify({"attempts": [], "error": "Database not configured"})
            limit = min(request.args.get("limit", 50, type=int), 500)
            try:
                rows = dashboard._run_async(dashboard._get_attempts(limit))
                return jsonify({"attempts": rows})
            except Exception as e:
                logger.error(f"Failed to get publish attempts: {e}")
                return jsonify({"attempts": [], "error": str(e)}), 500

        @app.route("/api/metrics")
        @require_api_key
        def metrics() -> Response:
            dashboard: Dashboard = app.dashboard  # type: ignore
            if not dashboard._metrics_collector:
                return jsonify({"error": "Metrics collector not configured"})
            return jsonify(dashboard._metrics_collector.get_metrics().to_dict())
