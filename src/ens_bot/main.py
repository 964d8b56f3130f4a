"""
ENS Activity Bot - Main Entry Point

Watches ENS marketplace activity (sales, registrations, bids) and posts
qualifying events to X.

Usage:
    python -m ens_bot.main [--dry-run] [--log-level DEBUG]
    ens-activity-bot --no-scheduler      # push sources and publishing only

Configuration:
    The bot reads configuration from:
    1. Environment variables
    2. An optional .env file in the working directory
    3. Command line arguments

Environment Variables:
    DATABASE_URL              PostgreSQL connection string (required)
    LOG_LEVEL                 Logging level (DEBUG/INFO/WARNING/ERROR)
    DRY_RUN                   "true" logs posts instead of publishing (default: true)
    MARKETPLACE_API_KEY       Marketplace REST API key for the pollers
    PRICE_API_KEY             ETH/USD price API key (USD values omitted without it)
    X_BEARER_TOKEN            X API user token (required when DRY_RUN=false)
    DAILY_POST_CAP            Posts allowed per trailing 24h (default: 100)
    SALES_INTERVAL_SECONDS    Sales poll interval (default: 300)
    BIDS_INTERVAL_SECONDS     Bids poll interval (default: 120)
    MAX_CONSECUTIVE_ERRORS    Circuit breaker ceiling (default: 5)
    POST_INTERVAL_SECONDS     Pause between autoposts (default: 20)
    REPLY_INTERVAL_SECONDS    Minimum spacing of follow-up replies (default: 30)
    FOLLOW_UPS_ENABLED        Reply under every posted record (default: false)
    WEBHOOK_ENABLED           Serve the webhook receiver (default: true)
    WEBHOOK_HOST/WEBHOOK_PORT Webhook bind address (default: 0.0.0.0:3000)
    WEBHOOK_SECRET            Shared secret expected in X-Webhook-Secret
    OFFER_FEED_URL            Websocket URL for offer events (feed off if unset)
    DASHBOARD_ENABLED         Serve the ops dashboard (default: true)
    DASHBOARD_HOST/DASHBOARD_PORT  Dashboard bind address (default: 0.0.0.0:9050)
    DASHBOARD_API_KEY         Require X-API-Key on dashboard requests
    TELEGRAM_BOT_TOKEN        Telegram bot token for alerts
    TELEGRAM_CHAT_ID          Telegram chat ID for alerts
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional

# Root logging is set up at import so component modules log from the start;
# main() applies LOG_LEVEL again once the .env file has been read
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = "/tmp/ens-activity-bot.pid"
HEALTH_CHECK_INTERVAL = 60.0


class SingletonBotError(Exception):
    """A second bot would post every event twice."""


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Hold an exclusive flock on `pid_file` for the duration of the block.

    The kernel drops the lock if the process dies, so a stale file never
    blocks a restart.

    Raises:
        SingletonBotError: The lock is held by another process
    """
    pid_path = Path(pid_file)
    # Opening with "a+" keeps the holder's PID readable for the error message
    handle = open(pid_path, "a+")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        handle.seek(0)
        holder = handle.read().strip() or "unknown"
        handle.close()
        raise SingletonBotError(
            f"PID file {pid_file} is locked by process {holder}; "
            f"stop that bot first (kill {holder})"
        )

    handle.seek(0)
    handle.truncate()
    handle.write(f"{os.getpid()}\n")
    handle.flush()

    def release() -> None:
        if handle.closed:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"flock release on {pid_file} failed: {e}")
        handle.close()
        pid_path.unlink(missing_ok=True)

    atexit.register(release)
    logger.info(f"Running as PID {os.getpid()} (lock: {pid_file})")
    try:
        yield
    finally:
        release()
        atexit.unregister(release)


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, "true" if default else "false").strip().lower() == "true"


@dataclass
class BotConfig:
    """Runtime settings; from_env() reads them, validate() lists what is missing."""

    # Database
    database_url: str = ""

    # Publishing
    dry_run: bool = True
    x_bearer_token: Optional[str] = None
    daily_post_cap: int = 100
    post_interval_seconds: float = 20.0

    # Polling
    marketplace_api_key: Optional[str] = None
    sales_interval_seconds: float = 300.0
    bids_interval_seconds: float = 120.0
    max_consecutive_errors: int = 5

    # Enrichment
    price_api_key: Optional[str] = None

    # Follow-ups
    follow_ups_enabled: bool = False
    reply_interval_seconds: float = 30.0

    # Push sources
    webhook_enabled: bool = True
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 3000
    webhook_secret: Optional[str] = None
    offer_feed_url: Optional[str] = None

    # Monitoring
    dashboard_enabled: bool = True
    dashboard_host: str = "0.0.0.0"  # 127.0.0.1 for local only
    dashboard_port: int = 9050

    # Alerts
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Empty variables count as unset."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            dry_run=_env_bool("DRY_RUN", True),
            x_bearer_token=os.environ.get("X_BEARER_TOKEN") or None,
            daily_post_cap=int(os.environ.get("DAILY_POST_CAP", "100")),
            post_interval_seconds=float(os.environ.get("POST_INTERVAL_SECONDS", "20")),
            marketplace_api_key=os.environ.get("MARKETPLACE_API_KEY") or None,
            sales_interval_seconds=float(os.environ.get("SALES_INTERVAL_SECONDS", "300")),
            bids_interval_seconds=float(os.environ.get("BIDS_INTERVAL_SECONDS", "120")),
            max_consecutive_errors=int(os.environ.get("MAX_CONSECUTIVE_ERRORS", "5")),
            price_api_key=os.environ.get("PRICE_API_KEY") or None,
            follow_ups_enabled=_env_bool("FOLLOW_UPS_ENABLED", False),
            reply_interval_seconds=float(os.environ.get("REPLY_INTERVAL_SECONDS", "30")),
            webhook_enabled=_env_bool("WEBHOOK_ENABLED", True),
            webhook_host=os.environ.get("WEBHOOK_HOST", "0.0.0.0"),
            webhook_port=int(os.environ.get("WEBHOOK_PORT", "3000")),
            webhook_secret=os.environ.get("WEBHOOK_SECRET") or None,
            offer_feed_url=os.environ.get("OFFER_FEED_URL") or None,
            dashboard_enabled=_env_bool("DASHBOARD_ENABLED", True),
            dashboard_host=os.environ.get("DASHBOARD_HOST", "0.0.0.0"),
            dashboard_port=int(os.environ.get("DASHBOARD_PORT", "9050")),
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID") or None,
        )

    def validate(self) -> list[str]:
        """Problems that prevent startup; empty when the config is usable."""
        problems = []
        if not self.database_url:
            problems.append("DATABASE_URL environment variable is required")
        if not self.dry_run and not self.x_bearer_token:
            problems.append("X_BEARER_TOKEN is required when DRY_RUN=false")
        if self.daily_post_cap < 0:
            problems.append("DAILY_POST_CAP must be >= 0")
        if self.max_consecutive_errors < 1:
            problems.append("MAX_CONSECUTIVE_ERRORS must be >= 1")
        return problems


class EnsActivityBot:
    """
    Main bot orchestrator.

    Manages the lifecycle of all components:
    - Database connection and schema
    - Ingestion (pipeline, pollers, webhook, offer feed)
    - Scheduler with circuit breaker
    - Publishing (rate limiter, dispatcher, worker, follow-ups)
    - Monitoring (health, alerts, dashboard)
    """

    def __init__(self, config: BotConfig):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

        # Set by the _init_* steps in start()
        self._db = None
        self._repos: dict[str, Any] = {}
        self._pipeline = None
        self._filter_stage = None
        self._policy_store = None
        self._marketplace = None
        self._orchestrator = None
        self._webhook = None
        self._offer_feed = None
        self._limiter = None
        self._publisher = None
        self._worker = None
        self._follow_ups = None
        self._health_checker = None
        self._alert_manager = None
        self._dashboard = None
        self._dashboard_thread = None
        self._flask_server = None

    async def start(self, run_scheduler: bool = True) -> None:
        """Start every component, then run until shutdown is requested."""
        logger.info("=" * 60)
        logger.info("ENS ACTIVITY BOT")
        logger.info("=" * 60)
        logger.info(f"Publishing: {'DRY RUN' if self.config.dry_run else 'LIVE'}")
        logger.info(f"Daily cap: {self.config.daily_post_cap}")
        logger.info("=" * 60)

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        self._setup_signal_handlers()

        try:
            await self._init_database()

            # Alerts first so startup failures further down can be reported
            self._init_alerts()
            await self._init_pipeline()
            await self._init_publishing()

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            # Publishing is ready before sources so early events are not missed
            await self._init_push_sources()
            await self._init_scheduler(run_scheduler)

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            await self._init_follow_ups()
            await self._init_monitoring()

            logger.info("=" * 60)
            logger.info("Bot started successfully")
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 60)

            await self._run_loop()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Tear components down in reverse start order; one failure never blocks the rest."""
        if not self._running:
            return

        logger.info("Stopping bot")
        self._running = False
        self._shutdown_event.set()

        # Orchestrator.shutdown() leaves scheduler_enabled untouched so a restart resumes.
        # The database goes last; the dashboard may still query it while stopping.
        steps = [
            ("scheduler", self._orchestrator and self._orchestrator.shutdown),
            ("offer feed", self._offer_feed and self._offer_feed.stop),
            ("webhook server", self._webhook and self._webhook.stop),
            ("follow-up consumer", self._follow_ups and self._follow_ups.stop),
            ("publish worker", self._worker and self._worker.stop),
            ("marketplace client", self._marketplace and self._marketplace.close),
            ("dashboard", self._dashboard and self._stop_dashboard),
            ("database", self._db and self._db.close),
        ]
        for name, step in steps:
            if not step:
                continue
            try:
                result = step()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Stopping {name} failed: {e}")

        logger.info("Bot stopped")

    # =========================================================================
    # Initialization
    # =========================================================================

    async def _init_database(self) -> None:
        from ens_bot.storage import (
            CursorRepository,
            Database,
            DatabaseConfig,
            EventKeyRepository,
            FollowUpRepository,
            PublishAttemptRepository,
            RecordRepository,
            SystemStateRepository,
        )

        if not self.config.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

        self._db = Database(DatabaseConfig(url=self.config.database_url))
        await self._db.initialize()
        await self._db.apply_schema()

        if not await self._db.health_check():
            raise RuntimeError("Database health check failed")

        self._repos = {
            "records": RecordRepository(self._db),
            "cursors": CursorRepository(self._db),
            "event_keys": EventKeyRepository(self._db),
            "attempts": PublishAttemptRepository(self._db),
            "state": SystemStateRepository(self._db),
            "follow_ups": FollowUpRepository(self._db),
        }
        logger.info("Database: Connected")

    def _init_alerts(self) -> None:
        from ens_bot.monitoring import AlertManager

        self._alert_manager = AlertManager(
            telegram_bot_token=self.config.telegram_bot_token,
            telegram_chat_id=self.config.telegram_chat_id,
        )
        if not self._alert_manager.is_configured:
            logger.info("Alerts: Telegram not configured, alerts will only be logged")

    async def _init_pipeline(self) -> None:
        from ens_bot.enrichment import Enricher, FilterStage, PriceOracle
        from ens_bot.ingestion import Deduplicator, IngestionPipeline, MetricsCollector

        self._filter_stage = FilterStage()
        self._pipeline = IngestionPipeline(
            dedup=Deduplicator(self._repos["event_keys"]),
            filter_stage=self._filter_stage,
            enricher=Enricher(oracle=PriceOracle(api_key=self.config.price_api_key)),
            records=self._repos["records"],
            metrics=MetricsCollector(),
        )
        logger.info("Pipeline: Ready")

    async def _init_publishing(self) -> None:
        from ens_bot.enrichment import PolicyStore
        from ens_bot.publishing import (
            Dispatcher,
            DryRunPublisher,
            PublishWorker,
            RateLimiter,
            XPublisher,
        )

        self._limiter = RateLimiter(self._repos["attempts"], daily_cap=self.config.daily_post_cap)

        if self.config.dry_run or not self.config.x_bearer_token:
            self._publisher = DryRunPublisher()
        else:
            self._publisher = XPublisher(self.config.x_bearer_token)

        dispatcher = Dispatcher(
            records=self._repos["records"],
            limiter=self._limiter,
            publisher=self._publisher,
            on_failure=self._on_publish_failure,
        )
        self._worker = PublishWorker(
            records=self._repos["records"],
            dispatcher=dispatcher,
            limiter=self._limiter,
            state=self._repos["state"],
            post_interval=self.config.post_interval_seconds,
        )
        await self._worker.load_settings()

        # Stored thresholds override the defaults before any source starts
        self._policy_store = PolicyStore(
            self._filter_stage,
            self._repos["state"],
            on_change=self._worker.sync_max_ages,
        )
        await self._policy_store.load()

        self._pipeline.add_listener(self._worker.wake)
        await self._worker.start()
        logger.info(f"Publishing: Started ({type(self._publisher).__name__})")

    async def _init_push_sources(self) -> None:
        from ens_bot.ingestion import OfferFeed, PushAdapter, WebhookServer

        if self.config.webhook_enabled:
            self._webhook = WebhookServer(
                PushAdapter(self._pipeline, source_id="webhook"),
                host=self.config.webhook_host,
                port=self.config.webhook_port,
                secret=self.config.webhook_secret,
            )
            await self._webhook.start()
            logger.info(
                f"Webhook: http://{self.config.webhook_host}:{self.config.webhook_port}"
            )
        else:
            logger.info("Webhook: Disabled via config")

        if self.config.offer_feed_url:
            self._offer_feed = OfferFeed(
                self.config.offer_feed_url,
                PushAdapter(self._pipeline, source_id="offers"),
            )
            await self._offer_feed.start()
            logger.info("Offer feed: Started")
        else:
            logger.info("Offer feed: Disabled (OFFER_FEED_URL not set)")

    async def _init_scheduler(self, run_scheduler: bool) -> None:
        from ens_bot.core import Orchestrator, SchedulerConfig
        from ens_bot.ingestion import BidsPoller, MarketplaceClient, SalesPoller

        self._marketplace = MarketplaceClient(api_key=self.config.marketplace_api_key)
        pollers = [
            SalesPoller(self._repos["cursors"], self._pipeline, self._marketplace),
            BidsPoller(self._repos["cursors"], self._pipeline, self._marketplace),
        ]
        self._orchestrator = Orchestrator(
            pollers,
            self._repos["state"],
            SchedulerConfig(
                intervals={
                    "sales": self.config.sales_interval_seconds,
                    "bids": self.config.bids_interval_seconds,
                },
                max_consecutive_errors=self.config.max_consecutive_errors,
            ),
            on_trip=self._on_breaker_trip,
        )

        if run_scheduler:
            resumed = await self._orchestrator.initialize()
            logger.info(f"Scheduler: {'Running' if resumed else 'Stopped (start from dashboard)'}")
        else:
            logger.info("Scheduler: Disabled via --no-scheduler")

    async def _init_follow_ups(self) -> None:
        from ens_bot.core import FollowUpConsumer, ReplyAction

        if not self.config.follow_ups_enabled:
            logger.info("Follow-ups: Disabled via config")
            return

        self._follow_ups = FollowUpConsumer(
            self._db,
            self._repos["records"],
            self._repos["follow_ups"],
            ReplyAction(self._publisher, min_interval=self.config.reply_interval_seconds),
        )
        await self._follow_ups.start()
        logger.info("Follow-ups: Started")

    async def _init_monitoring(self) -> None:
        from ens_bot.monitoring import Dashboard, HealthChecker

        self._health_checker = HealthChecker(
            db=self._db,
            orchestrator=self._orchestrator,
            limiter=self._limiter,
            offer_feed=self._offer_feed,
        )

        if self.config.dashboard_enabled:
            self._dashboard = Dashboard(
                records=self._repos["records"],
                attempts=self._repos["attempts"],
                orchestrator=self._orchestrator,
                worker=self._worker,
                policy_store=self._policy_store,
                limiter=self._limiter,
                health_checker=self._health_checker,
                metrics_collector=self._pipeline.metrics,
                extra_status=self._extra_status,
                event_loop=asyncio.get_running_loop(),
                started_at=self._started_at,
            )
            self._start_dashboard()
        else:
            logger.info("Dashboard: Disabled via config")

        logger.info("Monitoring: Initialized")

    def _extra_status(self) -> dict:
        status: dict[str, Any] = {"dry_run": self.config.dry_run}
        if self._offer_feed:
            status["offer_feed"] = self._offer_feed.stats()
        if self._webhook:
            status["webhook"] = {
                "running": self._webhook.is_running,
                "port": self.config.webhook_port,
            }
        if self._follow_ups:
            status["follow_ups"] = self._follow_ups.stats()
        return status

    def _start_dashboard(self) -> None:
        """Serve the Flask app from a daemon thread with werkzeug's server."""
        from werkzeug.serving import make_server

        host, port = self.config.dashboard_host, self.config.dashboard_port
        try:
            self._flask_server = make_server(
                host=host, port=port, app=self._dashboard.create_app(), threaded=True
            )
        except Exception as e:
            logger.error(f"Dashboard could not bind {host}:{port}: {e}")
            return

        self._dashboard_thread = threading.Thread(
            target=self._flask_server.serve_forever,
            name="dashboard",
            daemon=True,
        )
        self._dashboard_thread.start()
        logger.info(f"Dashboard listening on http://{host}:{port}")

    def _stop_dashboard(self) -> None:
        server, self._flask_server = self._flask_server, None
        thread, self._dashboard_thread = self._dashboard_thread, None
        if server is not None:
            server.shutdown()
            server.server_close()
        if thread is not None and thread.is_alive():
            thread.join(timeout=5)
            if thread.is_alive():
                logger.warning("Dashboard thread still alive after shutdown")

    # =========================================================================
    # Alert hooks
    # =========================================================================

    def _send_alert_later(self, send: Callable[..., bool], *args, **kwargs) -> None:
        """AlertManager blocks on HTTP; push it off the event loop."""
        if not self._alert_manager:
            return
        loop = asyncio.get_running_loop()
        loop.run_in_executor(None, lambda: send(*args, **kwargs))

    async def _on_breaker_trip(self, consecutive_errors: int, last_error: str) -> None:
        if self._alert_manager:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                self._alert_manager.alert_breaker_tripped,
                consecutive_errors,
                last_error,
            )

    def _on_publish_failure(self, record, message: str, permanent: bool) -> None:
        if self._alert_manager:
            self._send_alert_later(
                self._alert_manager.alert_publish_failure,
                record.id,
                record.display_name,
                message,
                permanent=permanent,
            )

    # =========================================================================
    # Run loop
    # =========================================================================

    async def _run_loop(self) -> None:
        from ens_bot.monitoring import HealthStatus

        while self._running and not await self._wait_for_shutdown(HEALTH_CHECK_INTERVAL):
            try:
                if self._health_checker:
                    health = await self._health_checker.check_all()
                    unhealthy = [
                        c for c in health.components if c.status == HealthStatus.UNHEALTHY
                    ]
                    if unhealthy:
                        logger.warning(
                            f"Unhealthy: {', '.join(c.component for c in unhealthy)}"
                        )
                    alerts = self._alert_manager
                    for component in unhealthy:
                        if alerts:
                            self._send_alert_later(
                                alerts.alert_health_issue,
                                component.component,
                                component.status.value.upper(),
                                component.message,
                            )

                metrics = self._pipeline.metrics.get_metrics()
                logger.info(
                    f"Stats: events={metrics.events_last_window}, "
                    f"stored={metrics.stored_last_window}, "
                    f"errors_1h={metrics.errors_last_hour}, "
                    f"posted={self._worker.posted_total}"
                )

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health loop iteration failed: {e}")
                await asyncio.sleep(5)

    async def _wait_for_shutdown(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def request_shutdown(signum: int) -> None:
            logger.info(f"{signal.Signals(signum).name} received, stopping")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, request_shutdown, signum)
            except NotImplementedError:
                # No loop signal handlers on this platform; Ctrl+C still raises KeyboardInterrupt
                return


def load_env_file(path: str = ".env") -> None:
    """Copy KEY=VALUE lines from `path` into os.environ; real env vars win."""
    env_path = Path(path)
    if not env_path.is_file():
        return

    logger.info(f"Reading settings from {env_path}")
    for raw in env_path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        os.environ.setdefault(key.strip(), value.strip().strip("'\""))


def apply_log_level(name: Optional[str]) -> bool:
    """
    Set the root logger level by name (DEBUG/INFO/WARNING/ERROR).

    Called after the .env file is read, so LOG_LEVEL from that file and
    --log-level both take effect. Unknown names are logged and ignored.
    """
    if not name:
        return False
    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        logger.warning(f"Ignoring unknown log level {name!r}")
        return False
    logging.getLogger().setLevel(level)
    return True


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="ENS Activity Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log posts instead of publishing them",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not resume the pollers (push sources and publishing still run)",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        help="Path to a .env file (default: .env)",
    )
    parser.add_argument(
        "--pid-file",
        type=str,
        default=DEFAULT_PID_FILE,
        help=f"Singleton lock file (default: {DEFAULT_PID_FILE})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    config = BotConfig.from_env()

    if args.dry_run:
        config.dry_run = True

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error(problem)
        return 1

    bot = EnsActivityBot(config)
    try:
        await bot.start(run_scheduler=not args.no_scheduler)
        return 0
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main() -> int:
    """Main entry point."""
    args = parse_args()
    load_env_file(args.env_file)

    apply_log_level(args.log_level or os.environ.get("LOG_LEVEL"))

    try:
        with singleton_lock(args.pid_file):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonBotError as e:
        logger.error(str(e))
        print(f"\n{e}\n", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
