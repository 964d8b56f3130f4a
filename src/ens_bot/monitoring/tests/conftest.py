"""
Monitoring layer test fixtures.

Tests health checks, alerting, and dashboard endpoints.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from ens_bot.monitoring.alerting import AlertManager
from ens_bot.monitoring.dashboard import Dashboard
from ens_bot.publishing.rate_limiter import RateLimitStatus


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def mock_db():
    """Mock database whose health check succeeds."""
    db = MagicMock()
    db.health_check = AsyncMock(return_value=True)
    return db


@pytest.fixture
def mock_orchestrator():
    """Running scheduler with a healthy breaker."""
    orchestrator = MagicMock()
    orchestrator.is_healthy = MagicMock(return_value=True)
    orchestrator.is_running = True
    orchestrator.consecutive_errors = 0
    orchestrator.source_ids = ["sales", "bids"]
    orchestrator.start = AsyncMock(return_value=True)
    orchestrator.stop = AsyncMock()
    orchestrator.reset_error_counter = MagicMock()
    orchestrator.status = MagicMock(return_value={"running": True, "healthy": True})
    return orchestrator


@pytest.fixture
def mock_limiter():
    limiter = MagicMock()
    limiter.can_publish = AsyncMock(return_value=RateLimitStatus(
        allowed=True, remaining=80, reset_at=None, used=20, cap=100,
    ))
    return limiter


@pytest.fixture
def mock_feed_healthy():
    feed = MagicMock()
    feed.is_connected = True
    feed.last_event_at = datetime.now(timezone.utc) - timedelta(seconds=30)
    return feed


@pytest.fixture
def mock_feed_stale():
    feed = MagicMock()
    feed.is_connected = True
    feed.last_event_at = datetime.now(timezone.utc) - timedelta(hours=1)
    return feed


# =============================================================================
# Alerting Fixtures
# =============================================================================

@pytest.fixture
def mock_telegram():
    """Captures messages instead of calling the Telegram API."""
    api = MagicMock()
    api.send_message = MagicMock()
    return api


@pytest.fixture
def alert_manager(mock_telegram):
    return AlertManager(telegram_chat_id="123", _telegram_api=mock_telegram)


# =============================================================================
# Dashboard Fixtures
# =============================================================================

@pytest.fixture
def mock_worker():
    from ens_bot.publishing.worker import AutopostSettings

    worker = MagicMock()
    worker.settings = AutopostSettings(enabled=False)
    worker.is_running = True
    worker.posted_total = 4
    worker.last_pass_at = None

    async def update_settings(enabled=None, categories=None):
        if enabled is not None:
            worker.settings.enabled = enabled
        for category, value in (categories or {}).items():
            worker.settings.categories[category] = value
        return worker.settings

    worker.update_settings = AsyncMock(side_effect=update_settings)
    return worker


@pytest.fixture
def mock_records():
    records = MagicMock()
    records.list_recent = AsyncMock(return_value=[])
    records.count_by_status = AsyncMock(return_value={
        "sale": {"unposted": 1, "posted": 2, "failed": 0},
    })
    return records


@pytest.fixture
def dashboard(mock_records, mock_orchestrator, mock_worker, mock_limiter):
    return Dashboard(
        records=mock_records,
        orchestrator=mock_orchestrator,
        worker=mock_worker,
        limiter=mock_limiter,
    )


@pytest.fixture
def policy_store():
    from ens_bot.enrichment.filters import FilterStage, PolicyStore

    state = MagicMock()
    state.values = {}

    async def set_value(key, value):
        state.values[key] = value

    state.get = AsyncMock(side_effect=lambda key: state.values.get(key))
    state.set = AsyncMock(side_effect=set_value)
    return PolicyStore(FilterStage(), state)


@pytest.fixture
def tuned_client(mock_records, mock_orchestrator, mock_worker, mock_limiter, policy_store):
    dashboard = Dashboard(
        records=mock_records,
        orchestrator=mock_orchestrator,
        worker=mock_worker,
        policy_store=policy_store,
        limiter=mock_limiter,
    )
    return dashboard.create_app(testing=True).test_client()


@pytest.fixture
def client(dashboard):
    app = dashboard.create_app(testing=True)
    return app.test_client()
