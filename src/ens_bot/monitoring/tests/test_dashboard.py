"""
Tests for the operator dashboard endpoints.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from ens_bot.core.scheduler import RunReport
from ens_bot.ingestion.metrics import MetricsCollector
from ens_bot.monitoring.dashboard import Dashboard
from ens_bot.monitoring.health_checker import HealthChecker
from ens_bot.storage.models import EventCategory, IngestedRecord, RecordStatus


def sample_record():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    return IngestedRecord(
        id=1,
        category=EventCategory.SALE,
        natural_key="0xabc:1",
        source_id="sales",
        subject_name="vitalik.eth",
        value=Decimal("1.5"),
        occurred_at=now,
        received_at=now,
    )


class TestHealthEndpoint:

    def test_health_without_checker(self, client):
        """Should report unknown when no checker is configured."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json["status"] == "unknown"

    def test_health_with_checker(self, mock_db, mock_orchestrator, mock_limiter):
        """Should return aggregate component health."""
        checker = HealthChecker(mock_db, mock_orchestrator, mock_limiter)
        app = Dashboard(health_checker=checker).create_app(testing=True)

        response = app.test_client().get("/health")

        assert response.status_code == 200
        assert response.json["status"] == "healthy"
        assert len(response.json["components"]) == 3


class TestApiKey:

    def test_rejects_missing_key(self, client, monkeypatch):
        """Should return 401 when a key is configured but not provided."""
        monkeypatch.setattr("ens_bot.monitoring.dashboard.DASHBOARD_API_KEY", "secret")

        response = client.get("/api/status")

        assert response.status_code == 401

    def test_accepts_header_key(self, client, monkeypatch):
        monkeypatch.setattr("ens_bot.monitoring.dashboard.DASHBOARD_API_KEY", "secret")

        response = client.get("/api/status", headers={"X-API-Key": "secret"})

        assert response.status_code == 200

    def test_accepts_query_key(self, client, monkeypatch):
        monkeypatch.setattr("ens_bot.monitoring.dashboard.DASHBOARD_API_KEY", "secret")

        response = client.get("/api/status?api_key=secret")

        assert response.status_code == 200


class TestStatus:

    def test_status_sections(self, client):
        """Should include scheduler and autopost state."""
        response = client.get("/api/status")

        data = response.json
        assert data["scheduler"] == {"running": True, "healthy": True}
        assert data["autopost"]["enabled"] is False
        assert data["autopost"]["posted_total"] == 4
        assert data["autopost"]["last_pass_at"] is None
        assert "uptime_seconds" in data

    def test_extra_status_merged(self, mock_orchestrator):
        dashboard = Dashboard(
            orchestrator=mock_orchestrator,
            extra_status=lambda: {"offer_feed": {"state": "connected"}},
        )

        response = dashboard.create_app(testing=True).test_client().get("/api/status")

        assert response.json["offer_feed"] == {"state": "connected"}


class TestSchedulerControl:

    def test_start(self, client, mock_orchestrator):
        response = client.post("/api/scheduler/start")

        assert response.status_code == 200
        assert response.json["started"] is True
        mock_orchestrator.start.assert_awaited_once()

    def test_start_refused_while_tripped(self, client, mock_orchestrator):
        """Should return 409 until the breaker is reset."""
        mock_orchestrator.start.return_value = False

        response = client.post("/api/scheduler/start")

        assert response.status_code == 409
        assert response.json["started"] is False

    def test_stop(self, client, mock_orchestrator):
        response = client.post("/api/scheduler/stop")

        assert response.json["stopped"] is True
        mock_orchestrator.stop.assert_awaited_once()

    def test_reset(self, client, mock_orchestrator):
        response = client.post("/api/scheduler/reset")

        assert response.json["reset"] is True
        mock_orchestrator.reset_error_counter.assert_called_once()

    def test_manual_run(self, client, mock_orchestrator):
        mock_orchestrator.run_now = AsyncMock(return_value=RunReport(
            source_id="sales", ran=True, success=True, result={"stored": 2},
        ))

        response = client.post("/api/scheduler/run/sales")

        assert response.status_code == 200
        assert response.json["result"] == {"stored": 2}
        mock_orchestrator.run_now.assert_awaited_once_with("sales")

    def test_manual_run_unknown_source(self, client):
        response = client.post("/api/scheduler/run/registrations")

        assert response.status_code == 404

    def test_no_scheduler_configured(self):
        client = Dashboard().create_app(testing=True).test_client()

        response = client.post("/api/scheduler/start")

        assert response.status_code == 503


class TestAutopost:

    def test_get_settings(self, client):
        response = client.get("/api/autopost")

        assert response.json["enabled"] is False
        assert response.json["categories"]["sale"] is True

    def test_update_settings(self, client, mock_worker):
        response = client.post(
            "/api/autopost",
            json={"enabled": True, "categories": {"bid": False}},
        )

        assert response.status_code == 200
        assert response.json["enabled"] is True
        assert response.json["categories"]["bid"] is False
        mock_worker.update_settings.assert_awaited_once_with(
            enabled=True, categories={EventCategory.BID: False}
        )

    def test_rejects_non_boolean(self, client, mock_worker):
        response = client.post("/api/autopost", json={"enabled": "yes"})

        assert response.status_code == 400
        mock_worker.update_settings.assert_not_awaited()

    def test_rejects_unknown_category(self, client):
        response = client.post("/api/autopost", json={"categories": {"mint": True}})

        assert response.status_code == 400

    def test_thresholds_listed_when_tunable(self, tuned_client):
        response = tuned_client.get("/api/autopost")

        assert response.json["thresholds"]["sale"]["min_eth"] == "0.1"
        assert response.json["thresholds"]["bid"]["club_min_eth"]["999"] == "20"

    def test_no_thresholds_without_store(self, client):
        assert "thresholds" not in client.get("/api/autopost").json

    def test_update_thresholds(self, tuned_client, policy_store):
        response = tuned_client.post("/api/autopost", json={
            "enabled": True,
            "thresholds": {"sale": {"min_eth": "0.3", "club_min_eth": {"999": "9"}}},
        })

        assert response.status_code == 200
        assert response.json["enabled"] is True
        assert response.json["thresholds"]["sale"]["min_eth"] == "0.3"
        assert policy_store.policies[EventCategory.SALE].club_minimums["999"] == Decimal("9")
        assert policy_store._state.values["autopost_min_eth_default"] == "0.3"
        assert policy_store._state.values["autopost_min_eth_999"] == "9"

    def test_invalid_thresholds_change_nothing(self, tuned_client, mock_worker, policy_store):
        response = tuned_client.post("/api/autopost", json={
            "enabled": True,
            "thresholds": {"sale": {"min_eth": "cheap"}},
        })

        assert response.status_code == 400
        assert "min_eth" in response.json["error"]
        mock_worker.update_settings.assert_not_awaited()
        assert policy_store._state.values == {}

    def test_thresholds_without_store_is_503(self, client, mock_worker):
        response = client.post("/api/autopost", json={"thresholds": {"sale": {"min_eth": "1"}}})

        assert response.status_code == 503
        mock_worker.update_settings.assert_not_awaited()


class TestRecords:

    def test_recent_records(self, client, mock_records):
        mock_records.list_recent.return_value = [sample_record()]

        response = client.get("/api/records?category=sale&status=unposted&limit=5")

        assert response.status_code == 200
        record = response.json["records"][0]
        assert record["subject_name"] == "vitalik.eth"
        mock_records.list_recent.assert_awaited_once_with(
            EventCategory.SALE, limit=5, status=RecordStatus.UNPOSTED
        )

    def test_limit_capped(self, client, mock_records):
        client.get("/api/records?limit=5000")

        assert mock_records.list_recent.call_args.kwargs["limit"] == 200

    def test_unknown_category(self, client):
        response = client.get("/api/records?category=mint")

        assert response.status_code == 400

    def test_unknown_status(self, client):
        response = client.get("/api/records?status=deleted")

        assert response.status_code == 400

    def test_repository_error(self, client, mock_records):
        mock_records.list_recent.side_effect = ConnectionError("db down")

        response = client.get("/api/records")

        assert response.status_code == 500
        assert response.json["records"] == []

    def test_counts(self, client):
        response = client.get("/api/records/counts")

        assert response.json["counts"]["sale"]["posted"] == 2


class TestRateLimitAndMetrics:

    def test_rate_limit(self, client):
        response = client.get("/api/rate-limit")

        assert response.json == {
            "allowed": True, "remaining": 80, "reset_at": None, "used": 20, "cap": 100,
        }

    def test_rate_limit_not_configured(self):
        client = Dashboard().create_app(testing=True).test_client()

        assert client.get("/api/rate-limit").status_code == 503

    def test_publish_attempts_without_db(self, client):
        response = client.get("/api/publish-attempts")

        assert response.json["attempts"] == []

    def test_metrics_not_configured(self, client):
        response = client.get("/api/metrics")

        assert "error" in response.json

    def test_metrics(self):
        collector = MetricsCollector()
        collector.record_outcome("sales", "stored")
        client = Dashboard(metrics_collector=collector).create_app(testing=True).test_client()

        response = client.get("/api/metrics")

        assert response.status_code == 200
        assert response.json["outcomes"] == {"stored": 1}
        assert response.json["by_source"]["sales"] == {"stored": 1}


class TestJsonProvider:

    def test_decimal_and_datetime(self):
        app = Dashboard().create_app(testing=True)

        with app.app_context():
            body = app.json.dumps({
                "value": Decimal("1.5"),
                "at": datetime(2026, 3, 1, tzinfo=timezone.utc),
            })

        assert '"value": 1.5' in body
        assert "2026-03-01T00:00:00+00:00" in body
