"""Application-level tests: health, error envelopes, startup, maintenance loops."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from deferlink.deps import Settings
from deferlink.errors import PersistenceError
from deferlink.main import create_app
from deferlink.schemas import AttributionRecord, RecordKind
from deferlink.services.maintenance_scheduler import MaintenanceScheduler
from deferlink.services.rate_limiter import SlidingWindowRateLimiter


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["uptime"] >= 0
        assert "timestamp" in body


class TestErrorEnvelopes:
    def test_unknown_route(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Route not found", "path": "/nope"}

    def test_unhandled_error_includes_stack_outside_production(self, app):
        app.state.services.attribution.get_statistics = Mock(side_effect=RuntimeError("boom"))
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/api/product/stats/P1")

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Internal server error"
        assert "RuntimeError: boom" in body["stack"]

    def test_unhandled_error_hides_stack_in_production(self, settings):
        settings.ENVIRONMENT = "production"
        app = create_app(settings)
        app.state.services.attribution.get_statistics = Mock(side_effect=RuntimeError("boom"))
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/api/product/stats/P1")

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Internal server error"}

    def test_unhandled_errors_are_reported(self, app):
        app.state.services.attribution.get_statistics = Mock(side_effect=RuntimeError("boom"))
        client = TestClient(app, raise_server_exceptions=False)

        with patch("deferlink.main.capture_exception") as capture:
            client.get("/api/product/stats/P1")

        capture.assert_called_once()


class TestSettings:
    def test_only_used_app_identity_settings(self, settings):
        """WHAT: Native app identity is the scheme and package used by the link builders."""
        assert settings.APP_SCHEME == "exampleapp"
        assert settings.APP_PACKAGE == "com.example.app"
        assert "IOS_TEAM_ID" not in Settings.model_fields
        assert "IOS_BUNDLE_ID" not in Settings.model_fields


class TestStartup:
    def test_store_initialization_failure_aborts_startup(self, settings, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        settings.DB_PATH = str(blocker / "referrals.json")

        with pytest.raises(PersistenceError):
            create_app(settings)

    def test_lifespan_starts_and_stops_scheduler(self, app):
        scheduler = app.state.services.scheduler

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert scheduler.running is True

        assert scheduler.running is False


class TestMaintenanceScheduler:
    def test_sweep_store_deletes_expired_records(self, store):
        old = datetime.now(timezone.utc) - timedelta(days=45)
        store.create(AttributionRecord(id="old", kind=RecordKind.product_share, resource_id="P1", created_at=old))
        store.create(AttributionRecord(id="new", kind=RecordKind.product_share, resource_id="P1"))
        scheduler = MaintenanceScheduler(store, SlidingWindowRateLimiter(1000, 1), retention_days=30)

        assert scheduler.sweep_store() == 1
        assert [r.id for r in store.all()] == ["new"]

    def test_failures_are_logged_not_raised(self, store):
        limiter = Mock()
        limiter.cleanup.side_effect = RuntimeError("boom")
        scheduler = MaintenanceScheduler(store, limiter, retention_days=30)

        with patch.object(store, "sweep_expired", side_effect=OSError("disk")):
            assert scheduler.sweep_store() == 0
        assert scheduler.cleanup_limiter() == 0

    def test_loops_run_jobs_periodically(self, store):
        limiter = Mock()
        limiter.cleanup.return_value = 0
        scheduler = MaintenanceScheduler(
            store, limiter, retention_days=30, sweep_interval_seconds=0.01, limiter_cleanup_seconds=0.01
        )

        async def run():
            await scheduler.start()
            await asyncio.sleep(0.1)
            await scheduler.stop()

        asyncio.run(run())

        assert limiter.cleanup.call_count >= 1
        assert scheduler.running is False
