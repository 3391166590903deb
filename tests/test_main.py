"""
Tests for the FastAPI application shell: root, metrics, middleware.
"""

from unittest.mock import patch


class TestRoot:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"


class TestMetricsEndpoint:
    def test_exposes_reconciliation_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "reconciler_webhooks_total" in response.text
        assert "reconciler_http_requests_total" in response.text


class TestLoggingMiddleware:
    def test_request_recorded(self, client):
        with patch("app.main.metrics") as mock_metrics:
            client.get("/")

        endpoint, method, status_code, _ = mock_metrics.record_http_request.call_args.args
        assert (endpoint, method, status_code) == ("/", "GET", 200)


class TestLifespan:
    def test_migrations_skipped_by_default(self, app):
        from fastapi.testclient import TestClient

        with patch("app.main.run_migrations") as mock_migrations, patch(
            "app.main.close_engines"
        ) as mock_close:
            with TestClient(app):
                pass

        mock_migrations.assert_not_called()
        mock_close.assert_awaited_once()

    def test_migrations_run_when_enabled(self, app):
        from fastapi.testclient import TestClient

        from app.config import settings

        with patch("app.main.run_migrations") as mock_migrations, patch(
            "app.main.close_engines"
        ), patch.object(settings, "run_migrations_on_startup", True):
            with TestClient(app):
                pass

        mock_migrations.assert_called_once()


class TestRequestId:
    def test_generated_when_absent(self, client):
        response = client.get("/")

        assert len(response.headers["X-Request-ID"]) == 32

    def test_propagated(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"
