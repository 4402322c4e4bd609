"""
Tests for health check endpoints.

Validates /healthz, the liveness probe, token health reporting and the
request ID and error envelope behaviour shared by every route.
"""

from datetime import datetime, timedelta, timezone

from fastapi import status

from connect_core.platforms import Platform
from tests.conftest import make_record


class TestHealthEndpoint:
    """Test suite for /healthz endpoint."""

    def test_healthz_returns_200(self, test_client):
        response = test_client.get("/healthz")
        assert response.status_code == status.HTTP_200_OK

    def test_healthz_response_structure(self, test_client):
        data = test_client.get("/healthz").json()

        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"
        assert data["environment"] == "test"

    def test_liveness_probe(self, test_client):
        response = test_client.get("/healthz/live")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "alive"}

    def test_request_id_echoed(self, test_client):
        response = test_client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Response-Time"].endswith("ms")

    def test_request_id_generated(self, test_client):
        response = test_client.get("/healthz")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_unknown_route_error_envelope(self, test_client):
        response = test_client.get("/does-not-exist")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        body = response.json()
        assert body["error"] == "APP-404-NOT-FOUND"
        assert body["origin"] == "app"
        assert "requestId" in body

    def test_root(self, test_client):
        data = test_client.get("/").json()
        assert data["health"] == "/healthz"


class TestTokenHealthEndpoint:
    """Test suite for /oauth/tokens/health."""

    def test_no_connections(self, test_client):
        data = test_client.get("/oauth/tokens/health").json()

        assert data["status"] == "healthy"
        assert data["platforms"] == {}
        assert data["coordinator"]["is_running"] is False

    def test_reports_worst_platform_status(self, test_client):
        coordinator = test_client.app.state.token_coordinator
        now = datetime.now(timezone.utc)
        coordinator.track(make_record(platform=Platform.QUICKBOOKS, expires_in=7200))
        coordinator.track(
            make_record(
                platform=Platform.HUBSPOT,
                expires_in=1800,
                scopes=("crm.objects.contacts.read",),
            )
        )

        data = test_client.get("/oauth/tokens/health").json()

        assert data["status"] == "warning"
        assert data["platforms"]["QUICKBOOKS"]["status"] == "healthy"
        hubspot = data["platforms"]["HUBSPOT"]
        assert hubspot["status"] == "warning"
        assert hubspot["needsReauthorization"] is False
        assert hubspot["details"]["hasRefreshToken"] is True
        assert hubspot["expiresIn"] <= 1800
        assert data["coordinator"]["tracked_platforms"] == ["QUICKBOOKS", "HUBSPOT"]
        assert now < datetime.fromisoformat(hubspot["lastChecked"]) + timedelta(
            minutes=1
        )

    def test_expired_token(self, test_client):
        coordinator = test_client.app.state.token_coordinator
        coordinator.track(
            make_record(platform=Platform.STRIPE, refresh_token=None, expires_in=-60)
        )

        data = test_client.get("/oauth/tokens/health").json()

        assert data["status"] == "expired"
        assert data["platforms"]["STRIPE"]["message"] == "Token has expired"
