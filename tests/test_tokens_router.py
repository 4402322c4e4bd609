"""
Tests for the /oauth/tokens management endpoints.

Stored tokens must reach the refresh coordinator so they show up in
/oauth/tokens/health and can be refreshed or removed.
"""

from fastapi import status

from connect_core.errors import RefreshFailed, RevocationFailed
from tests.conftest import make_record


class StaticRefreshExecutor:
    def __init__(self, fail_with=None):
        self.calls = 0
        self.fail_with = fail_with

    async def refresh(self, record):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return make_record(
            platform=record.platform,
            access_token="manually-refreshed",
            refresh_token=None,
            expires_in=7200,
        )


class RecordingRevoker:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def revoke(self, platform, refresh_token):
        self.calls.append((platform.value, refresh_token))
        if self.error is not None:
            raise self.error


def store(client, **overrides):
    body = {
        "platform": "QUICKBOOKS",
        "accessToken": "access-1",
        "refreshToken": "refresh-1",
        "expiresIn": 7200,
    }
    body.update(overrides)
    return client.post("/oauth/tokens", json=body)


class TestStoreTokens:
    def test_store_tracks_platform(self, test_client):
        response = store(test_client, realmId="9130348")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["token"]["platform"] == "QUICKBOOKS"
        assert data["token"]["hasRefreshToken"] is True
        assert data["token"]["metadata"] == {"realm_id": "9130348"}
        assert "access-1" not in response.text
        assert data["health"]["status"] == "healthy"

        health = test_client.get("/oauth/tokens/health").json()
        assert health["platforms"]["QUICKBOOKS"]["status"] == "healthy"

    def test_platform_case_insensitive(self, test_client):
        response = store(test_client, platform="hubspot", expiresIn=120)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["health"]["status"] == "critical"

    def test_default_scopes_from_platform(self, test_client):
        data = store(test_client).json()
        assert "com.intuit.quickbooks.accounting" in data["token"]["scopes"]

    def test_missing_access_token(self, test_client):
        response = store(test_client, accessToken=None)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "missing_parameters"

    def test_unknown_platform(self, test_client):
        response = store(test_client, platform="salesforce")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "invalid_platform"


class TestManualRefresh:
    def test_refresh_updates_record(self, test_client):
        coordinator = test_client.app.state.token_coordinator
        executor = StaticRefreshExecutor()
        coordinator.refresh_executor = executor
        store(test_client, expiresIn=60)

        response = test_client.post("/oauth/tokens/quickbooks/refresh")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["health"]["status"] == "healthy"
        assert executor.calls == 1
        record = coordinator.get_record("QUICKBOOKS")
        assert record.access_token == "manually-refreshed"
        assert record.refresh_token == "refresh-1"

    def test_refresh_failure_reports_reauthorization(self, test_client):
        coordinator = test_client.app.state.token_coordinator
        coordinator.refresh_executor = StaticRefreshExecutor(
            fail_with=RefreshFailed("invalid_grant", terminal=True)
        )
        store(test_client, expiresIn=60)

        response = test_client.post("/oauth/tokens/QUICKBOOKS/refresh")

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        data = response.json()
        assert data["error"] == "refresh_failed"
        assert data["message"] == "invalid_grant"
        assert data["needsReauthorization"] is True

    def test_refresh_after_giving_up_is_attempted(self, test_client):
        coordinator = test_client.app.state.token_coordinator
        coordinator.refresh_executor = StaticRefreshExecutor(
            fail_with=RefreshFailed("invalid_grant", terminal=True)
        )
        store(test_client, expiresIn=60)
        test_client.post("/oauth/tokens/QUICKBOOKS/refresh")

        executor = StaticRefreshExecutor()
        coordinator.refresh_executor = executor
        response = test_client.post("/oauth/tokens/QUICKBOOKS/refresh")

        assert response.status_code == status.HTTP_200_OK
        assert executor.calls == 1
        assert coordinator.needs_reauthorization("QUICKBOOKS") is False

    def test_refresh_without_refresh_token(self, test_client):
        store(test_client, refreshToken=None)

        response = test_client.post("/oauth/tokens/QUICKBOOKS/refresh")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "no_refresh_token"

    def test_refresh_untracked_platform(self, test_client):
        response = test_client.post("/oauth/tokens/STRIPE/refresh")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "not_connected"

    def test_refresh_unknown_platform(self, test_client):
        response = test_client.post("/oauth/tokens/xero/refresh")
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestRemoveTokens:
    def test_remove_untracks(self, test_client):
        store(test_client)

        response = test_client.delete("/oauth/tokens/QUICKBOOKS")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "success": True,
            "platform": "QUICKBOOKS",
            "revoked": False,
        }
        health = test_client.get("/oauth/tokens/health").json()
        assert health["platforms"] == {}

    def test_remove_with_revoke(self, test_client):
        revoker = RecordingRevoker()
        test_client.app.state.revocation_executor = revoker
        store(test_client)

        response = test_client.delete("/oauth/tokens/QUICKBOOKS?revoke=true")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["revoked"] is True
        assert revoker.calls == [("QUICKBOOKS", "refresh-1")]

    def test_revoke_failure_keeps_tokens(self, test_client):
        test_client.app.state.revocation_executor = RecordingRevoker(
            error=RevocationFailed("Revocation failed with status 500")
        )
        store(test_client)

        response = test_client.delete("/oauth/tokens/QUICKBOOKS?revoke=true")

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.json()["error"] == "revocation_failed"
        coordinator = test_client.app.state.token_coordinator
        assert coordinator.get_record("QUICKBOOKS") is not None

    def test_remove_untracked_platform(self, test_client):
        response = test_client.delete("/oauth/tokens/HUBSPOT")
        assert response.status_code == status.HTTP_404_NOT_FOUND
