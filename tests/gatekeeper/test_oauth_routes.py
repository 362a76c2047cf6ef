"""Tests for the Pipedrive OAuth management routes."""

from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from connectors.pipedrive.pipedrive_client import PIPEDRIVE_OAUTH_TOKEN_URL
from connectors.pipedrive.pipedrive_settings import OAuthSettings, PipedriveSettings
from src.ingest.gatekeeper.main import create_app
from src.ingest.services.pipedrive_token_storage import InMemoryTokenStorage, OAuthToken

OAUTH = OAuthSettings(
    client_id="client-id",
    client_secret="client-secret",
    redirect_url="https://gatekeeper.example.com/pipedrive/oauth/callback",
    scopes=("deals:read",),
)

ADMIN = {"x-test-user": "admin"}


def pipedrive_api(me_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == PIPEDRIVE_OAUTH_TOKEN_URL:
            return httpx.Response(
                200,
                json={
                    "access_token": "access-token-123456",
                    "refresh_token": "refresh-token",
                    "expires_in": 3600,
                    "api_domain": "https://acme.pipedrive.com",
                },
            )
        if request.url.path == "/api/v1/users/me":
            if me_status != 200:
                return httpx.Response(me_status, json={"success": False})
            return httpx.Response(
                200,
                json={
                    "data": {
                        "id": 7,
                        "name": "Ada",
                        "email": "ada@example.com",
                        "company_id": 99,
                        "company_name": "Acme",
                        "company_domain": "acme",
                    }
                },
            )
        return httpx.Response(404)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_client(oauth=OAUTH, token_storage=None, me_status=200) -> TestClient:
    app = create_app(
        PipedriveSettings(oauth=oauth),
        token_storage=token_storage or InMemoryTokenStorage(),
        identity_predicate=lambda request: request.headers.get("x-test-user") == "admin",
        http_client=pipedrive_api(me_status),
    )
    return TestClient(app)


class TestAuthorize:
    def test_redirects_to_consent_screen(self):
        response = make_client().get(
            "/pipedrive/oauth/authorize", headers=ADMIN, follow_redirects=False
        )

        assert response.status_code == 307
        location = response.headers["location"]
        assert location.startswith("https://oauth.pipedrive.com/oauth/authorize?")
        assert "client_id=client-id" in location
        assert "response_type=code" in location

    def test_requires_dashboard_access(self):
        response = make_client().get("/pipedrive/oauth/authorize", follow_redirects=False)

        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"

    def test_unconfigured_is_400(self):
        response = make_client(oauth=OAuthSettings()).get(
            "/pipedrive/oauth/authorize", headers=ADMIN, follow_redirects=False
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "config_error"
        assert "PIPEDRIVE_CLIENT_ID" in body["message"]


class TestCallback:
    def test_successful_callback(self):
        storage = InMemoryTokenStorage()
        client = make_client(token_storage=storage)

        response = client.get("/pipedrive/oauth/callback", params={"code": "auth-code"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "connected"
        assert body["user"] == {"id": 7, "name": "Ada", "email": "ada@example.com"}
        assert body["company"]["name"] == "Acme"
        assert body["expires_at"]

    def test_callback_needs_no_dashboard_access(self):
        response = make_client().get("/pipedrive/oauth/callback", params={"code": "auth-code"})

        assert response.status_code == 200

    def test_provider_error_is_400(self):
        response = make_client().get(
            "/pipedrive/oauth/callback",
            params={"error": "access_denied", "error_description": "User denied access"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "token_error"
        assert "User denied access" in response.json()["message"]

    def test_missing_code_is_400(self):
        response = make_client().get("/pipedrive/oauth/callback")

        assert response.status_code == 400
        assert response.json()["message"] == "Missing authorization code"

    def test_failed_connection_test_is_400(self):
        response = make_client(me_status=401).get(
            "/pipedrive/oauth/callback", params={"code": "auth-code"}
        )

        assert response.status_code == 400
        assert "connection test failed" in response.json()["message"]


class TestStatusAndDisconnect:
    @pytest.fixture
    def connected_storage(self):
        now = datetime.now(UTC)
        return InMemoryTokenStorage(
            OAuthToken(
                access_token="access-token-123456",
                refresh_token="refresh-token",
                expires_at=now + timedelta(hours=1),
                obtained_at=now,
                api_domain="https://acme.pipedrive.com",
            )
        )

    def test_status_not_connected(self):
        response = make_client().get("/pipedrive/oauth/status", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["is_configured"] is True
        assert body["is_authenticated"] is False
        assert body["state"] == "configured"
        assert body["connection_test"] is None

    def test_status_connected_runs_connection_test(self, connected_storage):
        response = make_client(token_storage=connected_storage).get(
            "/pipedrive/oauth/status", headers=ADMIN
        )

        body = response.json()
        assert body["is_authenticated"] is True
        assert body["state"] == "authorized_valid"
        assert body["connection_test"]["success"] is True
        assert body["connection_test"]["company"]["id"] == 99

    def test_status_requires_dashboard_access(self):
        assert make_client().get("/pipedrive/oauth/status").status_code == 403

    def test_disconnect(self, connected_storage):
        client = make_client(token_storage=connected_storage)

        response = client.post("/pipedrive/oauth/disconnect", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"status": "disconnected"}
        assert client.get("/pipedrive/oauth/status", headers=ADMIN).json()["is_authenticated"] is False

    def test_disconnect_requires_dashboard_access(self):
        assert make_client().post("/pipedrive/oauth/disconnect").status_code == 403
