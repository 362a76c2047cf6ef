"""Tests for the Pipedrive OAuth token lifecycle."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from connectors.pipedrive.pipedrive_client import (
    PIPEDRIVE_OAUTH_TOKEN_URL,
    PipedriveOAuthClient,
    build_pipedrive_authorization_url,
)
from connectors.pipedrive.pipedrive_errors import ConfigError, TokenError
from connectors.pipedrive.pipedrive_settings import OAuthSettings
from src.ingest.services.pipedrive_auth import PipedriveAuthService, TokenState
from src.ingest.services.pipedrive_token_storage import InMemoryTokenStorage, OAuthToken

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
API_DOMAIN = "https://acme.pipedrive.com"

OAUTH_SETTINGS = OAuthSettings(
    client_id="client-id",
    client_secret="client-secret",
    redirect_url="https://gatekeeper.example.com/pipedrive/oauth/callback",
)

ME = {
    "success": True,
    "data": {
        "id": 7,
        "name": "Ada",
        "email": "ada@example.com",
        "company_id": 99,
        "company_name": "Acme",
        "company_domain": "acme",
    },
}


def token_response(access_token="new-access-token", refresh_token="new-refresh", expires_in=3600):
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": expires_in,
        "api_domain": API_DOMAIN,
        "scope": "deals:read,contacts:read",
    }


def expired_token() -> OAuthToken:
    return OAuthToken(
        access_token="old-access-token",
        refresh_token="old-refresh",
        expires_at=NOW - timedelta(minutes=1),
        obtained_at=NOW - timedelta(hours=1),
        api_domain=API_DOMAIN,
    )


class PipedriveStub:
    """Routes MockTransport requests to canned token and /users/me responses."""

    def __init__(self, token_status=200, token_body=None, me_status=200, me_body=None, html_body=None):
        self.token_status = token_status
        self.token_body = token_body if token_body is not None else token_response()
        self.me_status = me_status
        self.me_body = me_body
        self.html_body = html_body
        self.token_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == PIPEDRIVE_OAUTH_TOKEN_URL:
            self.token_requests.append(request)
            if self.html_body is not None:
                return httpx.Response(self.token_status, html=self.html_body)
            return httpx.Response(self.token_status, json=self.token_body)
        if request.url.path == "/api/v1/users/me":
            if self.me_body is not None:
                return httpx.Response(self.me_status, **self.me_body)
            return httpx.Response(self.me_status, json=ME if self.me_status == 200 else {})
        return httpx.Response(404)

    def form(self, index: int = -1) -> dict[str, list[str]]:
        return parse_qs(self.token_requests[index].content.decode())


def make_service(stub: PipedriveStub, token: OAuthToken | None = None, settings=OAUTH_SETTINGS):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return PipedriveAuthService(
        settings, InMemoryTokenStorage(token), http_client=http_client, clock=lambda: NOW
    )


@pytest.fixture(autouse=True)
def no_backoff_sleep():
    with patch("src.utils.rate_limiter.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestAuthorizationUrl:
    def test_builds_consent_url(self):
        url = build_pipedrive_authorization_url(
            "client-id", "https://example.com/cb", state="xyz", scopes=("deals:read",)
        )

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://oauth.pipedrive.com/oauth/authorize"
        )
        assert query == {
            "client_id": ["client-id"],
            "redirect_uri": ["https://example.com/cb"],
            "response_type": ["code"],
            "state": ["xyz"],
            "scope": ["deals:read"],
        }

    def test_unconfigured_service_raises_config_error(self):
        service = make_service(PipedriveStub(), settings=OAuthSettings(client_id="only-id"))

        with pytest.raises(ConfigError):
            service.build_authorization_url()


class TestStates:
    @pytest.mark.asyncio
    async def test_unconfigured(self):
        service = make_service(PipedriveStub(), settings=OAuthSettings())

        assert await service.get_state() is TokenState.UNCONFIGURED

    @pytest.mark.asyncio
    async def test_configured_without_token(self):
        assert await make_service(PipedriveStub()).get_state() is TokenState.CONFIGURED

    @pytest.mark.asyncio
    async def test_expired_token_needs_refresh(self):
        service = make_service(PipedriveStub(), token=expired_token())

        assert await service.get_state() is TokenState.AUTHORIZED_NEEDS_REFRESH


class TestExchange:
    @pytest.mark.asyncio
    async def test_exchange_stores_token(self):
        stub = PipedriveStub()
        service = make_service(stub)

        token = await service.exchange_code("auth-code")

        assert token.access_token == "new-access-token"
        assert token.expires_at == NOW + timedelta(seconds=3600)
        assert token.api_domain == API_DOMAIN
        assert token.scopes == ("deals:read", "contacts:read")
        assert await service.current_token() == token
        assert await service.get_state() is TokenState.AUTHORIZED_VALID
        assert stub.form()["grant_type"] == ["authorization_code"]
        assert stub.form()["code"] == ["auth-code"]
        assert stub.token_requests[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_rejected_code_is_token_error(self):
        service = make_service(PipedriveStub(token_status=400, token_body={"error": "invalid_grant"}))

        with pytest.raises(TokenError):
            await service.exchange_code("bad-code")

        assert await service.current_token() is None

    @pytest.mark.asyncio
    async def test_exchange_is_not_retried(self):
        stub = PipedriveStub(token_status=503, token_body={})
        service = make_service(stub)

        with pytest.raises(TokenError) as exc_info:
            await service.exchange_code("auth-code")

        assert exc_info.value.transient is True
        assert len(stub.token_requests) == 1


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_after_expiry_becomes_valid(self):
        stub = PipedriveStub()
        service = make_service(stub, token=expired_token())
        assert await service.get_state() is TokenState.AUTHORIZED_NEEDS_REFRESH

        token = await service.refresh()

        assert token.access_token == "new-access-token"
        assert await service.get_state() is TokenState.AUTHORIZED_VALID
        assert stub.form()["grant_type"] == ["refresh_token"]
        assert stub.form()["refresh_token"] == ["old-refresh"]
        assert service.last_refresh_error is None

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_prior_token_flagged(self):
        service = make_service(
            PipedriveStub(token_status=401, token_body={"error": "invalid_grant"}),
            token=expired_token(),
        )

        with pytest.raises(TokenError):
            await service.refresh()

        prior = await service.current_token()
        assert prior is not None
        assert prior.access_token == "old-access-token"
        assert await service.get_state() is TokenState.AUTHORIZED_NEEDS_REFRESH
        assert service.last_refresh_error is not None
        assert service.last_refresh_failed_at == NOW

    @pytest.mark.asyncio
    async def test_transient_failures_retried_then_surface(self, no_backoff_sleep):
        stub = PipedriveStub(token_status=500, token_body={})
        service = make_service(stub, token=expired_token())

        with pytest.raises(TokenError) as exc_info:
            await service.refresh()

        assert exc_info.value.transient is True
        assert len(stub.token_requests) == 3
        assert no_backoff_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_omitted(self):
        body = token_response()
        del body["refresh_token"]
        service = make_service(PipedriveStub(token_body=body), token=expired_token())

        token = await service.refresh()

        assert token.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_refresh_without_token(self):
        with pytest.raises(TokenError):
            await make_service(PipedriveStub()).refresh()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        stub = PipedriveStub()
        service = make_service(stub, token=expired_token())

        tokens = await asyncio.gather(*(service.get_valid_access_token() for _ in range(3)))

        assert tokens == ["new-access-token"] * 3
        assert len(stub.token_requests) == 1

    @pytest.mark.asyncio
    async def test_valid_token_is_not_refreshed(self):
        stub = PipedriveStub()
        fresh = OAuthToken(
            access_token="fresh-token",
            refresh_token="r",
            expires_at=NOW + timedelta(hours=1),
            obtained_at=NOW,
        )
        service = make_service(stub, token=fresh)

        assert await service.get_valid_access_token() == "fresh-token"
        assert stub.token_requests == []

    @pytest.mark.asyncio
    async def test_not_connected(self):
        with pytest.raises(TokenError, match="not connected"):
            await make_service(PipedriveStub()).get_valid_access_token()


class TestConnection:
    @pytest.mark.asyncio
    async def test_connection_test_reports_user_and_company(self):
        service = make_service(PipedriveStub())
        await service.exchange_code("auth-code")

        result = await service.test_connection()

        assert result.success is True
        assert result.user == {"id": 7, "name": "Ada", "email": "ada@example.com"}
        assert result.company == {"id": 99, "name": "Acme", "domain": "acme"}

    @pytest.mark.asyncio
    async def test_complete_authorization_rolls_back_on_failed_test(self):
        service = make_service(PipedriveStub(me_status=401))

        with pytest.raises(TokenError, match="connection test failed"):
            await service.complete_authorization("auth-code")

        assert await service.current_token() is None
        assert await service.get_state() is TokenState.CONFIGURED

    @pytest.mark.asyncio
    async def test_complete_authorization_restores_previous_token(self):
        previous = expired_token()
        service = make_service(PipedriveStub(me_status=403), token=previous)

        with pytest.raises(TokenError):
            await service.complete_authorization("auth-code")

        assert await service.current_token() == previous

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        service = make_service(PipedriveStub(), token=expired_token())

        await service.disconnect()
        await service.disconnect()

        assert await service.current_token() is None
        assert await service.get_state() is TokenState.CONFIGURED


class TestOAuthClient:
    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            PipedriveOAuthClient("", "secret")

    @pytest.mark.asyncio
    async def test_missing_access_token_is_token_error(self):
        stub = PipedriveStub(token_body={"token_type": "bearer"})
        client = PipedriveOAuthClient(
            "id", "secret", http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub))
        )

        with pytest.raises(TokenError, match="no access_token"):
            await client.refresh_token("r")

    @pytest.mark.asyncio
    async def test_html_gateway_page_is_token_error(self):
        stub = PipedriveStub(html_body="<html><body>502 Bad Gateway</body></html>")
        client = PipedriveOAuthClient(
            "id", "secret", http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub))
        )

        with pytest.raises(TokenError, match="unexpected response body") as exc_info:
            await client.exchange_authorization_code("auth-code", "https://example.com/callback")

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_list_body_is_token_error(self):
        stub = PipedriveStub(token_body=[token_response()])
        client = PipedriveOAuthClient(
            "id", "secret", http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub))
        )

        with pytest.raises(TokenError, match="unexpected response body"):
            await client.refresh_token("r")


class TestNonJsonResponses:
    @pytest.mark.asyncio
    async def test_exchange_with_html_body_stores_nothing(self):
        service = make_service(PipedriveStub(html_body="<html>maintenance</html>"))

        with pytest.raises(TokenError):
            await service.exchange_code("auth-code")

        assert await service.current_token() is None

    @pytest.mark.asyncio
    async def test_refresh_with_html_body_is_recorded(self):
        service = make_service(
            PipedriveStub(html_body="<html>maintenance</html>"), token=expired_token()
        )

        with pytest.raises(TokenError):
            await service.refresh()

        assert service.last_refresh_error is not None
        assert service.last_refresh_failed_at == NOW
        assert (await service.current_token()).access_token == "old-access-token"

    @pytest.mark.asyncio
    async def test_connection_test_with_html_body_fails_cleanly(self):
        service = make_service(PipedriveStub(me_body={"html": "<html>gateway</html>"}))
        await service.exchange_code("auth-code")

        result = await service.test_connection()

        assert result.success is False
        assert "unexpected response body" in result.error

    @pytest.mark.asyncio
    async def test_connection_test_with_list_body_fails_cleanly(self):
        service = make_service(PipedriveStub(me_body={"json": [ME]}))
        await service.exchange_code("auth-code")

        result = await service.test_connection()

        assert result.success is False

    @pytest.mark.asyncio
    async def test_complete_authorization_rolls_back_on_html_user_response(self):
        service = make_service(PipedriveStub(me_body={"html": "<html>gateway</html>"}))

        with pytest.raises(TokenError, match="connection test failed"):
            await service.complete_authorization("auth-code")

        assert await service.current_token() is None
