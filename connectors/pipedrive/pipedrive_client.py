"""
Pipedrive API and OAuth clients.

Based on Pipedrive REST API v1:
- API v1: https://developers.pipedrive.com/docs/api/v1

Rate limits:
- Token-based daily budget plus burst limits per 2-second window; 429 responses
  carry Retry-After

OAuth:
- Authorization: https://oauth.pipedrive.com/oauth/authorize
- Token exchange: https://oauth.pipedrive.com/oauth/token
- Token endpoint requires HTTP Basic auth with client_id:client_secret
- Refresh tokens expire after 60 days of non-use
- Token responses carry a company-specific api_domain
"""

import base64
from typing import Any

import httpx

from connectors.pipedrive.pipedrive_errors import PipedriveApiError, TokenError
from src.utils.logging import get_logger
from src.utils.rate_limiter import RateLimitedError, rate_limited

logger = get_logger(__name__)

PIPEDRIVE_OAUTH_AUTHORIZE_URL = "https://oauth.pipedrive.com/oauth/authorize"
PIPEDRIVE_OAUTH_TOKEN_URL = "https://oauth.pipedrive.com/oauth/token"
PIPEDRIVE_DEFAULT_API_DOMAIN = "https://api.pipedrive.com"
PIPEDRIVE_HTTP_TIMEOUT_SECONDS = 30.0

# Retry delay for OAuth server errors without Retry-After
OAUTH_RETRY_BASE_DELAY_SECONDS = 1


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        # Burst window length
        return 2.0


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    """Decoded body when it is a JSON object; None for HTML error pages, lists and the like."""
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def build_pipedrive_authorization_url(
    client_id: str,
    redirect_url: str,
    state: str | None = None,
    scopes: tuple[str, ...] | list[str] = (),
) -> str:
    """Consent URL the user is redirected to when connecting Pipedrive."""
    params: dict[str, str] = {
        "client_id": client_id,
        "redirect_uri": redirect_url,
        "response_type": "code",
    }
    if state:
        params["state"] = state
    if scopes:
        params["scope"] = " ".join(scopes)
    return str(httpx.URL(PIPEDRIVE_OAUTH_AUTHORIZE_URL, params=params))


class PipedriveOAuthClient:
    """Talks to the Pipedrive OAuth token endpoint.

    Transient failures (timeouts, connection errors, 429 and 5xx) are retried with
    exponential backoff; 400/401/403 raise TokenError immediately.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = PIPEDRIVE_HTTP_TIMEOUT_SECONDS,
    ):
        if not client_id or not client_secret:
            raise ValueError("Pipedrive client id and secret are required")
        self.client_id = client_id
        self.client_secret = client_secret
        self.http_client = http_client
        self.timeout = timeout

    def _basic_auth_header(self) -> str:
        credentials = f"{self.client_id}:{self.client_secret}".encode()
        return f"Basic {base64.b64encode(credentials).decode()}"

    async def exchange_authorization_code(self, code: str, redirect_url: str) -> dict[str, Any]:
        """Exchange an authorization code for tokens. Not retried: codes are single-use."""
        try:
            return await self._post_token(
                {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_url}
            )
        except RateLimitedError as e:
            raise TokenError(f"Pipedrive code exchange failed: {e}", transient=True) from e

    @rate_limited(max_retries=3, base_delay=OAUTH_RETRY_BASE_DELAY_SECONDS)
    async def refresh_token(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new access token.

        Raises:
            TokenError: If Pipedrive rejects the refresh token (non-retryable)
            RateLimitedError: If transient failures persist after all retries
        """
        return await self._post_token({"grant_type": "refresh_token", "refresh_token": refresh_token})

    async def _post_token(self, form: dict[str, str]) -> dict[str, Any]:
        grant_type = form["grant_type"]
        try:
            if self.http_client is not None:
                response = await self._send(self.http_client, form)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._send(client, form)
        except httpx.TimeoutException as e:
            logger.warning("Pipedrive OAuth request timed out, will retry", grant_type=grant_type)
            raise RateLimitedError(message=f"Pipedrive OAuth timeout: {e}") from e
        except httpx.TransportError as e:
            logger.warning("Pipedrive OAuth connection error, will retry", grant_type=grant_type, error=str(e))
            raise RateLimitedError(message=f"Pipedrive OAuth connection error: {e}") from e

        if response.status_code == 200:
            payload = _json_object(response)
            if payload is None:
                logger.error(
                    "Pipedrive token endpoint returned a non-JSON body",
                    grant_type=grant_type,
                    content_type=response.headers.get("Content-Type"),
                )
                raise TokenError(
                    "Pipedrive token endpoint returned an unexpected response body",
                    transient=True,
                    details={"status_code": response.status_code, "grant_type": grant_type},
                )
            if not payload.get("access_token"):
                raise TokenError("Pipedrive token response has no access_token")
            return payload

        # Non-retryable auth errors
        if response.status_code in (400, 401, 403):
            logger.error(
                "Pipedrive token request failed (non-retryable)",
                grant_type=grant_type,
                status_code=response.status_code,
            )
            raise TokenError(
                f"Pipedrive token request failed: {response.status_code} - {response.text}",
                details={"status_code": response.status_code, "grant_type": grant_type},
            )

        # Retryable server errors (429, 5xx, etc.)
        logger.warning(
            "Pipedrive token endpoint error, will retry",
            grant_type=grant_type,
            status_code=response.status_code,
        )
        raise RateLimitedError(
            retry_after=_retry_after_seconds(response),
            message=f"Pipedrive OAuth server error: {response.status_code}",
        )

    async def _send(self, client: httpx.AsyncClient, form: dict[str, str]) -> httpx.Response:
        return await client.post(
            PIPEDRIVE_OAUTH_TOKEN_URL,
            data=form,
            headers={
                "Authorization": self._basic_auth_header(),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            timeout=self.timeout,
        )


class PipedriveClient:
    """Minimal Pipedrive REST client; the gatekeeper only needs the current user."""

    def __init__(
        self,
        access_token: str,
        api_domain: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = PIPEDRIVE_HTTP_TIMEOUT_SECONDS,
    ):
        if not access_token:
            raise ValueError("Pipedrive access token is required and cannot be empty")
        self.api_domain = (api_domain or PIPEDRIVE_DEFAULT_API_DOMAIN).rstrip("/")
        self.access_token = access_token
        self.http_client = http_client
        self.timeout = timeout

    async def _get(self, endpoint: str) -> dict[str, Any]:
        url = f"{self.api_domain}/api/v1{endpoint}"
        headers = {"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"}
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise RateLimitedError(message=f"Pipedrive API timeout: {e}") from e
        except httpx.TransportError as e:
            raise PipedriveApiError(f"Pipedrive API request error: {e}", transient=True) from e

        if response.status_code == 429:
            logger.warning("Pipedrive API rate limit hit")
            raise RateLimitedError(
                retry_after=_retry_after_seconds(response), message="Pipedrive rate limit exceeded"
            )
        if response.status_code == 401:
            logger.error("Pipedrive API unauthorized - invalid or expired access token")
        if response.status_code >= 400:
            raise PipedriveApiError(
                f"Pipedrive API HTTP error: {response.status_code}",
                status_code=response.status_code,
                transient=response.status_code >= 500,
            )
        if not response.content:
            return {}
        payload = _json_object(response)
        if payload is None:
            raise PipedriveApiError(
                f"Pipedrive API returned an unexpected response body for {endpoint}",
                status_code=response.status_code,
                transient=True,
            )
        return payload

    @rate_limited(max_retries=3, base_delay=2)
    async def get_current_user(self) -> dict[str, Any]:
        """Get the current authenticated user (me), including company fields."""
        response = await self._get("/users/me")
        data = response.get("data")
        return data if isinstance(data, dict) else {}
