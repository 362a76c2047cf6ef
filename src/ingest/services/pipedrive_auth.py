"""
Pipedrive authentication service for managing the OAuth token lifecycle.

States:
    UNCONFIGURED             no client credentials
    CONFIGURED               credentials present, no token yet
    AUTHORIZED_VALID         token present and not expired
    AUTHORIZED_NEEDS_REFRESH token present but expired

Refreshes are serialized per service instance; a caller that waited on an
in-flight refresh reuses its result instead of refreshing again.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import httpx

from connectors.pipedrive.pipedrive_client import (
    PipedriveClient,
    PipedriveOAuthClient,
    build_pipedrive_authorization_url,
)
from connectors.pipedrive.pipedrive_errors import ConfigError, PipedriveApiError, TokenError
from connectors.pipedrive.pipedrive_settings import OAuthSettings
from src.ingest.services.pipedrive_token_storage import OAuthToken, TokenStorage
from src.utils.logging import get_logger
from src.utils.rate_limiter import RateLimitedError

logger = get_logger(__name__)


class TokenState(StrEnum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    AUTHORIZED_VALID = "authorized_valid"
    AUTHORIZED_NEEDS_REFRESH = "authorized_needs_refresh"


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    user: dict[str, Any] | None = None
    company: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "user": self.user,
            "company": self.company,
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PipedriveAuthService:
    """Service for managing Pipedrive OAuth authentication and token lifecycle."""

    def __init__(
        self,
        settings: OAuthSettings,
        storage: TokenStorage,
        oauth_client: PipedriveOAuthClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.storage = storage
        self.http_client = http_client
        self.clock = clock
        self._oauth_client = oauth_client
        self._refresh_lock = asyncio.Lock()
        self.last_refresh_error: str | None = None
        self.last_refresh_failed_at: datetime | None = None

    def is_configured(self) -> bool:
        return self.settings.is_configured

    @property
    def oauth_client(self) -> PipedriveOAuthClient:
        if self._oauth_client is None:
            if not self.is_configured():
                raise ConfigError(
                    "Pipedrive OAuth is not configured. Set PIPEDRIVE_CLIENT_ID, "
                    "PIPEDRIVE_CLIENT_SECRET and PIPEDRIVE_REDIRECT_URL."
                )
            self._oauth_client = PipedriveOAuthClient(
                self.settings.client_id or "",
                self.settings.client_secret or "",
                http_client=self.http_client,
            )
        return self._oauth_client

    def build_authorization_url(
        self, scopes: list[str] | None = None, state: str | None = None
    ) -> str:
        """Consent URL for the authorization code flow.

        Raises:
            ConfigError: If client id, secret or redirect URL is missing
        """
        if not self.is_configured():
            raise ConfigError(
                "Pipedrive OAuth is not configured. Set PIPEDRIVE_CLIENT_ID, "
                "PIPEDRIVE_CLIENT_SECRET and PIPEDRIVE_REDIRECT_URL."
            )
        return build_pipedrive_authorization_url(
            self.settings.client_id or "",
            self.settings.redirect_url or "",
            state=state,
            scopes=scopes if scopes is not None else self.settings.scopes,
        )

    async def current_token(self) -> OAuthToken | None:
        return await self.storage.get_token()

    async def get_state(self) -> TokenState:
        token = await self.storage.get_token()
        if token is None:
            return TokenState.CONFIGURED if self.is_configured() else TokenState.UNCONFIGURED
        if token.is_expired(self.clock()):
            return TokenState.AUTHORIZED_NEEDS_REFRESH
        return TokenState.AUTHORIZED_VALID

    async def exchange_code(self, code: str) -> OAuthToken:
        """Exchange an authorization code and store the resulting token.

        Raises:
            ConfigError: If OAuth is not configured
            TokenError: If Pipedrive rejects the code or cannot be reached
        """
        if not code:
            raise TokenError("Authorization code is missing")
        payload = await self.oauth_client.exchange_authorization_code(
            code, self.settings.redirect_url or ""
        )
        token = OAuthToken.from_token_response(payload, now=self.clock())
        await self.storage.store_token(token)
        self.last_refresh_error = None
        self.last_refresh_failed_at = None
        logger.info(
            "Pipedrive authorization code exchanged",
            token_preview=token.redacted,
            expires_at=token.expires_at.isoformat() if token.expires_at else None,
            api_domain=token.api_domain,
        )
        return token

    async def refresh(self) -> OAuthToken:
        """Refresh the stored token.

        On failure the previous token stays stored and the error is recorded in
        `last_refresh_error`.

        Raises:
            TokenError: If there is nothing to refresh or the refresh failed
        """
        observed = await self.storage.get_token()
        async with self._refresh_lock:
            current = await self.storage.get_token()
            if current is None:
                raise TokenError("No Pipedrive token stored; authorize first")

            # Double-check under the lock: another caller may have refreshed already
            if (
                observed is not None
                and current.access_token != observed.access_token
                and not current.needs_refresh(self.clock())
            ):
                logger.info("Pipedrive token already refreshed by a concurrent caller")
                return current

            if not current.refresh_token:
                self._record_refresh_failure("No refresh token available")
                raise TokenError("No Pipedrive refresh token available")

            try:
                payload = await self.oauth_client.refresh_token(current.refresh_token)
            except TokenError as e:
                self._record_refresh_failure(str(e))
                raise
            except RateLimitedError as e:
                self._record_refresh_failure(str(e))
                raise TokenError(f"Pipedrive token refresh failed: {e}", transient=True) from e

            token = OAuthToken.from_token_response(payload, now=self.clock(), previous=current)
            await self.storage.store_token(token)
            self.last_refresh_error = None
            self.last_refresh_failed_at = None
            logger.info(
                "Successfully refreshed Pipedrive token",
                token_preview=token.redacted,
                expires_at=token.expires_at.isoformat() if token.expires_at else None,
            )
            return token

    def _record_refresh_failure(self, error: str) -> None:
        self.last_refresh_error = error
        self.last_refresh_failed_at = self.clock()
        logger.error("Pipedrive token refresh failed", error=error)

    async def get_valid_access_token(self) -> str:
        """Access token usable for API calls, refreshing first when close to expiry.

        Raises:
            TokenError: If not connected or the refresh failed
        """
        token = await self.storage.get_token()
        if token is None:
            raise TokenError("Pipedrive is not connected")
        if token.needs_refresh(self.clock()):
            logger.info("Pipedrive token expired or expiring soon; refreshing")
            token = await self.refresh()
        return token.access_token

    async def disconnect(self) -> None:
        """Forget the stored token. Safe to call when already disconnected."""
        await self.storage.clear_token()
        self.last_refresh_error = None
        self.last_refresh_failed_at = None
        logger.info("Pipedrive OAuth token cleared")

    async def test_connection(self) -> ConnectionTestResult:
        """Call /users/me with the stored token."""
        token = await self.storage.get_token()
        if token is None:
            return ConnectionTestResult(
                success=False, message="Not connected to Pipedrive", error="No token stored"
            )

        client = PipedriveClient(token.access_token, token.api_domain, http_client=self.http_client)
        try:
            user = await client.get_current_user()
        except (PipedriveApiError, RateLimitedError) as e:
            logger.warning("Pipedrive connection test failed", error=str(e))
            return ConnectionTestResult(
                success=False, message="Connection to Pipedrive failed", error=str(e)
            )

        company = {
            "id": user.get("company_id"),
            "name": user.get("company_name"),
            "domain": user.get("company_domain"),
        }
        return ConnectionTestResult(
            success=True,
            message="Connection to Pipedrive successful",
            user={"id": user.get("id"), "name": user.get("name"), "email": user.get("email")},
            company=company,
        )

    async def complete_authorization(self, code: str) -> tuple[OAuthToken, ConnectionTestResult]:
        """Exchange the code, then verify the new token works.

        A token that fails the connection test is rolled back: the previously
        stored token is restored, or storage is cleared if there was none.

        Raises:
            TokenError: If the exchange or the connection test fails
        """
        previous = await self.storage.get_token()
        token = await self.exchange_code(code)
        result = await self.test_connection()
        if result.success:
            return token, result

        if previous is not None:
            await self.storage.store_token(previous)
        else:
            await self.storage.clear_token()
        logger.warning("Rolled back Pipedrive token after failed connection test", error=result.error)
        raise TokenError(
            f"Pipedrive connection test failed: {result.error}",
            details={"connection_test": result.to_dict()},
        )
