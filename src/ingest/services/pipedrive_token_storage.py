"""
Storage for the Pipedrive OAuth token of this installation.

There is exactly one live token per gatekeeper, stored under the identifier
"default". Backends: in-memory (tests, single process) and PostgreSQL.
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import asyncpg
from pydantic import BaseModel

from src.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TOKEN_IDENTIFIER = "default"
TOKEN_REFRESH_LEEWAY = timedelta(minutes=5)


class OAuthToken(BaseModel, frozen=True):
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    obtained_at: datetime
    api_domain: str | None = None
    scopes: tuple[str, ...] = ()

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        now: datetime | None = None,
        previous: "OAuthToken | None" = None,
    ) -> "OAuthToken":
        """Build a token from a Pipedrive token endpoint response.

        Pipedrive may omit refresh_token or api_domain on refresh; the previous
        values are carried over.
        """
        now = now or datetime.now(UTC)
        expires_in = payload.get("expires_in")
        scope = payload.get("scope") or ""
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
            obtained_at=now,
            api_domain=payload.get("api_domain") or (previous.api_domain if previous else None),
            scopes=tuple(s for s in scope.replace(",", " ").split() if s)
            or (previous.scopes if previous else ()),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at

    def needs_refresh(self, now: datetime | None = None) -> bool:
        """True once the token is expired or within the refresh leeway of expiry."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at - TOKEN_REFRESH_LEEWAY

    @property
    def redacted(self) -> str:
        token = self.access_token
        return f"{token[:8]}...{token[-4:]}" if len(token) > 12 else "***"


class TokenStorage(Protocol):
    async def get_token(self) -> OAuthToken | None: ...

    async def store_token(self, token: OAuthToken) -> None: ...

    async def clear_token(self) -> None: ...


class InMemoryTokenStorage:
    def __init__(self, token: OAuthToken | None = None) -> None:
        self._token = token
        self._lock = asyncio.Lock()

    async def get_token(self) -> OAuthToken | None:
        return self._token

    async def store_token(self, token: OAuthToken) -> None:
        async with self._lock:
            self._token = token

    async def clear_token(self) -> None:
        async with self._lock:
            self._token = None


TOKEN_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipedrive_oauth_tokens (
    identifier TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at TIMESTAMPTZ,
    obtained_at TIMESTAMPTZ NOT NULL,
    api_domain TEXT,
    scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class PostgresTokenStorage:
    def __init__(self, db_pool: asyncpg.Pool, identifier: str = DEFAULT_TOKEN_IDENTIFIER):
        self.db_pool = db_pool
        self.identifier = identifier

    async def ensure_schema(self) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(TOKEN_SCHEMA_SQL)

    async def get_token(self) -> OAuthToken | None:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT access_token, refresh_token, expires_at, obtained_at, api_domain, scopes
                FROM pipedrive_oauth_tokens
                WHERE identifier = $1
                """,
                self.identifier,
            )
        if row is None:
            return None
        scopes = row["scopes"]
        if isinstance(scopes, str):
            scopes = json.loads(scopes)
        return OAuthToken(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            obtained_at=row["obtained_at"],
            api_domain=row["api_domain"],
            scopes=tuple(scopes or ()),
        )

    async def store_token(self, token: OAuthToken) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO pipedrive_oauth_tokens
                    (identifier, access_token, refresh_token, expires_at, obtained_at, api_domain, scopes)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                ON CONFLICT (identifier) DO UPDATE SET
                    access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at = EXCLUDED.expires_at,
                    obtained_at = EXCLUDED.obtained_at,
                    api_domain = EXCLUDED.api_domain,
                    scopes = EXCLUDED.scopes,
                    updated_at = NOW()
                """,
                self.identifier,
                token.access_token,
                token.refresh_token,
                token.expires_at,
                token.obtained_at,
                token.api_domain,
                json.dumps(list(token.scopes)),
            )
        logger.info("Stored Pipedrive OAuth token", token_preview=token.redacted)

    async def clear_token(self) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM pipedrive_oauth_tokens WHERE identifier = $1", self.identifier
            )
