"""Dashboard authorization gate for the Pipedrive management endpoints.

Standard routes (OAuth pages, status) are open in the local environment or to
an authorized human. The webhook health route additionally accepts any request
that passes webhook verification, so Pipedrive-side monitors can probe it with
the same credentials they use for deliveries.

The host application identifies users; the default identity predicate reads
`request.state.user` (a mapping or object with `email` / `id`) and matches it
against the configured allow-lists.
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from fastapi import Request

from connectors.pipedrive.pipedrive_errors import AuthError
from connectors.pipedrive.pipedrive_settings import DashboardSettings
from src.ingest.gatekeeper.verification import WebhookVerifier
from src.utils.logging import get_logger

logger = get_logger(__name__)

IdentityPredicate = Callable[[Request], bool | Awaitable[bool]]


class DashboardAccessDenied(AuthError):
    """Rendered as 403 {"error": "Forbidden", "message": ...}."""

    code = "Forbidden"

    def __init__(self, message: str = "You are not authorized to access Pipedrive management endpoints."):
        super().__init__(message, status_code=403)


class RouteKind(StrEnum):
    STANDARD = "standard"
    WEBHOOK_HEALTH = "webhook_health"


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: str


def _user_attribute(user: Any, name: str) -> Any:
    if isinstance(user, dict):
        return user.get(name)
    return getattr(user, name, None)


def make_allow_list_predicate(settings: DashboardSettings) -> IdentityPredicate:
    """Identity predicate matching request.state.user against configured emails and ids."""

    def predicate(request: Request) -> bool:
        user = getattr(request.state, "user", None)
        if user is None:
            return False
        email = _user_attribute(user, "email")
        if email and str(email).strip().lower() in settings.authorized_emails:
            return True
        user_id = _user_attribute(user, "id")
        return user_id is not None and str(user_id) in settings.authorized_user_ids

    return predicate


class DashboardAuthorizationGate:
    def __init__(
        self,
        is_local: bool,
        identity_predicate: IdentityPredicate,
        verifier: WebhookVerifier | None = None,
    ):
        self.is_local = is_local
        self.identity_predicate = identity_predicate
        self.verifier = verifier

    async def _identity_allows(self, request: Request) -> bool:
        try:
            result = self.identity_predicate(request)
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        except Exception as e:
            logger.warning("Dashboard identity check failed, treating as unauthorized", error=str(e))
            return False

    async def _webhook_credentials_allow(self, request: Request) -> bool:
        if self.verifier is None:
            return False
        body = await request.body()
        client_ip = request.client.host if request.client else None
        result = await self.verifier.verify(dict(request.headers), body, client_ip)
        return result.success

    async def authorize(self, request: Request, route_kind: RouteKind) -> AuthorizationDecision:
        """Decide access; checks short-circuit on the first success."""
        if self.is_local:
            return AuthorizationDecision(True, "local environment")
        if await self._identity_allows(request):
            return AuthorizationDecision(True, "authorized user")
        if route_kind is RouteKind.WEBHOOK_HEALTH and await self._webhook_credentials_allow(request):
            return AuthorizationDecision(True, "webhook credentials")
        return AuthorizationDecision(False, "not authorized")


def require_dashboard_access(route_kind: RouteKind) -> Callable[[Request], Awaitable[None]]:
    """FastAPI dependency enforcing the gate stored on app.state.authorization_gate."""

    async def dependency(request: Request) -> None:
        gate: DashboardAuthorizationGate = request.app.state.authorization_gate
        decision = await gate.authorize(request, route_kind)
        if not decision.allowed:
            logger.warning(
                "Dashboard access denied",
                path=request.url.path,
                route_kind=route_kind.value,
                client_ip=request.client.host if request.client else None,
            )
            raise DashboardAccessDenied()

    return dependency
