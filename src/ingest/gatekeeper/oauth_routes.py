"""Pipedrive OAuth management routes.

Typed Pipedrive errors raised here (ConfigError, TokenError) are rendered as
400 JSON by the app-level exception handler.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from connectors.pipedrive.pipedrive_errors import TokenError
from src.ingest.gatekeeper.authorization import RouteKind, require_dashboard_access
from src.ingest.gatekeeper.models import OAuthConnectedResponse, OAuthStatusResponse
from src.ingest.services.pipedrive_auth import PipedriveAuthService, TokenState
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/pipedrive/oauth")

dashboard_access = Depends(require_dashboard_access(RouteKind.STANDARD))


def _auth_service(request: Request) -> PipedriveAuthService:
    return request.app.state.auth_service


@router.get("/authorize", dependencies=[dashboard_access])
async def authorize(request: Request, state: str | None = None) -> RedirectResponse:
    """Redirect the operator to the Pipedrive consent screen."""
    url = _auth_service(request).build_authorization_url(state=state)
    logger.info("Redirecting to Pipedrive OAuth consent screen")
    return RedirectResponse(url, status_code=307)


@router.get("/callback", response_model=OAuthConnectedResponse)
async def callback(
    request: Request,
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> OAuthConnectedResponse:
    """Pipedrive redirects here after consent; no dashboard gate since the browser carries no session."""
    if error:
        logger.warning("Pipedrive OAuth authorization denied", error=error)
        raise TokenError(
            f"Pipedrive authorization failed: {error_description or error}",
            details={"provider_error": error},
        )
    if not code:
        raise TokenError("Missing authorization code")

    token, result = await _auth_service(request).complete_authorization(code)
    logger.info("Pipedrive connected", user_id=(result.user or {}).get("id"))
    return OAuthConnectedResponse(
        status="connected",
        user=result.user,
        company=result.company,
        expires_at=token.expires_at.isoformat() if token.expires_at else None,
    )


@router.get("/status", response_model=OAuthStatusResponse, dependencies=[dashboard_access])
async def status(request: Request) -> OAuthStatusResponse:
    service = _auth_service(request)
    state = await service.get_state()
    token = await service.current_token()

    connection_test = None
    if state is TokenState.AUTHORIZED_VALID:
        connection_test = (await service.test_connection()).to_dict()

    return OAuthStatusResponse(
        is_configured=service.is_configured(),
        is_authenticated=token is not None,
        state=state.value,
        expires_at=token.expires_at.isoformat() if token and token.expires_at else None,
        last_refresh_error=service.last_refresh_error,
        connection_test=connection_test,
    )


@router.post("/disconnect", dependencies=[dashboard_access])
async def disconnect(request: Request) -> dict[str, str]:
    await _auth_service(request).disconnect()
    return {"status": "disconnected"}
