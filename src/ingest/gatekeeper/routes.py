"""Route definitions for the Pipedrive webhook endpoint."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from src.ingest.gatekeeper.authorization import RouteKind, require_dashboard_access
from src.ingest.gatekeeper.models import WebhookHealthResponse
from src.ingest.gatekeeper.webhook_handlers import (
    handle_pipedrive_webhook,
    handle_pipedrive_webhook_health,
)


def create_webhook_router(webhook_path: str) -> APIRouter:
    """Router for POST /{webhook_path} and its gated health probe.

    The path comes from settings, so the router is built per app instead of at import.
    """
    router = APIRouter()
    path = "/" + webhook_path.strip("/")

    @router.post(path)
    async def pipedrive_webhook(request: Request) -> JSONResponse:
        """Process a Pipedrive webhook delivery."""
        return await handle_pipedrive_webhook(request)

    @router.get(
        f"{path}/health",
        response_model=WebhookHealthResponse,
        dependencies=[Depends(require_dashboard_access(RouteKind.WEBHOOK_HEALTH))],
    )
    async def pipedrive_webhook_health() -> WebhookHealthResponse:
        return await handle_pipedrive_webhook_health()

    return router
