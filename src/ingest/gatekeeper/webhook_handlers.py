"""Pipedrive webhook handlers for the gatekeeper service.

Request pipeline: verify credentials (401/403) -> check framing and normalize
the payload (400) -> apply it (200, or 500 so Pipedrive redelivers).
"""

from datetime import UTC, datetime

from fastapi import Request
from fastapi.responses import JSONResponse

from connectors.pipedrive.pipedrive_errors import FormatError, ProcessingError
from connectors.pipedrive.pipedrive_events import PipedriveEventBus, PipedriveWebhookReceived
from connectors.pipedrive.pipedrive_settings import PipedriveSettings
from connectors.pipedrive.pipedrive_webhook_handler import (
    extract_pipedrive_webhook_metadata,
    parse_pipedrive_webhook_request,
)
from src.ingest.gatekeeper.models import WebhookHealthResponse, WebhookResponse
from src.ingest.gatekeeper.services.webhook_processor import PipedriveWebhookProcessor
from src.ingest.gatekeeper.verification import WebhookVerifier
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

WEBHOOK_SERVICE_NAME = "Pipedrive Gatekeeper Webhooks"


def _is_validation_disabled(request: Request) -> bool:
    """Check if webhook validation is disabled via app state."""
    return getattr(request.app.state, "dangerously_disable_webhook_validation", False)


def _client_ip(request: Request) -> str | None:
    """Peer address as uvicorn reports it; rewritten from X-Forwarded-For only for FORWARDED_ALLOW_IPS peers."""
    return request.client.host if request.client else None


async def _verify_or_reject(
    verifier: WebhookVerifier,
    headers: dict[str, str],
    body: bytes,
    request: Request,
) -> JSONResponse | None:
    """Run the verifier; return the rejection response, or None when the request may proceed."""
    if _is_validation_disabled(request):
        logger.warning(
            "⚠️ Skipping Pipedrive webhook verification (DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION=true)",
        )
        return None

    result = await verifier.verify(headers, body, _client_ip(request))
    if result.success:
        return None

    logger.warning(
        "Failed to verify Pipedrive webhook",
        error=result.error,
        status_code=result.status_code,
        client_ip=_client_ip(request),
    )
    return JSONResponse(
        status_code=result.status_code,
        content={"error": "Forbidden" if result.status_code == 403 else "Unauthorized"},
    )


async def handle_pipedrive_webhook(request: Request) -> JSONResponse:
    """Verify, normalize and process one Pipedrive webhook delivery."""
    settings: PipedriveSettings = request.app.state.settings
    verifier: WebhookVerifier = request.app.state.webhook_verifier
    processor: PipedriveWebhookProcessor = request.app.state.webhook_processor
    event_bus: PipedriveEventBus = request.app.state.event_bus

    body = await request.body()
    headers = dict(request.headers)
    webhook_metadata = extract_pipedrive_webhook_metadata(
        headers, body.decode("utf-8", errors="replace")
    )
    tracking_context = {f"webhook_meta_{key}": value for key, value in webhook_metadata.items()}

    with LogContext(**tracking_context):
        logger.info("Received Pipedrive webhook")

        rejection = await _verify_or_reject(verifier, headers, body, request)
        if rejection is not None:
            return rejection

        try:
            event = parse_pipedrive_webhook_request(
                request.method, request.headers.get("content-type"), body
            )
        except FormatError as e:
            logger.warning("Invalid Pipedrive webhook format", error=str(e), **e.details)
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid webhook format", "message": e.message},
            )

        try:
            result = await processor.process(event)
        except ProcessingError as e:
            logger.error("Pipedrive webhook processing failed", error=str(e), **e.details)
            return _processing_failed(settings, str(e))
        except Exception as e:
            logger.error("Unexpected error processing Pipedrive webhook", error=str(e), exc_info=True)
            return _processing_failed(settings, str(e))

        logger.info(
            "Pipedrive webhook processed",
            processed=result.processed,
            result_action=result.action,
            reason=result.reason,
        )
        await event_bus.publish(
            PipedriveWebhookReceived(
                version=event.version.value,
                action=event.raw_action,
                object_type=event.object_type,
                object_id=event.object_id,
                attempt=event.attempt,
                processed=result.processed,
                result_action=result.action,
            )
        )
        response = WebhookResponse(
            status="success",
            message="Webhook processed successfully",
            processed=result.processed,
            action=result.action,
        )
        return JSONResponse(status_code=200, content=response.model_dump(exclude_none=True))


def _processing_failed(settings: PipedriveSettings, error: str) -> JSONResponse:
    response = WebhookResponse(
        status="error",
        message="Webhook processing failed",
        error=error if settings.expose_error_details else None,
    )
    return JSONResponse(status_code=500, content=response.model_dump(exclude_none=True))


async def handle_pipedrive_webhook_health() -> WebhookHealthResponse:
    return WebhookHealthResponse(
        status="ok",
        service=WEBHOOK_SERVICE_NAME,
        timestamp=datetime.now(UTC).isoformat(),
    )
