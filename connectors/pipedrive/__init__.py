"""Pipedrive CRM connector for the gatekeeper.

Pipedrive is a sales CRM platform. This package verifies and normalizes
Pipedrive webhooks, detects merges that arrive as delete/create pairs, and
talks to the Pipedrive OAuth and REST endpoints.

API Documentation:
- Webhooks: https://pipedrive.readme.io/docs/guide-for-webhooks
- API v1: https://developers.pipedrive.com/docs/api/v1
- OAuth: https://pipedrive.readme.io/docs/marketplace-oauth-authorization
"""

from connectors.pipedrive.pipedrive_errors import (
    AuthError,
    ConfigError,
    FormatError,
    PipedriveApiError,
    PipedriveError,
    ProcessingError,
    TokenError,
)
from connectors.pipedrive.pipedrive_events import (
    PipedriveEntityCreated,
    PipedriveEntityDeleted,
    PipedriveEntityMerged,
    PipedriveEntityUpdated,
    PipedriveEventBus,
    PipedriveWebhookReceived,
)
from connectors.pipedrive.pipedrive_models import (
    PipedriveEntityType,
    WebhookAction,
    WebhookEvent,
    WebhookVersion,
)
from connectors.pipedrive.pipedrive_settings import PipedriveSettings
from connectors.pipedrive.pipedrive_webhook_handler import (
    PipedriveWebhookVerifier,
    normalize_pipedrive_webhook,
)

__all__ = [
    # Errors
    "PipedriveError",
    "FormatError",
    "AuthError",
    "ProcessingError",
    "TokenError",
    "ConfigError",
    "PipedriveApiError",
    # Models
    "PipedriveEntityType",
    "WebhookAction",
    "WebhookEvent",
    "WebhookVersion",
    # Events
    "PipedriveEventBus",
    "PipedriveWebhookReceived",
    "PipedriveEntityCreated",
    "PipedriveEntityUpdated",
    "PipedriveEntityDeleted",
    "PipedriveEntityMerged",
    # Webhooks
    "PipedriveSettings",
    "PipedriveWebhookVerifier",
    "normalize_pipedrive_webhook",
]
