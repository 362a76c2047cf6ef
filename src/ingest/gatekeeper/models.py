"""Pydantic models for gatekeeper service responses."""

from typing import Any

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Answer to a Pipedrive webhook delivery."""

    status: str
    message: str
    processed: bool | None = None
    action: str | None = None
    error: str | None = None


class WebhookHealthResponse(BaseModel):
    status: str
    service: str
    timestamp: str


class OAuthStatusResponse(BaseModel):
    is_configured: bool
    is_authenticated: bool
    state: str
    expires_at: str | None = None
    last_refresh_error: str | None = None
    connection_test: dict[str, Any] | None = None


class OAuthConnectedResponse(BaseModel):
    status: str
    user: dict[str, Any] | None = None
    company: dict[str, Any] | None = None
    expires_at: str | None = None
