"""
Typed errors for the Pipedrive integration.

Each error carries the HTTP status the gatekeeper answers with and whether the
failure is worth retrying, so route handlers can translate without guessing.
"""

from typing import Any


class PipedriveError(Exception):
    """Base class for every error raised by the Pipedrive integration."""

    status_code: int = 500
    code: str = "pipedrive_error"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.transient = transient
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class FormatError(PipedriveError):
    """Webhook request is not a well-formed Pipedrive payload."""

    status_code = 400
    code = "invalid_format"

    def __init__(self, message: str = "invalid webhook format", **kwargs: Any):
        super().__init__(message, **kwargs)


class AuthError(PipedriveError):
    """Webhook credentials were rejected. 401 for credentials, 403 for origin."""

    code = "unauthorized"

    def __init__(self, message: str, *, status_code: int = 401, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ProcessingError(PipedriveError):
    """Persistence failed while applying a webhook; Pipedrive should redeliver."""

    status_code = 500
    code = "processing_failed"

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("transient", True)
        super().__init__(message, **kwargs)


class TokenError(PipedriveError):
    """OAuth code exchange, refresh or connection test failed."""

    status_code = 400
    code = "token_error"


class ConfigError(PipedriveError):
    """Configuration is missing or invalid."""

    status_code = 400
    code = "config_error"


class PipedriveApiError(PipedriveError):
    """Non-success response from the Pipedrive REST API."""

    code = "api_error"

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.api_status_code = status_code
        if status_code is not None:
            self.details.setdefault("status_code", status_code)
