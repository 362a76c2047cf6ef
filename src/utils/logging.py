"""Gatekeeper logging.

structlog is configured when this module is imported. Output is a colored console
rendering when GATEKEEPER_ENVIRONMENT=local and one JSON object per line otherwise
(LOG_RENDERER=console|json overrides the choice). Stdlib loggers (uvicorn, httpx,
asyncpg) are routed through the same formatter.

```
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

with LogContext(entity_type="deals", object_id="42"):
    logger.info("Processing Pipedrive webhook", action="updated")
```

Values bound with LogContext or add_log_context() are attached to every log line
emitted in the current async context. Credentials never reach the output: fields
named like a secret (authorization, access_token, client_secret, signature, ...)
are masked by `redact_secrets`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from typing import Any

import structlog
import structlog.contextvars

from src.utils.config import is_local_environment

REDACTED = "[redacted]"

SECRET_FIELDS = frozenset(
    {
        "authorization",
        "password",
        "secret",
        "client_secret",
        "webhook_secret",
        "access_token",
        "refresh_token",
        "signature",
        "x_pipedrive_signature",
        "code",
    }
)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error")


def redact_secrets(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential-bearing fields, including inside a logged `headers` mapping."""
    for key in list(event_dict):
        if key.lower().replace("-", "_") in SECRET_FIELDS and event_dict[key]:
            event_dict[key] = REDACTED

    headers = event_dict.get("headers")
    if isinstance(headers, MutableMapping):
        event_dict["headers"] = {
            name: REDACTED if name.lower().replace("-", "_") in SECRET_FIELDS else value
            for name, value in headers.items()
        }
    return event_dict


def _use_console_renderer() -> bool:
    override = os.getenv("LOG_RENDERER", "").lower()
    if override in ("console", "json"):
        return override == "console"
    return is_local_environment()


def _get_log_renderer() -> structlog.types.Processor:
    if _use_console_renderer():
        return structlog.dev.ConsoleRenderer(
            colors=True,
            pad_event=0,
            exception_formatter=structlog.dev.plain_traceback,
            sort_keys=True,
            event_key="message",
        )
    return structlog.processors.JSONRenderer()


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.processors.EventRenamer("message"),
    ]


def configure_logging(level: str | None = None) -> logging.Handler:
    """(Re)configure structlog and the stdlib root logger; returns the installed handler."""
    shared = _shared_processors()
    structlog.configure(
        processors=[
            *shared,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_get_log_renderer(), foreign_pre_chain=shared
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    numeric_level = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root_logger.setLevel(numeric_level)
    if numeric_level <= logging.DEBUG:
        for name in UVICORN_LOGGERS:
            logging.getLogger(name).setLevel(numeric_level)

    # Libraries that installed their own handlers would bypass the formatter
    for existing in logging.Logger.manager.loggerDict.values():
        if isinstance(existing, logging.Logger) and existing.handlers:
            existing.handlers.clear()
            existing.addHandler(handler)
            existing.propagate = False

    return handler


configure_logging()


def add_log_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def remove_log_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_log_context() -> None:
    structlog.contextvars.clear_contextvars()


LogContext = structlog.contextvars.bound_contextvars


def get_logger(name: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger(name, **kwargs)


def get_uvicorn_log_config() -> dict[str, Any]:
    """dictConfig for uvicorn so access and error logs share the structlog format."""
    handler = {"handlers": ["default"], "level": "INFO", "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": _get_log_renderer(),
                "foreign_pre_chain": [
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.processors.TimeStamper(fmt="iso", utc=True),
                    structlog.processors.EventRenamer("message"),
                ],
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {"": dict(handler), **{name: dict(handler) for name in UVICORN_LOGGERS}},
    }
