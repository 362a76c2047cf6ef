"""Configuration utility for the Pipedrive gatekeeper.

This module provides centralized configuration access with:
- Environment variables as the only source
- Type-safe access to configuration values

Values are read once at startup into the frozen settings models in
`connectors.pipedrive.pipedrive_settings`; request-time code should not call
these helpers directly.
"""

import os
from typing import Any


def parse_config_value(value: str) -> str | bool | int | float | None:
    if value.lower() == "true":
        return True
    elif value.lower() == "false":
        return False
    else:
        # Try to parse as a number
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                # Return as string
                return value


def get_config_value(key: str, default: Any = None) -> Any:
    """Get a configuration value from environment variables.

    Args:
        key: Configuration key name (e.g., "PIPEDRIVE_WEBHOOK_PATH")
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    env_value = os.environ.get(key)
    if env_value is not None and env_value != "":
        return parse_config_value(env_value)

    return default


def get_config_value_str(key: str, default: str | None = None) -> str | None:
    """
    Get a configuration value from environment variables. But sometimes you just want a string.

    Secrets and usernames go through here so that "12345" stays a string.
    """
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    return value


def get_config_list(key: str) -> list[str]:
    """Get a comma-separated configuration value as a list of trimmed, non-empty strings."""
    raw = os.environ.get(key, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_database_url() -> str:
    """Get database connection URL.

    Returns:
        PostgreSQL connection string from DATABASE_URL config

    Raises:
        ValueError: If DATABASE_URL is not configured
    """
    url = get_config_value_str("DATABASE_URL")
    if url:
        return url

    raise ValueError("Database URL not found. Please provide DATABASE_URL environment variable")


def get_redis_endpoint() -> str:
    """Get the Redis endpoint from REDIS_PRIMARY_ENDPOINT, defaulting to localhost."""
    return get_config_value_str("REDIS_PRIMARY_ENDPOINT", "localhost:6379") or "localhost:6379"


def get_app_environment() -> str:
    """Get the deployment environment name ("local", "staging", "production", ...)."""
    return get_config_value_str("GATEKEEPER_ENVIRONMENT", "production") or "production"


def is_local_environment() -> bool:
    return get_app_environment() == "local"
