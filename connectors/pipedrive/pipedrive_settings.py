"""Pipedrive gatekeeper settings.

Everything configurable is read from the environment once, at startup, into
these frozen models. Invalid values fail startup with ConfigError instead of
surfacing on the first webhook.
"""

import ipaddress
from enum import StrEnum

from pydantic import BaseModel, Field, ValidationError, field_validator

from connectors.pipedrive.pipedrive_errors import ConfigError
from src.utils.config import (
    get_app_environment,
    get_config_list,
    get_config_value,
    get_config_value_str,
)

DEFAULT_SIGNATURE_HEADER = "X-Pipedrive-Signature"
DEFAULT_WEBHOOK_PATH = "pipedrive/webhook"


class BasicAuthPolicy(BaseModel, frozen=True):
    enabled: bool = False
    username: str = ""
    password: str = ""


class IpAllowListPolicy(BaseModel, frozen=True):
    enabled: bool = False
    patterns: tuple[str, ...] = ()

    @field_validator("patterns")
    @classmethod
    def _patterns_must_parse(cls, patterns: tuple[str, ...]) -> tuple[str, ...]:
        for pattern in patterns:
            try:
                ipaddress.ip_network(pattern, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid IP allow-list entry {pattern!r}: {e}") from e
        return patterns


class SignaturePolicy(BaseModel, frozen=True):
    enabled: bool = False
    secret: str = ""
    header_name: str = DEFAULT_SIGNATURE_HEADER


class SecurityPolicy(BaseModel, frozen=True):
    """Inbound webhook security. Every enabled sub-policy must pass."""

    basic_auth: BasicAuthPolicy = Field(default_factory=BasicAuthPolicy)
    ip_allow_list: IpAllowListPolicy = Field(default_factory=IpAllowListPolicy)
    signature: SignaturePolicy = Field(default_factory=SignaturePolicy)

    @property
    def any_enabled(self) -> bool:
        return self.basic_auth.enabled or self.ip_allow_list.enabled or self.signature.enabled


class OAuthSettings(BaseModel, frozen=True):
    client_id: str | None = None
    client_secret: str | None = None
    redirect_url: str | None = None
    scopes: tuple[str, ...] = ()

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_url)


class MergeStrategy(StrEnum):
    """How relations pointing at a merged record are resolved."""

    KEEP_BOTH = "keep_both"
    KEEP_SURVIVING = "keep_surviving"
    KEEP_MERGED = "keep_merged"


class MergeDetectionSettings(BaseModel, frozen=True):
    enabled: bool = True
    window_seconds: float = Field(default=30, gt=0)
    overlap_threshold: float = Field(default=0.5, gt=0, le=1)
    auto_migrate_relations: bool = True
    strategy: MergeStrategy = MergeStrategy.KEEP_BOTH


class DashboardSettings(BaseModel, frozen=True):
    authorized_emails: frozenset[str] = frozenset()
    authorized_user_ids: frozenset[str] = frozenset()

    @field_validator("authorized_emails")
    @classmethod
    def _normalize_emails(cls, emails: frozenset[str]) -> frozenset[str]:
        return frozenset(email.strip().lower() for email in emails if email.strip())


class BackendSettings(BaseModel, frozen=True):
    entity_store: str = "memory"
    token_storage: str = "memory"
    merge_tracking: str = "memory"

    @field_validator("entity_store", "token_storage")
    @classmethod
    def _known_database_backend(cls, value: str) -> str:
        if value not in ("memory", "postgres"):
            raise ValueError(f"unknown backend {value!r}, expected 'memory' or 'postgres'")
        return value

    @field_validator("merge_tracking")
    @classmethod
    def _known_tracking_backend(cls, value: str) -> str:
        if value not in ("memory", "redis"):
            raise ValueError(f"unknown merge tracking backend {value!r}, expected 'memory' or 'redis'")
        return value


class PipedriveSettings(BaseModel, frozen=True):
    environment: str = "production"
    webhook_path: str = DEFAULT_WEBHOOK_PATH
    auto_sync: bool = True
    request_timeout_seconds: float = Field(default=30, gt=0)
    expose_error_details: bool = False
    disable_webhook_validation: bool = False
    security: SecurityPolicy = Field(default_factory=SecurityPolicy)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    merge_detection: MergeDetectionSettings = Field(default_factory=MergeDetectionSettings)
    dashboard: DashboardSettings = Field(default_factory=DashboardSettings)
    backends: BackendSettings = Field(default_factory=BackendSettings)

    @field_validator("webhook_path")
    @classmethod
    def _strip_slashes(cls, path: str) -> str:
        path = path.strip().strip("/")
        if not path:
            raise ValueError("webhook path must not be empty")
        return path

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @classmethod
    def from_env(cls) -> "PipedriveSettings":
        """Build settings from environment variables.

        Raises:
            ConfigError: If any value fails validation
        """
        allowed_ips = get_config_list("PIPEDRIVE_WEBHOOK_ALLOWED_IPS")
        try:
            return cls(
                environment=get_app_environment(),
                webhook_path=get_config_value_str("PIPEDRIVE_WEBHOOK_PATH", DEFAULT_WEBHOOK_PATH),
                auto_sync=get_config_value("PIPEDRIVE_WEBHOOKS_AUTO_SYNC", True),
                request_timeout_seconds=get_config_value("PIPEDRIVE_REQUEST_TIMEOUT", 30),
                expose_error_details=get_config_value("PIPEDRIVE_EXPOSE_ERRORS", False),
                disable_webhook_validation=get_config_value(
                    "DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION", False
                ),
                security=SecurityPolicy(
                    basic_auth=BasicAuthPolicy(
                        enabled=get_config_value("PIPEDRIVE_WEBHOOK_BASIC_AUTH", False),
                        username=get_config_value_str("PIPEDRIVE_WEBHOOK_USERNAME", "") or "",
                        password=get_config_value_str("PIPEDRIVE_WEBHOOK_PASSWORD", "") or "",
                    ),
                    ip_allow_list=IpAllowListPolicy(
                        enabled=get_config_value("PIPEDRIVE_WEBHOOK_IP_WHITELIST", False),
                        patterns=tuple(allowed_ips),
                    ),
                    signature=SignaturePolicy(
                        enabled=get_config_value("PIPEDRIVE_WEBHOOK_SIGNATURE", False),
                        secret=get_config_value_str("PIPEDRIVE_WEBHOOK_SECRET", "") or "",
                        header_name=get_config_value_str(
                            "PIPEDRIVE_WEBHOOK_SIGNATURE_HEADER", DEFAULT_SIGNATURE_HEADER
                        ),
                    ),
                ),
                oauth=OAuthSettings(
                    client_id=get_config_value_str("PIPEDRIVE_CLIENT_ID"),
                    client_secret=get_config_value_str("PIPEDRIVE_CLIENT_SECRET"),
                    redirect_url=get_config_value_str("PIPEDRIVE_REDIRECT_URL"),
                    scopes=tuple(get_config_list("PIPEDRIVE_OAUTH_SCOPES")),
                ),
                merge_detection=MergeDetectionSettings(
                    enabled=get_config_value("PIPEDRIVE_MERGE_HEURISTIC_DETECTION", True),
                    window_seconds=get_config_value("PIPEDRIVE_MERGE_DETECTION_WINDOW", 30),
                    overlap_threshold=get_config_value("PIPEDRIVE_MERGE_OVERLAP_THRESHOLD", 0.5),
                    auto_migrate_relations=get_config_value("PIPEDRIVE_MERGE_AUTO_MIGRATE", True),
                    strategy=get_config_value_str("PIPEDRIVE_MERGE_STRATEGY", "keep_both"),
                ),
                dashboard=DashboardSettings(
                    authorized_emails=frozenset(
                        get_config_list("PIPEDRIVE_DASHBOARD_AUTHORIZED_EMAILS")
                    ),
                    authorized_user_ids=frozenset(
                        get_config_list("PIPEDRIVE_DASHBOARD_AUTHORIZED_USER_IDS")
                    ),
                ),
                backends=BackendSettings(
                    entity_store=get_config_value_str("PIPEDRIVE_ENTITY_STORE", "memory"),
                    token_storage=get_config_value_str("PIPEDRIVE_TOKEN_STORAGE", "memory"),
                    merge_tracking=get_config_value_str(
                        "PIPEDRIVE_MERGE_TRACKING_BACKEND", "memory"
                    ),
                ),
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid Pipedrive configuration: {e}") from e
