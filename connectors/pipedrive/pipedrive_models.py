"""Pipedrive connector models: entity types, webhook actions and the normalized webhook event."""

import hashlib
import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class PipedriveEntityType(StrEnum):
    """Entity types the gatekeeper keeps a local copy of."""

    DEALS = "deals"
    PERSONS = "persons"
    ORGANIZATIONS = "organizations"
    ACTIVITIES = "activities"
    PRODUCTS = "products"
    FILES = "files"
    NOTES = "notes"
    USERS = "users"
    PIPELINES = "pipelines"
    STAGES = "stages"
    GOALS = "goals"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def from_object_type(cls, object_type: str | None) -> "PipedriveEntityType | None":
        """Resolve a webhook object name (singular or plural) to an entity type."""
        if not object_type:
            return None
        return PIPEDRIVE_OBJECT_TYPE_MAP.get(object_type.strip().lower())


# Webhook `meta.object` (v1) / `meta.entity` (v2) values. v1 sends singular names,
# some deliveries and v2 use plural ones, so both spellings are listed explicitly.
PIPEDRIVE_OBJECT_TYPE_MAP: dict[str, PipedriveEntityType] = {
    "deal": PipedriveEntityType.DEALS,
    "deals": PipedriveEntityType.DEALS,
    "person": PipedriveEntityType.PERSONS,
    "persons": PipedriveEntityType.PERSONS,
    "organization": PipedriveEntityType.ORGANIZATIONS,
    "organizations": PipedriveEntityType.ORGANIZATIONS,
    "activity": PipedriveEntityType.ACTIVITIES,
    "activities": PipedriveEntityType.ACTIVITIES,
    "product": PipedriveEntityType.PRODUCTS,
    "products": PipedriveEntityType.PRODUCTS,
    "file": PipedriveEntityType.FILES,
    "files": PipedriveEntityType.FILES,
    "note": PipedriveEntityType.NOTES,
    "notes": PipedriveEntityType.NOTES,
    "user": PipedriveEntityType.USERS,
    "users": PipedriveEntityType.USERS,
    "pipeline": PipedriveEntityType.PIPELINES,
    "pipelines": PipedriveEntityType.PIPELINES,
    "stage": PipedriveEntityType.STAGES,
    "stages": PipedriveEntityType.STAGES,
    "goal": PipedriveEntityType.GOALS,
    "goals": PipedriveEntityType.GOALS,
}


class WebhookVersion(StrEnum):
    V1 = "1.0"
    V2 = "2.0"


class WebhookAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MERGE = "merge"
    UNKNOWN = "unknown"

    @classmethod
    def from_raw(cls, raw_action: str | None) -> "WebhookAction":
        if not raw_action:
            return cls.UNKNOWN
        return _ACTION_ALIASES.get(raw_action.strip().lower(), cls.UNKNOWN)


# v1 uses past-tense verbs, v2 uses imperative ones
_ACTION_ALIASES: dict[str, WebhookAction] = {
    "added": WebhookAction.CREATE,
    "create": WebhookAction.CREATE,
    "updated": WebhookAction.UPDATE,
    "update": WebhookAction.UPDATE,
    "change": WebhookAction.UPDATE,
    "deleted": WebhookAction.DELETE,
    "delete": WebhookAction.DELETE,
    "merged": WebhookAction.MERGE,
    "merge": WebhookAction.MERGE,
}


class WebhookEvent(BaseModel, frozen=True):
    """A Pipedrive webhook delivery, normalized across payload versions."""

    version: WebhookVersion
    action: WebhookAction
    raw_action: str
    object_type: str
    entity_type: PipedriveEntityType | None = None
    object_id: str
    current: dict[str, Any] | None = None
    previous: dict[str, Any] | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    retry: int = 0

    @property
    def attempt(self) -> int:
        """Delivery attempt counter; 0 for the first delivery."""
        for value in (self.meta.get("attempt"), self.meta.get("retry"), self.retry):
            try:
                if value is not None and int(value) > 0:
                    return int(value)
            except (TypeError, ValueError):
                continue
        return 0

    @property
    def is_retry(self) -> bool:
        return self.attempt > 0

    @property
    def user_id(self) -> Any:
        return self.meta.get("user_id")

    @property
    def company_id(self) -> Any:
        return self.meta.get("company_id")

    @property
    def change_source(self) -> str | None:
        return self.meta.get("change_source")

    @property
    def is_bulk_update(self) -> bool:
        return bool(self.meta.get("is_bulk_update", False))

    @property
    def correlation_id(self) -> str | None:
        value = self.meta.get("correlation_id")
        return str(value) if value not in (None, "") else None

    @property
    def fingerprint(self) -> str:
        """Stable identity of this delivery, shared by redeliveries of the same change."""
        material = json.dumps(
            [
                self.version.value,
                self.object_type,
                self.object_id,
                self.raw_action,
                self.meta.get("timestamp"),
            ],
            default=str,
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()
