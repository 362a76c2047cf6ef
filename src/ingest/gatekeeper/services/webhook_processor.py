"""Webhook processor service for the Pipedrive gatekeeper.

Applies a verified, normalized Pipedrive webhook to the local entity store and
publishes one notification per persisted change:

- create/update: upsert by (entity type, Pipedrive id); notify created/updated
  only when something was actually written
- delete: remove by Pipedrive id; notify only when a record was removed
- merge: upsert the survivor, move relations from the merged record, delete it

Store failures raise ProcessingError so the route answers 500 and Pipedrive
redelivers. Notifications are only published after persistence succeeded.
"""

from dataclasses import dataclass, field
from typing import Any

from connectors.pipedrive.pipedrive_errors import ProcessingError
from connectors.pipedrive.pipedrive_events import (
    PipedriveEntityCreated,
    PipedriveEntityDeleted,
    PipedriveEntityMerged,
    PipedriveEntityUpdated,
    PipedriveEventBus,
)
from connectors.pipedrive.pipedrive_merge_detection import (
    MergeInference,
    PipedriveMergeDetectionService,
)
from connectors.pipedrive.pipedrive_models import (
    PipedriveEntityType,
    WebhookAction,
    WebhookEvent,
    WebhookVersion,
)
from connectors.pipedrive.pipedrive_settings import PipedriveSettings
from src.ingest.services.pipedrive_entity_store import (
    MigrationResult,
    PipedriveEntityStore,
)
from src.utils.logging import LogContext, get_logger
from src.utils.timeout import OperationTimeoutError, with_timeout

logger = get_logger(__name__)


@dataclass
class WebhookProcessingResult:
    processed: bool
    action: str
    reason: str | None = None
    entity_type: str | None = None
    object_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    # Last known record fields, fed to merge detection
    tracked_data: dict[str, Any] | None = field(default=None, repr=False)

    @classmethod
    def skipped(cls, reason: str, event: WebhookEvent | None = None) -> "WebhookProcessingResult":
        return cls(
            processed=False,
            action="skipped",
            reason=reason,
            entity_type=event.entity_type.value if event and event.entity_type else None,
            object_id=event.object_id if event else None,
        )


def extract_webhook_changes(
    current: dict[str, Any], previous: dict[str, Any] | None, version: WebhookVersion
) -> dict[str, dict[str, Any]]:
    """Field-level diff between previous and current values.

    A field absent from `previous` counts as null. v1 sends the full previous
    record, so every current field is compared; v2 `previous` only lists the
    fields that changed, so only those keys are compared.
    """
    previous = previous or {}
    keys = previous.keys() if version is WebhookVersion.V2 else current.keys()
    changes: dict[str, dict[str, Any]] = {}
    for key in keys:
        old = previous.get(key)
        new = current.get(key)
        if old != new:
            changes[key] = {"old": old, "new": new}
    return changes


class PipedriveWebhookProcessor:
    """Turns WebhookEvents into store writes and notifications."""

    def __init__(
        self,
        settings: PipedriveSettings,
        store: PipedriveEntityStore,
        event_bus: PipedriveEventBus,
        merge_detector: PipedriveMergeDetectionService | None = None,
    ):
        self.settings = settings
        self.store = store
        self.event_bus = event_bus
        self.merge_detector = merge_detector

    async def process(self, event: WebhookEvent) -> WebhookProcessingResult:
        if not self.settings.auto_sync:
            logger.info("Pipedrive auto-sync disabled, skipping webhook", object_type=event.object_type)
            return WebhookProcessingResult.skipped("Auto-sync disabled", event)

        if event.entity_type is None:
            logger.info("Unsupported Pipedrive object type", object_type=event.object_type)
            return WebhookProcessingResult.skipped("Unsupported object type", event)

        if event.action is WebhookAction.UNKNOWN:
            logger.info("Unsupported Pipedrive webhook action", raw_action=event.raw_action)
            return WebhookProcessingResult.skipped("Unsupported action", event)

        with LogContext(
            entity_type=event.entity_type.value,
            object_id=event.object_id,
            action=event.action.value,
            attempt=event.attempt,
        ):
            if event.action in (WebhookAction.CREATE, WebhookAction.UPDATE):
                result = await self._process_upsert(event, event.entity_type)
            elif event.action is WebhookAction.DELETE:
                result = await self._process_delete(event, event.entity_type)
            else:
                return await self._process_merge(event, event.entity_type)

            if result.processed and self.merge_detector is not None:
                try:
                    inference = await self.merge_detector.track_event(event, result.tracked_data)
                except Exception as e:
                    logger.warning("Pipedrive merge tracking unavailable", error=str(e))
                    inference = None
                if inference is not None:
                    try:
                        result.details["heuristic_merge"] = await self._apply_inferred_merge(
                            inference, event
                        )
                    except ProcessingError as e:
                        # The webhook's own change is already persisted
                        logger.error(
                            "Failed to apply heuristic Pipedrive merge",
                            merged_id=inference.merged_id,
                            surviving_id=inference.surviving_id,
                            error=str(e),
                        )
                        result.details["heuristic_merge"] = {"error": str(e)}
            return result

    async def _store_call(self, operation: str, event: WebhookEvent, func, *args: Any) -> Any:
        """Run a store call under the request timeout, wrapping failures in ProcessingError."""
        try:
            return await with_timeout(
                func, self.settings.request_timeout_seconds, operation, *args
            )
        except OperationTimeoutError as e:
            raise ProcessingError(
                f"Pipedrive {operation} timed out",
                details=self._error_context(event, operation),
            ) from e
        except ProcessingError:
            raise
        except Exception as e:
            logger.error(
                "Pipedrive store operation failed",
                operation=operation,
                error=str(e),
                exc_info=True,
            )
            raise ProcessingError(
                f"Pipedrive {operation} failed: {e}",
                details=self._error_context(event, operation),
            ) from e

    @staticmethod
    def _error_context(event: WebhookEvent, operation: str) -> dict[str, Any]:
        return {
            "operation": operation,
            "entity_type": event.entity_type.value if event.entity_type else event.object_type,
            "object_id": event.object_id,
            "action": event.action.value,
            "attempt": event.attempt,
        }

    def _event_metadata(self, event: WebhookEvent) -> dict[str, Any]:
        return {
            "webhook_action": event.raw_action,
            "webhook_version": event.version.value,
            "change_source": event.change_source,
            "user_id": event.user_id,
            "company_id": event.company_id,
            "is_bulk_update": event.is_bulk_update,
            "attempt": event.attempt,
        }

    async def _process_upsert(
        self, event: WebhookEvent, entity_type: PipedriveEntityType
    ) -> WebhookProcessingResult:
        current = event.current
        if not current:
            logger.warning("Pipedrive webhook carries no current data, skipping")
            return WebhookProcessingResult.skipped("No current data", event)

        upsert = await self._store_call(
            "upsert", event, self.store.upsert, entity_type, event.object_id, current
        )
        metadata = self._event_metadata(event)

        if upsert.created and event.action is WebhookAction.CREATE:
            await self.event_bus.publish(
                PipedriveEntityCreated(
                    entity_type=entity_type,
                    entity_id=event.object_id,
                    data=dict(current),
                    metadata=metadata,
                )
            )
            outcome = "created"
        elif upsert.created or upsert.changed:
            previous = event.previous if event.previous is not None else upsert.previous_data
            changes = extract_webhook_changes(current, previous, event.version)
            await self.event_bus.publish(
                PipedriveEntityUpdated(
                    entity_type=entity_type,
                    entity_id=event.object_id,
                    data=dict(current),
                    changes=changes,
                    metadata=metadata,
                )
            )
            outcome = "updated"
        else:
            logger.info("Pipedrive webhook replay changed nothing", is_retry=event.is_retry)
            outcome = "unchanged"

        return WebhookProcessingResult(
            processed=True,
            action=outcome,
            entity_type=entity_type.value,
            object_id=event.object_id,
            tracked_data=dict(current),
        )

    async def _process_delete(
        self, event: WebhookEvent, entity_type: PipedriveEntityType
    ) -> WebhookProcessingResult:
        deleted = await self._store_call("delete", event, self.store.delete, entity_type, event.object_id)
        previous = event.previous or deleted.previous_data

        if deleted.deleted_count > 0:
            await self.event_bus.publish(
                PipedriveEntityDeleted(
                    entity_type=entity_type,
                    entity_id=event.object_id,
                    previous_data=previous,
                    deleted_count=deleted.deleted_count,
                    metadata=self._event_metadata(event),
                )
            )
            outcome = "deleted"
        else:
            logger.info("Pipedrive record already absent, nothing to delete", is_retry=event.is_retry)
            outcome = "not_found"

        return WebhookProcessingResult(
            processed=True,
            action=outcome,
            entity_type=entity_type.value,
            object_id=event.object_id,
            details={"deleted_count": deleted.deleted_count},
            tracked_data=previous or {},
        )

    async def _process_merge(
        self, event: WebhookEvent, entity_type: PipedriveEntityType
    ) -> WebhookProcessingResult:
        current = event.current or {}
        surviving_id = str(current.get("id") or event.object_id)
        merged_raw = (event.previous or {}).get("id") or event.meta.get("merged_id")
        if merged_raw in (None, ""):
            logger.warning("Pipedrive merge webhook has no merged record id, skipping")
            return WebhookProcessingResult.skipped("Missing merged entity id", event)
        merged_id = str(merged_raw)
        if merged_id == surviving_id:
            return WebhookProcessingResult.skipped("Merged and surviving ids are identical", event)

        upsert = None
        if current:
            upsert = await self._store_call(
                "upsert", event, self.store.upsert, entity_type, surviving_id, current
            )
        migration = await self._migrate(event, entity_type, merged_id, surviving_id)
        deleted = await self._store_call("delete", event, self.store.delete, entity_type, merged_id)

        changed = bool(upsert and (upsert.created or upsert.changed))
        if deleted.deleted_count > 0 or migration.touched > 0 or changed:
            await self.event_bus.publish(
                PipedriveEntityMerged(
                    entity_type=entity_type,
                    entity_id=surviving_id,
                    merged_id=merged_id,
                    migrated_relations=migration.migrated,
                    strategy=self.settings.merge_detection.strategy.value,
                    metadata={
                        **self._event_metadata(event),
                        "deleted_count": deleted.deleted_count,
                        "relation_conflicts": migration.conflicts,
                        "relation_errors": migration.errors,
                    },
                )
            )
            outcome = "merged"
        else:
            logger.info("Pipedrive merge replay changed nothing", is_retry=event.is_retry)
            outcome = "unchanged"

        return WebhookProcessingResult(
            processed=True,
            action=outcome,
            entity_type=entity_type.value,
            object_id=surviving_id,
            details={
                "merged_id": merged_id,
                "surviving_id": surviving_id,
                "migrated_relations": migration.migrated,
                "deleted_count": deleted.deleted_count,
            },
        )

    async def _migrate(
        self,
        event: WebhookEvent,
        entity_type: PipedriveEntityType,
        merged_id: str,
        surviving_id: str,
    ) -> MigrationResult:
        if not self.settings.merge_detection.auto_migrate_relations:
            return MigrationResult()
        result = await self._store_call(
            "migrate_relations",
            event,
            self.store.migrate_relations,
            entity_type,
            merged_id,
            surviving_id,
            self.settings.merge_detection.strategy,
        )
        logger.info(
            "Migrated Pipedrive entity relations",
            merged_id=merged_id,
            surviving_id=surviving_id,
            migrated=result.migrated,
            skipped=result.skipped,
            conflicts=result.conflicts,
            errors=result.errors,
        )
        return result

    async def _apply_inferred_merge(
        self, inference: MergeInference, event: WebhookEvent
    ) -> dict[str, Any]:
        migration = await self._migrate(
            event, inference.entity_type, inference.merged_id, inference.surviving_id
        )
        await self.event_bus.publish(
            PipedriveEntityMerged(
                entity_type=inference.entity_type,
                entity_id=inference.surviving_id,
                merged_id=inference.merged_id,
                migrated_relations=migration.migrated,
                strategy=self.settings.merge_detection.strategy.value,
                source="webhook_heuristic",
                metadata={
                    "detection_method": "heuristic",
                    "detection": inference.detection,
                    "overlap": inference.overlap,
                    "correlation_id": inference.correlation_id,
                },
            )
        )
        return {
            "merged_id": inference.merged_id,
            "surviving_id": inference.surviving_id,
            "migrated_relations": migration.migrated,
        }
