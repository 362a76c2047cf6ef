"""
In-process notifications for Pipedrive changes.

The webhook processor publishes one event object per persisted change. Host
code subscribes callbacks for the event classes it cares about:

```
bus = PipedriveEventBus()

async def on_merge(event: PipedriveEntityMerged) -> None:
    ...

bus.subscribe(PipedriveEntityMerged, on_merge)
```

A failing subscriber is logged and skipped; it never fails the webhook that
triggered it.
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from connectors.pipedrive.pipedrive_models import PipedriveEntityType
from src.utils.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PipedriveEvent:
    """Base class for all notifications."""

    occurred_at: datetime = field(default_factory=_utcnow, kw_only=True)


@dataclass(frozen=True)
class PipedriveWebhookReceived(PipedriveEvent):
    """A verified, well-formed webhook arrived and was handed to the processor."""

    version: str
    action: str
    object_type: str
    object_id: str
    attempt: int
    processed: bool
    result_action: str


@dataclass(frozen=True)
class PipedriveEntityEvent(PipedriveEvent):
    entity_type: PipedriveEntityType
    entity_id: str
    source: str = "webhook"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipedriveEntityCreated(PipedriveEntityEvent):
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipedriveEntityUpdated(PipedriveEntityEvent):
    data: dict[str, Any] = field(default_factory=dict)
    changes: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def changed_fields(self) -> list[str]:
        return list(self.changes)

    def has_changed(self, field_name: str) -> bool:
        return field_name in self.changes


@dataclass(frozen=True)
class PipedriveEntityDeleted(PipedriveEntityEvent):
    previous_data: dict[str, Any] | None = None
    deleted_count: int = 1


@dataclass(frozen=True)
class PipedriveEntityMerged(PipedriveEntityEvent):
    """Two records were merged; `entity_id` is the surviving one."""

    merged_id: str = ""
    migrated_relations: int = 0
    strategy: str = "keep_both"


EventListener = Callable[[Any], Awaitable[None] | None]


class PipedriveEventBus:
    """Dispatches events to subscribers registered per event class (subclasses included)."""

    def __init__(self) -> None:
        self._listeners: dict[type[PipedriveEvent], list[EventListener]] = defaultdict(list)

    def subscribe(self, event_type: type[PipedriveEvent], listener: EventListener) -> None:
        self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: type[PipedriveEvent], listener: EventListener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def listeners_for(self, event: PipedriveEvent) -> list[EventListener]:
        matched: list[EventListener] = []
        for event_type, listeners in self._listeners.items():
            if isinstance(event, event_type):
                matched.extend(listeners)
        return matched

    async def publish(self, event: PipedriveEvent) -> None:
        """Deliver an event to every matching listener, in subscription order."""
        for listener in self.listeners_for(event):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Pipedrive event listener failed",
                    event_type=type(event).__name__,
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(e),
                    exc_info=True,
                )
