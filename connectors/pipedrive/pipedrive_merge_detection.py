"""
Heuristic merge detection for Pipedrive webhooks.

Pipedrive does not always send a `merged` event. A merge of record B into
record A usually shows up as an update of A plus a delete of B, in either
order, a few seconds apart. This module remembers recent deletes and upserts
per entity type and pairs them up:

- both events carry the same `meta.correlation_id`, or
- neither event carries a correlation id and the deleted record's identifying
  fields (name, title, email, phone, ...) mostly reappear on the upserted one.

Entries live for the detection window only. A matched entry is claimed
atomically before the inference is reported, so one delete is paired with at
most one survivor even across replicas. Two tracking backends are available:
an in-process TTL table and Redis sorted sets (one per entity type) for
deployments with several gatekeeper replicas.
"""

import json
import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import redis.asyncio as redis

from connectors.pipedrive.pipedrive_models import (
    PipedriveEntityType,
    WebhookAction,
    WebhookEvent,
)
from connectors.pipedrive.pipedrive_settings import MergeDetectionSettings
from src.utils.logging import get_logger
from src.utils.ttl_cache import TTLCache

logger = get_logger(__name__)

# Fields that name a real-world record. Foreign keys, enums and amounts are shared
# by unrelated records of one pipeline or org and never count towards overlap.
IDENTIFYING_FIELDS = frozenset(
    {
        "name",
        "title",
        "first_name",
        "last_name",
        "email",
        "phone",
        "address",
        "code",
        "subject",
    }
)

DELETE = "delete"
UPSERT = "upsert"


@dataclass(frozen=True)
class MergeTrackingEntry:
    entity_type: PipedriveEntityType
    entity_id: str
    timestamp: float
    event_fingerprint: str
    action: str
    correlation_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "MergeTrackingEntry":
        values = json.loads(raw)
        values["entity_type"] = PipedriveEntityType(values["entity_type"])
        return cls(**values)


@dataclass(frozen=True)
class MergeInference:
    entity_type: PipedriveEntityType
    merged_id: str
    surviving_id: str
    detection: str
    overlap: float | None = None
    correlation_id: str | None = None


def _normalized_values(value: Any) -> frozenset[str]:
    """Comparable form of an identifying field.

    Pipedrive sends emails and phones as `[{"value": ..., "primary": ...}]`; any
    shared value counts as a match.
    """
    items = value if isinstance(value, list) else [value]
    normalized = set()
    for item in items:
        if isinstance(item, dict):
            item = item.get("value")
        if item is None:
            continue
        text = str(item).strip().casefold()
        if text:
            normalized.add(text)
    return frozenset(normalized)


def compute_field_overlap(reference: dict[str, Any], candidate: dict[str, Any]) -> float:
    """Share of the reference record's identifying fields that the candidate repeats."""
    comparable = {
        key: values
        for key, values in (
            (key, _normalized_values(reference[key]))
            for key in IDENTIFYING_FIELDS
            if key in reference
        )
        if values
    }
    if not comparable:
        return 0.0
    matches = sum(
        1 for key, values in comparable.items() if values & _normalized_values(candidate.get(key))
    )
    return matches / len(comparable)


class MergeTrackingStore(Protocol):
    async def add(self, entry: MergeTrackingEntry) -> None: ...

    async def recent(self, entity_type: PipedriveEntityType, now: float) -> list[MergeTrackingEntry]: ...

    async def claim(self, entry: MergeTrackingEntry) -> bool:
        """Remove a tracked entry; True only for the one caller that removed it."""
        ...

    async def remember_inference(self, inference: MergeInference, now: float) -> None: ...

    async def get_inference(self, entity_type: PipedriveEntityType, merged_id: str) -> str | None: ...


class InMemoryMergeTrackingStore:
    """Single-process tracking table; expired entries are purged on read."""

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.time):
        self.entries = TTLCache(ttl=window_seconds, clock=clock)
        self.inferences = TTLCache(ttl=window_seconds, clock=clock)

    @staticmethod
    def _key(entry: MergeTrackingEntry) -> tuple:
        return (entry.entity_type, entry.entity_id, entry.action, entry.event_fingerprint)

    async def add(self, entry: MergeTrackingEntry) -> None:
        await self.entries.set(self._key(entry), entry, timestamp=entry.timestamp)

    async def recent(self, entity_type: PipedriveEntityType, now: float) -> list[MergeTrackingEntry]:
        del now  # the cache clock already bounds entries to the window
        return [entry for _, entry in await self.entries.items() if entry.entity_type == entity_type]

    async def claim(self, entry: MergeTrackingEntry) -> bool:
        return await self.entries.pop(self._key(entry)) is not None

    async def remember_inference(self, inference: MergeInference, now: float) -> None:
        await self.inferences.set(
            (inference.entity_type, inference.merged_id), inference.surviving_id, timestamp=now
        )

    async def get_inference(self, entity_type: PipedriveEntityType, merged_id: str) -> str | None:
        return await self.inferences.get((entity_type, merged_id))


class RedisMergeTrackingStore:
    """Redis sorted set per entity type, scored by event timestamp."""

    def __init__(
        self,
        client: redis.Redis,
        window_seconds: float,
        key_prefix: str = "pipedrive:merge_detection",
    ):
        self.client = client
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._ttl = max(1, math.ceil(window_seconds))

    def _entries_key(self, entity_type: PipedriveEntityType) -> str:
        return f"{self.key_prefix}:{entity_type.value}"

    def _inference_key(self, entity_type: PipedriveEntityType, merged_id: str) -> str:
        return f"{self.key_prefix}:inference:{entity_type.value}:{merged_id}"

    async def add(self, entry: MergeTrackingEntry) -> None:
        key = self._entries_key(entry.entity_type)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {entry.to_json(): entry.timestamp})
            pipe.expire(key, self._ttl)
            await pipe.execute()

    async def recent(self, entity_type: PipedriveEntityType, now: float) -> list[MergeTrackingEntry]:
        key = self._entries_key(entity_type)
        cutoff = now - self.window_seconds
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", f"({cutoff}")
            pipe.zrangebyscore(key, cutoff, "+inf")
            _, members = await pipe.execute()
        return [MergeTrackingEntry.from_json(member) for member in members]

    async def claim(self, entry: MergeTrackingEntry) -> bool:
        removed = await self.client.zrem(self._entries_key(entry.entity_type), entry.to_json())
        return removed == 1

    async def remember_inference(self, inference: MergeInference, now: float) -> None:
        del now
        await self.client.set(
            self._inference_key(inference.entity_type, inference.merged_id),
            inference.surviving_id,
            ex=self._ttl,
        )

    async def get_inference(self, entity_type: PipedriveEntityType, merged_id: str) -> str | None:
        return await self.client.get(self._inference_key(entity_type, merged_id))


class PipedriveMergeDetectionService:
    """Pairs deletes with upserts of the same entity type to infer merges."""

    def __init__(
        self,
        settings: MergeDetectionSettings,
        tracking_store: MergeTrackingStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.clock = clock
        self.tracking_store = tracking_store or InMemoryMergeTrackingStore(
            settings.window_seconds, clock=clock
        )

    async def track_event(
        self, event: WebhookEvent, data: dict[str, Any] | None = None
    ) -> MergeInference | None:
        """Record a processed delete/create/update and return a merge it completes, if any.

        Args:
            event: The normalized webhook
            data: Last known fields of the record; defaults to `previous` for deletes
                and `current` for upserts
        """
        if not self.settings.enabled or event.entity_type is None:
            return None
        if event.action is WebhookAction.DELETE:
            kind, opposite = DELETE, UPSERT
            data = data if data is not None else (event.previous or {})
        elif event.action in (WebhookAction.CREATE, WebhookAction.UPDATE):
            kind, opposite = UPSERT, DELETE
            data = data if data is not None else (event.current or {})
        else:
            return None

        now = self.clock()
        entry = MergeTrackingEntry(
            entity_type=event.entity_type,
            entity_id=event.object_id,
            timestamp=now,
            event_fingerprint=event.fingerprint,
            action=kind,
            correlation_id=event.correlation_id,
            data=dict(data),
        )

        candidates = [
            candidate
            for candidate in await self.tracking_store.recent(event.entity_type, now)
            if candidate.action == opposite
            and candidate.entity_id != entry.entity_id
            and abs(now - candidate.timestamp) <= self.settings.window_seconds
        ]
        is_delete = kind == DELETE
        matches: list[tuple[MergeInference, MergeTrackingEntry]] = []
        for candidate in candidates:
            deleted, surviving = (
                (entry, candidate) if is_delete else (candidate, entry)
            )
            found = self._match(deleted, surviving)
            if found is not None:
                matches.append((found, candidate))
        matches.sort(key=lambda match: self._rank(match[0]), reverse=True)

        inference: MergeInference | None = None
        for found, candidate in matches:
            # Another request or replica may have paired this entry in the meantime
            if await self.tracking_store.claim(candidate):
                inference = found
                break

        if inference is not None:
            await self.tracking_store.remember_inference(inference, now)
            logger.info(
                "Detected Pipedrive merge via heuristic analysis",
                entity_type=inference.entity_type.value,
                merged_id=inference.merged_id,
                surviving_id=inference.surviving_id,
                detection=inference.detection,
                overlap=inference.overlap,
                correlation_id=inference.correlation_id,
            )
            if kind == UPSERT:
                await self.tracking_store.add(entry)
            return inference

        await self.tracking_store.add(entry)
        return None

    async def infer_merge(self, entity_type: PipedriveEntityType, entity_id: str) -> str | None:
        """Surviving id for a record recently detected as merged away, if any."""
        if not self.settings.enabled:
            return None
        return await self.tracking_store.get_inference(entity_type, str(entity_id))

    def _match(
        self, deleted: MergeTrackingEntry, surviving: MergeTrackingEntry
    ) -> MergeInference | None:
        if deleted.correlation_id or surviving.correlation_id:
            if deleted.correlation_id != surviving.correlation_id:
                return None
            return MergeInference(
                entity_type=deleted.entity_type,
                merged_id=deleted.entity_id,
                surviving_id=surviving.entity_id,
                detection="correlation_id",
                correlation_id=deleted.correlation_id,
            )

        overlap = compute_field_overlap(deleted.data, surviving.data)
        if overlap < self.settings.overlap_threshold:
            return None
        return MergeInference(
            entity_type=deleted.entity_type,
            merged_id=deleted.entity_id,
            surviving_id=surviving.entity_id,
            detection="field_overlap",
            overlap=overlap,
        )

    @staticmethod
    def _rank(inference: MergeInference) -> tuple[bool, float]:
        return (inference.detection == "correlation_id", inference.overlap or 0.0)
