"""Tests for heuristic Pipedrive merge detection."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from connectors.pipedrive.pipedrive_merge_detection import (
    MergeTrackingEntry,
    PipedriveMergeDetectionService,
    RedisMergeTrackingStore,
    compute_field_overlap,
)
from connectors.pipedrive.pipedrive_models import (
    PipedriveEntityType,
    WebhookAction,
    WebhookEvent,
    WebhookVersion,
)
from connectors.pipedrive.pipedrive_settings import MergeDetectionSettings


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


PERSON = {"name": "Ada Lovelace", "email": "ada@example.com", "phone": "+44 20 7946 0000", "org_id": 5}


def make_event(action, object_id, data=None, previous=None, **meta):
    return WebhookEvent(
        version=WebhookVersion.V1,
        action=action,
        raw_action=action.value,
        object_type="person",
        entity_type=PipedriveEntityType.PERSONS,
        object_id=str(object_id),
        current=data,
        previous=previous,
        meta={"timestamp": object_id, **meta},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return PipedriveMergeDetectionService(MergeDetectionSettings(window_seconds=30), clock=clock)


class TestFieldOverlap:
    def test_identical_records(self):
        assert compute_field_overlap(PERSON, dict(PERSON)) == 1.0

    def test_ids_and_timestamps_ignored(self):
        reference = {**PERSON, "id": 1, "update_time": "2024-01-01"}
        candidate = {**PERSON, "id": 2, "update_time": "2024-02-02"}
        assert compute_field_overlap(reference, candidate) == 1.0

    def test_partial_overlap(self):
        candidate = {**PERSON, "phone": None, "org_id": 9}
        assert compute_field_overlap(PERSON, candidate) == pytest.approx(2 / 3)

    def test_empty_reference(self):
        assert compute_field_overlap({"id": 1, "name": None}, PERSON) == 0.0

    def test_shared_foreign_keys_do_not_count(self):
        reference = {"title": "Acme renewal", "org_id": 5, "pipeline_id": 1, "status": "open"}
        candidate = {"title": "Globex expansion", "org_id": 5, "pipeline_id": 1, "status": "open"}
        assert compute_field_overlap(reference, candidate) == 0.0

    def test_email_lists_match_on_any_value(self):
        reference = {"name": "Ada Lovelace", "email": [{"value": "ADA@example.com", "primary": True}]}
        candidate = {
            "name": " ada lovelace ",
            "email": [{"value": "ada@example.com"}, {"value": "ada@work.example.com"}],
        }
        assert compute_field_overlap(reference, candidate) == 1.0


class TestMergeDetection:
    @pytest.mark.asyncio
    async def test_delete_then_create_within_window(self, service, clock):
        deleted = make_event(WebhookAction.DELETE, 2, previous={**PERSON, "id": 2})
        assert await service.track_event(deleted) is None

        clock.advance(5)
        created = make_event(WebhookAction.CREATE, 1, data={**PERSON, "id": 1})
        inference = await service.track_event(created)

        assert inference is not None
        assert inference.merged_id == "2"
        assert inference.surviving_id == "1"
        assert inference.detection == "field_overlap"
        assert inference.overlap == 1.0
        assert await service.infer_merge(PipedriveEntityType.PERSONS, "2") == "1"

    @pytest.mark.asyncio
    async def test_delete_then_create_outside_window(self, service, clock):
        await service.track_event(make_event(WebhookAction.DELETE, 2, previous=PERSON))

        clock.advance(31)
        inference = await service.track_event(make_event(WebhookAction.CREATE, 1, data=PERSON))

        assert inference is None
        assert await service.infer_merge(PipedriveEntityType.PERSONS, "2") is None

    @pytest.mark.asyncio
    async def test_update_then_delete(self, service, clock):
        """Pipedrive often sends the survivor's update before the delete."""
        await service.track_event(make_event(WebhookAction.UPDATE, 1, data=PERSON))

        clock.advance(2)
        inference = await service.track_event(make_event(WebhookAction.DELETE, 2, previous=PERSON))

        assert inference is not None
        assert (inference.merged_id, inference.surviving_id) == ("2", "1")

    @pytest.mark.asyncio
    async def test_low_overlap_is_not_a_merge(self, service, clock):
        await service.track_event(make_event(WebhookAction.DELETE, 2, previous=PERSON))

        clock.advance(1)
        other = {"name": "Grace Hopper", "email": "grace@example.com", "phone": "+1 555", "org_id": 5}
        inference = await service.track_event(make_event(WebhookAction.CREATE, 1, data=other))

        assert inference is None

    @pytest.mark.asyncio
    async def test_matching_correlation_id_wins_without_overlap(self, service, clock):
        await service.track_event(
            make_event(WebhookAction.DELETE, 2, previous={"name": "x"}, correlation_id="c-1")
        )

        clock.advance(1)
        inference = await service.track_event(
            make_event(WebhookAction.UPDATE, 1, data={"name": "y"}, correlation_id="c-1")
        )

        assert inference is not None
        assert inference.detection == "correlation_id"
        assert inference.correlation_id == "c-1"

    @pytest.mark.asyncio
    async def test_conflicting_correlation_ids_never_match(self, service, clock):
        await service.track_event(
            make_event(WebhookAction.DELETE, 2, previous=PERSON, correlation_id="c-1")
        )

        clock.advance(1)
        inference = await service.track_event(
            make_event(WebhookAction.CREATE, 1, data=PERSON, correlation_id="c-2")
        )

        assert inference is None

    @pytest.mark.asyncio
    async def test_one_sided_correlation_id_never_matches(self, service, clock):
        await service.track_event(
            make_event(WebhookAction.DELETE, 2, previous=PERSON, correlation_id="c-1")
        )

        clock.advance(1)
        inference = await service.track_event(make_event(WebhookAction.CREATE, 1, data=PERSON))

        assert inference is None

    @pytest.mark.asyncio
    async def test_unrelated_deals_in_same_pipeline_are_not_merged(self, service, clock):
        shared = {
            "org_id": 5,
            "pipeline_id": 1,
            "stage_id": 2,
            "user_id": 7,
            "currency": "USD",
            "status": "open",
            "visible_to": "3",
        }

        def deal_event(action, object_id, **fields):
            return WebhookEvent(
                version=WebhookVersion.V1,
                action=action,
                raw_action=action.value,
                object_type="deal",
                entity_type=PipedriveEntityType.DEALS,
                object_id=str(object_id),
                **fields,
                meta={"timestamp": object_id},
            )

        await service.track_event(
            deal_event(WebhookAction.DELETE, 2, previous={**shared, "title": "Acme renewal"})
        )

        clock.advance(1)
        inference = await service.track_event(
            deal_event(WebhookAction.UPDATE, 1, current={**shared, "title": "Globex expansion"})
        )

        assert inference is None
        assert await service.infer_merge(PipedriveEntityType.DEALS, "2") is None

    @pytest.mark.asyncio
    async def test_other_entity_type_ignored(self, service, clock):
        await service.track_event(make_event(WebhookAction.DELETE, 2, previous=PERSON))

        clock.advance(1)
        deal = WebhookEvent(
            version=WebhookVersion.V1,
            action=WebhookAction.CREATE,
            raw_action="added",
            object_type="deal",
            entity_type=PipedriveEntityType.DEALS,
            object_id="1",
            current=PERSON,
        )

        assert await service.track_event(deal) is None

    @pytest.mark.asyncio
    async def test_same_id_is_not_a_merge(self, service, clock):
        await service.track_event(make_event(WebhookAction.DELETE, 1, previous=PERSON))

        clock.advance(1)
        assert await service.track_event(make_event(WebhookAction.CREATE, 1, data=PERSON)) is None

    @pytest.mark.asyncio
    async def test_candidate_consumed_once(self, service, clock):
        await service.track_event(make_event(WebhookAction.DELETE, 2, previous=PERSON))
        clock.advance(1)
        assert await service.track_event(make_event(WebhookAction.UPDATE, 1, data=PERSON))

        clock.advance(1)
        assert await service.track_event(make_event(WebhookAction.UPDATE, 3, data=PERSON)) is None

    @pytest.mark.asyncio
    async def test_disabled(self, clock):
        service = PipedriveMergeDetectionService(
            MergeDetectionSettings(enabled=False), clock=clock
        )
        await service.track_event(make_event(WebhookAction.DELETE, 2, previous=PERSON))

        assert await service.track_event(make_event(WebhookAction.CREATE, 1, data=PERSON)) is None
        assert await service.infer_merge(PipedriveEntityType.PERSONS, "2") is None

    @pytest.mark.asyncio
    async def test_explicit_merge_events_not_tracked(self, service):
        merge = make_event(WebhookAction.MERGE, 1, data=PERSON, previous={"id": 2})
        assert await service.track_event(merge) is None


class YieldingPipeline:
    def __init__(self, redis_client):
        self.redis_client = redis_client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __getattr__(self, name):
        return lambda *args, **kwargs: self.commands.append((name, args))

    async def execute(self):
        await asyncio.sleep(0)
        results = [getattr(self.redis_client, f"_{name}")(*args) for name, args in self.commands]
        self.commands = []
        return results


class YieldingRedis:
    """Sorted-set subset of Redis that yields to the event loop on every round trip."""

    def __init__(self):
        self.sorted_sets: dict[str, dict[str, float]] = {}
        self.values: dict[str, str] = {}

    def pipeline(self, transaction=True):
        return YieldingPipeline(self)

    def _zadd(self, key, mapping):
        self.sorted_sets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def _expire(self, key, seconds):
        return True

    def _zremrangebyscore(self, key, low, high):
        cutoff = float(high.lstrip("("))
        members = self.sorted_sets.get(key, {})
        expired = [member for member, score in members.items() if score < cutoff]
        for member in expired:
            del members[member]
        return len(expired)

    def _zrangebyscore(self, key, low, high):
        members = self.sorted_sets.get(key, {})
        return [member for member, score in sorted(members.items(), key=lambda m: m[1]) if score >= low]

    async def zrem(self, key, member):
        await asyncio.sleep(0)
        return 1 if self.sorted_sets.get(key, {}).pop(member, None) is not None else 0

    async def set(self, key, value, ex=None):
        await asyncio.sleep(0)
        self.values[key] = value

    async def get(self, key):
        await asyncio.sleep(0)
        return self.values.get(key)


class TestConcurrentClaims:
    @pytest.mark.asyncio
    async def test_two_survivors_race_for_one_delete(self, clock):
        store = RedisMergeTrackingStore(YieldingRedis(), window_seconds=30)
        service = PipedriveMergeDetectionService(
            MergeDetectionSettings(window_seconds=30), tracking_store=store, clock=clock
        )
        await service.track_event(make_event(WebhookAction.DELETE, 10, previous=PERSON))

        clock.advance(1)
        results = await asyncio.gather(
            service.track_event(make_event(WebhookAction.UPDATE, 11, data=PERSON)),
            service.track_event(make_event(WebhookAction.UPDATE, 12, data=PERSON)),
        )

        inferences = [result for result in results if result is not None]
        assert len(inferences) == 1
        assert inferences[0].merged_id == "10"
        assert await service.infer_merge(PipedriveEntityType.PERSONS, "10") == inferences[0].surviving_id

    @pytest.mark.asyncio
    async def test_in_memory_entry_claimed_once(self, clock):
        service = PipedriveMergeDetectionService(MergeDetectionSettings(window_seconds=30), clock=clock)
        await service.track_event(make_event(WebhookAction.DELETE, 10, previous=PERSON))
        (entry,) = await service.tracking_store.recent(PipedriveEntityType.PERSONS, clock())

        claims = await asyncio.gather(
            service.tracking_store.claim(entry), service.tracking_store.claim(entry)
        )

        assert sorted(claims) == [False, True]


class TestRedisMergeTrackingStore:
    def make_client(self, pipeline_results):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=pipeline_results)
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=False)
        client = MagicMock()
        client.pipeline = MagicMock(return_value=pipe)
        client.zrem = AsyncMock(return_value=1)
        client.set = AsyncMock()
        client.get = AsyncMock(return_value="1")
        return client, pipe

    @pytest.mark.asyncio
    async def test_add_scores_by_timestamp(self):
        client, pipe = self.make_client([1, True])
        store = RedisMergeTrackingStore(client, window_seconds=30)
        entry = MergeTrackingEntry(
            entity_type=PipedriveEntityType.PERSONS,
            entity_id="2",
            timestamp=100.0,
            event_fingerprint="abc",
            action="delete",
            data=PERSON,
        )

        await store.add(entry)

        pipe.zadd.assert_called_once_with(
            "pipedrive:merge_detection:persons", {entry.to_json(): 100.0}
        )
        pipe.expire.assert_called_once_with("pipedrive:merge_detection:persons", 30)

    @pytest.mark.asyncio
    async def test_recent_trims_and_decodes(self):
        entry = MergeTrackingEntry(
            entity_type=PipedriveEntityType.PERSONS,
            entity_id="2",
            timestamp=100.0,
            event_fingerprint="abc",
            action="delete",
        )
        client, pipe = self.make_client([0, [entry.to_json()]])
        store = RedisMergeTrackingStore(client, window_seconds=30)

        entries = await store.recent(PipedriveEntityType.PERSONS, now=110.0)

        assert entries == [entry]
        pipe.zremrangebyscore.assert_called_once_with(
            "pipedrive:merge_detection:persons", "-inf", "(80.0"
        )
        pipe.zrangebyscore.assert_called_once_with("pipedrive:merge_detection:persons", 80.0, "+inf")

    @pytest.mark.asyncio
    async def test_claim_lost_to_another_replica(self):
        client, _ = self.make_client([])
        client.zrem = AsyncMock(return_value=0)
        store = RedisMergeTrackingStore(client, window_seconds=30)
        entry = MergeTrackingEntry(
            entity_type=PipedriveEntityType.PERSONS,
            entity_id="2",
            timestamp=100.0,
            event_fingerprint="abc",
            action="delete",
        )

        assert await store.claim(entry) is False
        client.zrem.assert_awaited_once_with("pipedrive:merge_detection:persons", entry.to_json())

    @pytest.mark.asyncio
    async def test_inference_roundtrip_keys(self):
        client, _ = self.make_client([])
        store = RedisMergeTrackingStore(client, window_seconds=30)

        surviving = await store.get_inference(PipedriveEntityType.DEALS, "9")

        assert surviving == "1"
        client.get.assert_awaited_once_with("pipedrive:merge_detection:inference:deals:9")

    def test_entry_json_is_stable(self):
        entry = MergeTrackingEntry(
            entity_type=PipedriveEntityType.DEALS,
            entity_id="9",
            timestamp=1.5,
            event_fingerprint="f",
            action="upsert",
            correlation_id="c",
            data={"b": 1, "a": 2},
        )

        assert json.loads(entry.to_json())["entity_type"] == "deals"
        assert MergeTrackingEntry.from_json(entry.to_json()) == entry
