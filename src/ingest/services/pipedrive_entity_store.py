"""
Local copies of Pipedrive entities and the links that point at them.

The webhook processor only talks to the PipedriveEntityStore protocol. Two
implementations ship: an in-memory store (single process, tests, local dev)
and a PostgreSQL store on asyncpg.

Links associate a local record of the host application ("linkable", e.g. an
order row) with a Pipedrive entity. When Pipedrive merges two entities the
links of the merged one are migrated to the survivor.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import asyncpg

from connectors.pipedrive.pipedrive_models import PipedriveEntityType
from connectors.pipedrive.pipedrive_settings import MergeStrategy
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class UpsertResult:
    created: bool
    changed: bool
    previous_data: dict[str, Any] | None = None


@dataclass(frozen=True)
class DeleteResult:
    deleted_count: int
    previous_data: dict[str, Any] | None = None


@dataclass(frozen=True)
class MigrationResult:
    migrated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    @property
    def touched(self) -> int:
        return self.migrated + self.skipped


@dataclass
class EntityLink:
    entity_type: PipedriveEntityType
    entity_id: str
    linkable_type: str
    linkable_id: str
    is_primary: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class PipedriveEntityStore(Protocol):
    async def upsert(
        self, entity_type: PipedriveEntityType, entity_id: str, data: dict[str, Any]
    ) -> UpsertResult: ...

    async def delete(self, entity_type: PipedriveEntityType, entity_id: str) -> DeleteResult: ...

    async def get(self, entity_type: PipedriveEntityType, entity_id: str) -> dict[str, Any] | None: ...

    async def add_link(self, link: EntityLink) -> None: ...

    async def get_links(
        self, entity_type: PipedriveEntityType, entity_id: str
    ) -> list[EntityLink]: ...

    async def migrate_relations(
        self,
        entity_type: PipedriveEntityType,
        merged_id: str,
        surviving_id: str,
        strategy: MergeStrategy,
    ) -> MigrationResult: ...


def _migration_metadata(metadata: dict[str, Any], merged_id: str) -> dict[str, Any]:
    return {
        **metadata,
        "migrated_from_id": merged_id,
        "migrated_at": datetime.now(UTC).isoformat(),
    }


class InMemoryPipedriveEntityStore:
    """Dict-backed store. One lock serializes all writes."""

    def __init__(self) -> None:
        self._entities: dict[tuple[PipedriveEntityType, str], dict[str, Any]] = {}
        self._links: list[EntityLink] = []
        self._lock = asyncio.Lock()

    async def upsert(
        self, entity_type: PipedriveEntityType, entity_id: str, data: dict[str, Any]
    ) -> UpsertResult:
        key = (entity_type, str(entity_id))
        async with self._lock:
            existing = self._entities.get(key)
            self._entities[key] = dict(data)
            if existing is None:
                return UpsertResult(created=True, changed=True)
            return UpsertResult(created=False, changed=existing != data, previous_data=existing)

    async def delete(self, entity_type: PipedriveEntityType, entity_id: str) -> DeleteResult:
        async with self._lock:
            existing = self._entities.pop((entity_type, str(entity_id)), None)
            return DeleteResult(deleted_count=0 if existing is None else 1, previous_data=existing)

    async def get(self, entity_type: PipedriveEntityType, entity_id: str) -> dict[str, Any] | None:
        data = self._entities.get((entity_type, str(entity_id)))
        return dict(data) if data is not None else None

    async def count(self, entity_type: PipedriveEntityType | None = None) -> int:
        if entity_type is None:
            return len(self._entities)
        return sum(1 for kind, _ in self._entities if kind == entity_type)

    async def add_link(self, link: EntityLink) -> None:
        async with self._lock:
            self._links = [
                existing
                for existing in self._links
                if not self._same_link(existing, link.entity_type, link.entity_id, link)
            ]
            self._links.append(link)

    async def get_links(
        self, entity_type: PipedriveEntityType, entity_id: str
    ) -> list[EntityLink]:
        return [
            link
            for link in self._links
            if link.entity_type == entity_type and link.entity_id == str(entity_id)
        ]

    async def migrate_relations(
        self,
        entity_type: PipedriveEntityType,
        merged_id: str,
        surviving_id: str,
        strategy: MergeStrategy,
    ) -> MigrationResult:
        migrated = skipped = conflicts = 0
        async with self._lock:
            relations = [
                link
                for link in self._links
                if link.entity_type == entity_type and link.entity_id == str(merged_id)
            ]
            for relation in relations:
                existing = next(
                    (
                        link
                        for link in self._links
                        if self._same_link(link, entity_type, str(surviving_id), relation)
                    ),
                    None,
                )
                if existing is None:
                    relation.entity_id = str(surviving_id)
                    relation.metadata = _migration_metadata(relation.metadata, merged_id)
                    migrated += 1
                    continue

                conflicts += 1
                if strategy is MergeStrategy.KEEP_SURVIVING:
                    self._links.remove(relation)
                    skipped += 1
                elif strategy is MergeStrategy.KEEP_MERGED:
                    self._links.remove(existing)
                    relation.entity_id = str(surviving_id)
                    relation.metadata = _migration_metadata(relation.metadata, merged_id)
                    migrated += 1
                else:
                    relation.entity_id = str(surviving_id)
                    relation.is_primary = False
                    relation.metadata = _migration_metadata(relation.metadata, merged_id)
                    migrated += 1

        return MigrationResult(migrated=migrated, skipped=skipped, conflicts=conflicts)

    @staticmethod
    def _same_link(
        link: EntityLink, entity_type: PipedriveEntityType, entity_id: str, other: EntityLink
    ) -> bool:
        return (
            link.entity_type == entity_type
            and link.entity_id == entity_id
            and link.linkable_type == other.linkable_type
            and link.linkable_id == other.linkable_id
        )


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipedrive_entities (
    entity_type TEXT NOT NULL,
    pipedrive_id TEXT NOT NULL,
    data JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (entity_type, pipedrive_id)
);

CREATE TABLE IF NOT EXISTS pipedrive_entity_links (
    id BIGSERIAL PRIMARY KEY,
    entity_type TEXT NOT NULL,
    pipedrive_id TEXT NOT NULL,
    linkable_type TEXT NOT NULL,
    linkable_id TEXT NOT NULL,
    is_primary BOOLEAN NOT NULL DEFAULT FALSE,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS pipedrive_entity_links_entity_idx
    ON pipedrive_entity_links (entity_type, pipedrive_id);
"""


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class PostgresPipedriveEntityStore:
    """asyncpg-backed store. Rows are locked with SELECT ... FOR UPDATE inside a transaction."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def ensure_schema(self) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def upsert(
        self, entity_type: PipedriveEntityType, entity_id: str, data: dict[str, Any]
    ) -> UpsertResult:
        payload = json.dumps(data, default=str)
        async with self.db_pool.acquire() as conn, conn.transaction():
            inserted = await conn.fetchval(
                """
                INSERT INTO pipedrive_entities (entity_type, pipedrive_id, data)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (entity_type, pipedrive_id) DO NOTHING
                RETURNING pipedrive_id
                """,
                entity_type.value,
                str(entity_id),
                payload,
            )
            if inserted is not None:
                return UpsertResult(created=True, changed=True)

            row = await conn.fetchrow(
                """
                SELECT data FROM pipedrive_entities
                WHERE entity_type = $1 AND pipedrive_id = $2
                FOR UPDATE
                """,
                entity_type.value,
                str(entity_id),
            )
            previous = _load_json(row["data"]) if row else None
            # Compare after a JSON round trip so non-JSON types match what was stored
            if previous == json.loads(payload):
                return UpsertResult(created=False, changed=False, previous_data=previous)

            await conn.execute(
                """
                UPDATE pipedrive_entities
                SET data = $3::jsonb, updated_at = NOW()
                WHERE entity_type = $1 AND pipedrive_id = $2
                """,
                entity_type.value,
                str(entity_id),
                payload,
            )
            return UpsertResult(created=False, changed=True, previous_data=previous)

    async def delete(self, entity_type: PipedriveEntityType, entity_id: str) -> DeleteResult:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                DELETE FROM pipedrive_entities
                WHERE entity_type = $1 AND pipedrive_id = $2
                RETURNING data
                """,
                entity_type.value,
                str(entity_id),
            )
        if row is None:
            return DeleteResult(deleted_count=0)
        return DeleteResult(deleted_count=1, previous_data=_load_json(row["data"]))

    async def get(self, entity_type: PipedriveEntityType, entity_id: str) -> dict[str, Any] | None:
        async with self.db_pool.acquire() as conn:
            data = await conn.fetchval(
                "SELECT data FROM pipedrive_entities WHERE entity_type = $1 AND pipedrive_id = $2",
                entity_type.value,
                str(entity_id),
            )
        return _load_json(data) if data is not None else None

    async def add_link(self, link: EntityLink) -> None:
        async with self.db_pool.acquire() as conn, conn.transaction():
            await conn.execute(
                """
                DELETE FROM pipedrive_entity_links
                WHERE entity_type = $1 AND pipedrive_id = $2
                  AND linkable_type = $3 AND linkable_id = $4
                """,
                link.entity_type.value,
                link.entity_id,
                link.linkable_type,
                link.linkable_id,
            )
            await conn.execute(
                """
                INSERT INTO pipedrive_entity_links
                    (entity_type, pipedrive_id, linkable_type, linkable_id, is_primary, metadata)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                """,
                link.entity_type.value,
                link.entity_id,
                link.linkable_type,
                link.linkable_id,
                link.is_primary,
                json.dumps(link.metadata, default=str),
            )

    async def get_links(
        self, entity_type: PipedriveEntityType, entity_id: str
    ) -> list[EntityLink]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT linkable_type, linkable_id, is_primary, metadata
                FROM pipedrive_entity_links
                WHERE entity_type = $1 AND pipedrive_id = $2
                ORDER BY id
                """,
                entity_type.value,
                str(entity_id),
            )
        return [
            EntityLink(
                entity_type=entity_type,
                entity_id=str(entity_id),
                linkable_type=row["linkable_type"],
                linkable_id=row["linkable_id"],
                is_primary=row["is_primary"],
                metadata=_load_json(row["metadata"]),
            )
            for row in rows
        ]

    async def migrate_relations(
        self,
        entity_type: PipedriveEntityType,
        merged_id: str,
        surviving_id: str,
        strategy: MergeStrategy,
    ) -> MigrationResult:
        migrated = skipped = conflicts = errors = 0
        marker = json.dumps(
            {"migrated_from_id": str(merged_id), "migrated_at": datetime.now(UTC).isoformat()}
        )
        async with self.db_pool.acquire() as conn, conn.transaction():
            relations = await conn.fetch(
                """
                SELECT id, linkable_type, linkable_id
                FROM pipedrive_entity_links
                WHERE entity_type = $1 AND pipedrive_id = $2
                FOR UPDATE
                """,
                entity_type.value,
                str(merged_id),
            )
            for relation in relations:
                try:
                    # Savepoint per link so one failure does not abort the batch
                    async with conn.transaction():
                        outcome = await self._migrate_link(
                            conn, entity_type, relation, str(surviving_id), strategy, marker
                        )
                except asyncpg.PostgresError as e:
                    logger.error(
                        "Failed to migrate Pipedrive entity link",
                        entity_type=entity_type.value,
                        merged_id=merged_id,
                        surviving_id=surviving_id,
                        link_id=relation["id"],
                        error=str(e),
                    )
                    errors += 1
                    continue
                conflict, result = outcome
                conflicts += int(conflict)
                if result == "skipped":
                    skipped += 1
                else:
                    migrated += 1
        return MigrationResult(
            migrated=migrated, skipped=skipped, conflicts=conflicts, errors=errors
        )

    @staticmethod
    async def _migrate_link(
        conn: asyncpg.Connection,
        entity_type: PipedriveEntityType,
        relation: asyncpg.Record,
        surviving_id: str,
        strategy: MergeStrategy,
        marker: str,
    ) -> tuple[bool, str]:
        """Move one link to the surviving entity. Returns (had_conflict, "migrated" | "skipped")."""
        existing_id = await conn.fetchval(
            """
            SELECT id FROM pipedrive_entity_links
            WHERE entity_type = $1 AND pipedrive_id = $2
              AND linkable_type = $3 AND linkable_id = $4
            """,
            entity_type.value,
            surviving_id,
            relation["linkable_type"],
            relation["linkable_id"],
        )
        conflict = existing_id is not None
        if conflict and strategy is MergeStrategy.KEEP_SURVIVING:
            await conn.execute("DELETE FROM pipedrive_entity_links WHERE id = $1", relation["id"])
            return conflict, "skipped"
        if conflict and strategy is MergeStrategy.KEEP_MERGED:
            await conn.execute("DELETE FROM pipedrive_entity_links WHERE id = $1", existing_id)

        await conn.execute(
            """
            UPDATE pipedrive_entity_links
            SET pipedrive_id = $2,
                is_primary = CASE WHEN $3 THEN FALSE ELSE is_primary END,
                metadata = metadata || $4::jsonb,
                updated_at = NOW()
            WHERE id = $1
            """,
            relation["id"],
            surviving_id,
            conflict and strategy is MergeStrategy.KEEP_BOTH,
            marker,
        )
        return conflict, "migrated"
