"""Entity Store: canonical entities and their occurrences over SQLite.

The UNIQUE constraint on ``entities.slug`` is the concurrency control for
entity creation: a racing insert fails with EntitySlugCollision.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from .constants import MOST_MENTIONED_LIMIT
from .database import Database
from .errors import EntityNotFound, EntitySlugCollision, InvalidInput
from .models import Entity, EntityOccurrence, EntityType
from .timeutil import from_db_timestamp, to_db_timestamp

logger = logging.getLogger(__name__)

_UPDATABLE = {"canonical_name", "aliases", "linked_contact_id", "linked_project_id", "metadata"}


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        id=row["id"],
        type=row["type"],
        canonical_name=row["canonical_name"],
        slug=row["slug"],
        aliases=json.loads(row["aliases"]),
        linked_contact_id=row["linked_contact_id"],
        linked_project_id=row["linked_project_id"],
        metadata=json.loads(row["metadata"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


def _row_to_occurrence(row: sqlite3.Row) -> EntityOccurrence:
    return EntityOccurrence(
        id=row["id"],
        entity_id=row["entity_id"],
        memory_id=row["memory_id"],
        context=row["context"],
        created_at=from_db_timestamp(row["created_at"]),
    )


def _type_filter(entity_type: EntityType | None, params: list[Any], column: str = "type") -> str:
    if entity_type is None:
        return ""
    params.append(entity_type)
    return f" AND {column} = ?"


class EntityStore:
    """Async CRUD over entities and entity_occurrences."""

    def __init__(self, db: Database):
        self.db = db

    # ─────────────────────────────────────────────────────────────────────────
    # Entities
    # ─────────────────────────────────────────────────────────────────────────

    async def insert(self, entity: Entity) -> Entity:
        """Persist a new entity.

        Raises:
            EntitySlugCollision: If another entity already has this slug
        """
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO entities (
                        id, type, canonical_name, slug, aliases,
                        linked_contact_id, linked_project_id, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entity.id,
                        entity.type,
                        entity.canonical_name,
                        entity.slug,
                        json.dumps(entity.aliases),
                        entity.linked_contact_id,
                        entity.linked_project_id,
                        json.dumps(entity.metadata),
                        to_db_timestamp(entity.created_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "slug" in str(e):
                raise EntitySlugCollision(entity.slug) from e
            raise InvalidInput(f"Cannot insert entity {entity.canonical_name}: {e}") from e
        logger.debug(f"Created entity {entity.id} ({entity.type}) {entity.slug}")
        return entity

    async def update(self, entity_id: str, **fields: Any) -> Entity:
        """Overwrite the given fields and return the updated entity.

        Raises:
            InvalidInput: If a field is unknown or not updatable
            EntityNotFound: If no entity has this id
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise InvalidInput(f"Cannot update entity fields: {', '.join(sorted(unknown))}")

        assignments = []
        params: list[Any] = []
        for field, value in fields.items():
            if field == "aliases":
                value = json.dumps(list(value))
            elif field == "metadata":
                value = json.dumps(dict(value))
            assignments.append(f"{field} = ?")
            params.append(value)
        params.append(entity_id)

        if assignments:
            async with self.db.transaction() as conn:
                cursor = await conn.execute(
                    f"UPDATE entities SET {', '.join(assignments)} WHERE id = ?", params
                )
                if cursor.rowcount == 0:
                    raise EntityNotFound(entity_id)
        return await self.require(entity_id)

    async def add_alias(self, entity_id: str, alias: str) -> bool:
        """Append an alias unless present (case-insensitive). Returns True if added."""
        async with self.db.transaction() as conn:
            rows = await conn.execute_fetchall(
                "SELECT aliases FROM entities WHERE id = ?", (entity_id,)
            )
            if not rows:
                raise EntityNotFound(entity_id)
            aliases = json.loads(rows[0]["aliases"])
            lowered = alias.lower()
            if any(a.lower() == lowered for a in aliases):
                return False
            aliases.append(alias)
            await conn.execute(
                "UPDATE entities SET aliases = ? WHERE id = ?", (json.dumps(aliases), entity_id)
            )
        return True

    async def delete(self, entity_id: str) -> bool:
        """Delete an entity; its occurrences cascade."""
        return await self.db.execute("DELETE FROM entities WHERE id = ?", (entity_id,)) > 0

    async def merge(self, keep: Entity, merged_id: str) -> Entity:
        """Fold ``merged_id`` into ``keep`` in one transaction.

        ``keep`` carries the already-combined aliases, links and metadata.
        Occurrences are repointed before the merged entity is deleted, and
        memories referencing the merged id are rewritten to the kept id.
        """
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                UPDATE entities
                SET aliases = ?, linked_contact_id = ?, linked_project_id = ?, metadata = ?
                WHERE id = ?
                """,
                (
                    json.dumps(keep.aliases),
                    keep.linked_contact_id,
                    keep.linked_project_id,
                    json.dumps(keep.metadata),
                    keep.id,
                ),
            )
            # A memory linked to both entities keeps its existing kept-side row
            await conn.execute(
                "UPDATE OR IGNORE entity_occurrences SET entity_id = ? WHERE entity_id = ?",
                (keep.id, merged_id),
            )
            await conn.execute(
                "DELETE FROM entity_occurrences WHERE entity_id = ?", (merged_id,)
            )

            rows = await conn.execute_fetchall(
                """
                SELECT m.id, m.related_entities FROM memories m
                WHERE EXISTS (SELECT 1 FROM json_each(m.related_entities) j WHERE j.value = ?)
                """,
                (merged_id,),
            )
            for row in rows:
                related: list[str] = []
                for eid in json.loads(row["related_entities"]):
                    eid = keep.id if eid == merged_id else eid
                    if eid not in related:
                        related.append(eid)
                await conn.execute(
                    "UPDATE memories SET related_entities = ? WHERE id = ?",
                    (json.dumps(related), row["id"]),
                )

            await conn.execute("DELETE FROM entities WHERE id = ?", (merged_id,))

        logger.info(f"Merged entity {merged_id} into {keep.id} ({len(rows)} memories rewritten)")
        return await self.require(keep.id)

    async def get_by_id(self, entity_id: str) -> Entity | None:
        row = await self.db.fetchone("SELECT * FROM entities WHERE id = ?", (entity_id,))
        return _row_to_entity(row) if row else None

    async def require(self, entity_id: str) -> Entity:
        entity = await self.get_by_id(entity_id)
        if entity is None:
            raise EntityNotFound(entity_id)
        return entity

    async def get_by_slug(self, slug: str) -> Entity | None:
        row = await self.db.fetchone("SELECT * FROM entities WHERE slug = ?", (slug,))
        return _row_to_entity(row) if row else None

    async def get_by_type(self, entity_type: EntityType) -> list[Entity]:
        rows = await self.db.fetchall(
            "SELECT * FROM entities WHERE type = ? ORDER BY canonical_name COLLATE NOCASE",
            (entity_type,),
        )
        return [_row_to_entity(row) for row in rows]

    async def list_all(self) -> list[Entity]:
        rows = await self.db.fetchall(
            "SELECT * FROM entities ORDER BY type, canonical_name COLLATE NOCASE"
        )
        return [_row_to_entity(row) for row in rows]

    async def find_by_canonical_name(
        self, name: str, entity_type: EntityType | None = None
    ) -> Entity | None:
        params: list[Any] = [name]
        sql = "SELECT * FROM entities WHERE lower(canonical_name) = lower(?)"
        sql += _type_filter(entity_type, params)
        row = await self.db.fetchone(sql + " ORDER BY created_at, id LIMIT 1", params)
        return _row_to_entity(row) if row else None

    async def find_by_alias(
        self, name: str, entity_type: EntityType | None = None
    ) -> Entity | None:
        params: list[Any] = [name]
        sql = (
            "SELECT e.* FROM entities e WHERE EXISTS ("
            "SELECT 1 FROM json_each(e.aliases) a WHERE lower(a.value) = lower(?))"
        )
        sql += _type_filter(entity_type, params, column="e.type")
        row = await self.db.fetchone(sql + " ORDER BY e.created_at, e.id LIMIT 1", params)
        return _row_to_entity(row) if row else None

    async def get_by_contact(self, contact_id: str) -> list[Entity]:
        rows = await self.db.fetchall(
            "SELECT * FROM entities WHERE linked_contact_id = ? "
            "ORDER BY canonical_name COLLATE NOCASE",
            (contact_id,),
        )
        return [_row_to_entity(row) for row in rows]

    async def get_by_project(self, project_id: str) -> list[Entity]:
        rows = await self.db.fetchall(
            "SELECT * FROM entities WHERE linked_project_id = ? "
            "ORDER BY canonical_name COLLATE NOCASE",
            (project_id,),
        )
        return [_row_to_entity(row) for row in rows]

    async def search(self, term: str, entity_type: EntityType | None = None) -> list[Entity]:
        """Substring match over canonical names and aliases."""
        pattern = f"%{term.lower()}%"
        params: list[Any] = [pattern, pattern]
        sql = (
            "SELECT e.* FROM entities e WHERE (lower(e.canonical_name) LIKE ? OR EXISTS ("
            "SELECT 1 FROM json_each(e.aliases) a WHERE lower(a.value) LIKE ?))"
        )
        sql += _type_filter(entity_type, params, column="e.type")
        rows = await self.db.fetchall(sql + " ORDER BY e.canonical_name COLLATE NOCASE", params)
        return [_row_to_entity(row) for row in rows]

    # ─────────────────────────────────────────────────────────────────────────
    # Occurrences
    # ─────────────────────────────────────────────────────────────────────────

    async def add_occurrence(
        self, entity_id: str, memory_id: str, context: str | None = None
    ) -> bool:
        """Link an entity to a memory. Returns False if already linked."""
        occurrence = EntityOccurrence(entity_id=entity_id, memory_id=memory_id, context=context)
        try:
            inserted = await self.db.execute(
                """
                INSERT OR IGNORE INTO entity_occurrences
                    (id, entity_id, memory_id, context, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    occurrence.id,
                    entity_id,
                    memory_id,
                    context,
                    to_db_timestamp(occurrence.created_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise InvalidInput(
                f"Cannot link entity {entity_id} to memory {memory_id}: {e}"
            ) from e
        return inserted > 0

    async def occurrences(self, entity_id: str) -> list[EntityOccurrence]:
        rows = await self.db.fetchall(
            "SELECT * FROM entity_occurrences WHERE entity_id = ? ORDER BY created_at DESC",
            (entity_id,),
        )
        return [_row_to_occurrence(row) for row in rows]

    async def entities_for_memory(self, memory_id: str) -> list[Entity]:
        rows = await self.db.fetchall(
            """
            SELECT e.* FROM entities e
            JOIN entity_occurrences o ON o.entity_id = e.id
            WHERE o.memory_id = ?
            ORDER BY e.canonical_name COLLATE NOCASE
            """,
            (memory_id,),
        )
        return [_row_to_entity(row) for row in rows]

    async def statistics(self) -> dict:
        totals = await self.db.fetchone(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(linked_contact_id IS NOT NULL), 0) AS linked_contacts,
                   COALESCE(SUM(linked_project_id IS NOT NULL), 0) AS linked_projects
            FROM entities
            """
        )
        by_type = await self.db.fetchall(
            "SELECT type, COUNT(*) AS count FROM entities GROUP BY type ORDER BY count DESC"
        )
        mentioned = await self.db.fetchall(
            """
            SELECT e.id, e.type, e.canonical_name, COUNT(o.id) AS mentions
            FROM entities e
            JOIN entity_occurrences o ON o.entity_id = e.id
            GROUP BY e.id
            ORDER BY mentions DESC, e.canonical_name COLLATE NOCASE
            LIMIT ?
            """,
            (MOST_MENTIONED_LIMIT,),
        )
        return {
            "total": totals["total"],
            "by_type": {row["type"]: row["count"] for row in by_type},
            "linked_to_contacts": totals["linked_contacts"],
            "linked_to_projects": totals["linked_projects"],
            "most_mentioned": [
                {
                    "id": row["id"],
                    "type": row["type"],
                    "canonical_name": row["canonical_name"],
                    "mentions": row["mentions"],
                }
                for row in mentioned
            ],
        }
