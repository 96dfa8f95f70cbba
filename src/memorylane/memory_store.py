"""Memory Store: durable collection of Memory records over SQLite.

Counters (recall_count, feedback, times_observed) are only ever changed with
in-SQL increments so concurrent callers cannot lose updates.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from .constants import (
    BEST_RATED_MIN_FEEDBACK,
    CLEANUP_AGE_DAYS,
    CLEANUP_MAX_CONFIDENCE,
    DEFAULT_QUERY_LIMIT,
)
from .database import Database
from .embeddings import decode_vector, encode_vector
from .errors import InvalidInput, MemoryNotFound
from .models import (
    MEMORY_TYPES,
    FeedbackEvent,
    FeedbackPolarity,
    Memory,
    RecallRecord,
    utc_now,
)
from .timeutil import from_db_timestamp, to_db_timestamp

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, type, category, title, content, source_excerpt, evidence, embedding, "
    "embedding_pending, related_entities, confidence_score, reasoning, session_id, "
    "times_observed, recall_count, positive_feedback, negative_feedback, "
    "first_observed_at, last_observed_at"
)

# Fields that update() may change; counters have dedicated increment methods.
_UPDATABLE = {
    "type",
    "category",
    "title",
    "content",
    "source_excerpt",
    "evidence",
    "embedding",
    "embedding_pending",
    "related_entity_ids",
    "confidence_score",
    "reasoning",
    "last_observed_at",
}

_FEEDBACK_COLUMN = {
    "positive": "positive_feedback",
    "negative": "negative_feedback",
}


class MemoryQuery(BaseModel):
    """Predicate for ``MemoryStore.query``. Unset fields do not filter."""

    types: list[str] | None = None
    category: str | None = None
    has_embedding: bool | None = None
    embedding_pending: bool | None = None
    since: datetime | None = None  # on first_observed_at, inclusive
    until: datetime | None = None  # on first_observed_at, exclusive
    text: str | None = None  # substring of title, content or category
    min_confidence: float | None = None
    session_id: str | None = None
    limit: int | None = Field(default=DEFAULT_QUERY_LIMIT, ge=1)


def _row_to_memory(row: sqlite3.Row) -> Memory:
    blob = row["embedding"]
    return Memory(
        id=row["id"],
        type=row["type"],
        category=row["category"],
        title=row["title"],
        content=row["content"],
        source_excerpt=row["source_excerpt"],
        evidence=json.loads(row["evidence"]),
        embedding=decode_vector(blob) if blob is not None else None,
        embedding_pending=bool(row["embedding_pending"]),
        related_entity_ids=json.loads(row["related_entities"]),
        confidence_score=row["confidence_score"],
        reasoning=row["reasoning"],
        session_id=row["session_id"],
        times_observed=row["times_observed"],
        recall_count=row["recall_count"],
        positive_feedback=row["positive_feedback"],
        negative_feedback=row["negative_feedback"],
        first_observed_at=from_db_timestamp(row["first_observed_at"]),
        last_observed_at=from_db_timestamp(row["last_observed_at"]),
    )


def _column_value(field: str, value: Any) -> tuple[str, Any]:
    """Map a Memory field name and value to its column and stored form."""
    if field == "related_entity_ids":
        return "related_entities", json.dumps(list(value))
    if field == "evidence":
        return "evidence", json.dumps(list(value))
    if field == "embedding":
        return "embedding", encode_vector(value) if value is not None else None
    if field == "embedding_pending":
        return "embedding_pending", int(bool(value))
    if field == "last_observed_at":
        return "last_observed_at", to_db_timestamp(value)
    if field == "type" and value not in MEMORY_TYPES:
        raise InvalidInput(f"Unknown memory type: {value}")
    if field == "confidence_score" and not 0.0 <= value <= 1.0:
        raise InvalidInput(f"confidence_score must be within [0, 1], got {value}")
    return field, value


class MemoryStore:
    """Async CRUD and scans over the memories table."""

    def __init__(self, db: Database):
        self.db = db

    # ─────────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────────

    async def insert(self, memory: Memory) -> str:
        """Persist a new memory and return its id."""
        async with self.db.transaction() as conn:
            await conn.execute(
                f"INSERT INTO memories ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    memory.id,
                    memory.type,
                    memory.category,
                    memory.title,
                    memory.content,
                    memory.source_excerpt,
                    json.dumps(memory.evidence),
                    encode_vector(memory.embedding) if memory.embedding is not None else None,
                    int(memory.embedding_pending),
                    json.dumps(memory.related_entity_ids),
                    memory.confidence_score,
                    memory.reasoning,
                    memory.session_id,
                    memory.times_observed,
                    memory.recall_count,
                    memory.positive_feedback,
                    memory.negative_feedback,
                    to_db_timestamp(memory.first_observed_at),
                    to_db_timestamp(memory.last_observed_at),
                ),
            )
        logger.debug(f"Inserted memory {memory.id} ({memory.type}): {memory.title}")
        return memory.id

    async def update(self, memory_id: str, **fields: Any) -> None:
        """Overwrite the given fields of a memory.

        Raises:
            InvalidInput: If a field is unknown or not updatable
            MemoryNotFound: If no memory has this id
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise InvalidInput(f"Cannot update memory fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments = []
        params: list[Any] = []
        for field, value in fields.items():
            column, stored = _column_value(field, value)
            assignments.append(f"{column} = ?")
            params.append(stored)
        params.append(memory_id)

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE memories SET {', '.join(assignments)} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                raise MemoryNotFound(memory_id)

    async def set_embedding(self, memory_id: str, embedding: list[float]) -> None:
        """Store a vector and clear the pending flag."""
        await self.update(memory_id, embedding=embedding, embedding_pending=False)

    async def merge_observation(
        self, memory_id: str, confidence: float, source_excerpt: str = ""
    ) -> Memory:
        """Record that an equivalent memory was derived again.

        Increments times_observed, bumps last_observed_at, raises the stored
        confidence to ``max(stored, confidence)`` and appends the excerpt to
        the evidence list.
        """
        now = to_db_timestamp(utc_now())
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE memories
                SET times_observed = times_observed + 1,
                    last_observed_at = ?,
                    confidence_score = MAX(confidence_score, ?)
                WHERE id = ?
                """,
                (now, confidence, memory_id),
            )
            if cursor.rowcount == 0:
                raise MemoryNotFound(memory_id)
            if source_excerpt:
                await conn.execute(
                    "UPDATE memories SET evidence = json_insert(evidence, '$[#]', ?) "
                    "WHERE id = ?",
                    (source_excerpt, memory_id),
                )

        merged = await self.get_by_id(memory_id)
        if merged is None:
            raise MemoryNotFound(memory_id)
        return merged

    async def record_recalls(self, recalls: list[RecallRecord]) -> None:
        """Increment recall_count and log each recall, in one transaction."""
        if not recalls:
            return
        async with self.db.transaction() as conn:
            for recall in recalls:
                await conn.execute(
                    "UPDATE memories SET recall_count = recall_count + 1 WHERE id = ?",
                    (recall.memory_id,),
                )
                await conn.execute(
                    """
                    INSERT INTO session_recalls (
                        id, session_id, memory_id, query_text, similarity_score,
                        final_score, final_rank, was_useful, recalled_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        recall.id,
                        recall.session_id,
                        recall.memory_id,
                        recall.query_text,
                        recall.similarity_score,
                        recall.final_score,
                        recall.final_rank,
                        None if recall.was_useful is None else int(recall.was_useful),
                        to_db_timestamp(recall.recalled_at),
                    ),
                )

    async def add_feedback(
        self,
        memory_id: str,
        polarity: FeedbackPolarity,
        session_id: str | None = None,
    ) -> FeedbackEvent:
        """Increment a feedback counter and append a feedback row.

        The row's query text and score come from the latest recall of the
        memory (within ``session_id`` when given), which is marked useful or
        not useful accordingly.

        Raises:
            InvalidInput: If polarity is not "positive" or "negative"
            MemoryNotFound: If no memory has this id
        """
        column = _FEEDBACK_COLUMN.get(polarity)
        if column is None:
            raise InvalidInput(f"Unknown feedback polarity: {polarity!r}")

        recall = await self.latest_recall(memory_id, session_id)
        event = FeedbackEvent(
            memory_id=memory_id,
            session_id=session_id,
            query_text=recall.query_text if recall else None,
            polarity=polarity,
            score=recall.final_score if recall else None,
        )

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE memories SET {column} = {column} + 1 WHERE id = ?", (memory_id,)
            )
            if cursor.rowcount == 0:
                raise MemoryNotFound(memory_id)
            await conn.execute(
                """
                INSERT INTO memory_feedback (
                    id, memory_id, session_id, query_text, polarity, score, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.memory_id,
                    event.session_id,
                    event.query_text,
                    event.polarity,
                    event.score,
                    to_db_timestamp(event.created_at),
                ),
            )
            if recall is not None:
                await conn.execute(
                    "UPDATE session_recalls SET was_useful = ? WHERE id = ?",
                    (int(polarity == "positive"), recall.id),
                )
        return event

    async def delete(self, memory_id: str) -> bool:
        """Delete a memory; occurrences, recalls and feedback cascade."""
        return await self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,)) > 0

    async def cleanup_old(
        self,
        older_than: datetime | None = None,
        max_confidence: float = CLEANUP_MAX_CONFIDENCE,
    ) -> int:
        """Delete old, low-confidence memories that were never recalled.

        Args:
            older_than: Cutoff on first_observed_at (default: 90 days ago)
            max_confidence: Only memories at or below this confidence go

        Returns:
            Number of memories deleted
        """
        if older_than is None:
            older_than = utc_now() - timedelta(days=CLEANUP_AGE_DAYS)
        deleted = await self.db.execute(
            """
            DELETE FROM memories
            WHERE first_observed_at < ?
              AND confidence_score <= ?
              AND recall_count = 0
            """,
            (to_db_timestamp(older_than), max_confidence),
        )
        if deleted:
            logger.info(f"Cleaned up {deleted} old low-confidence memories")
        return deleted

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    async def get_by_id(self, memory_id: str) -> Memory | None:
        row = await self.db.fetchone(
            f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
        )
        return _row_to_memory(row) if row else None

    async def require(self, memory_id: str) -> Memory:
        memory = await self.get_by_id(memory_id)
        if memory is None:
            raise MemoryNotFound(memory_id)
        return memory

    async def query(self, predicate: MemoryQuery | None = None) -> list[Memory]:
        """Memories matching every set field of the predicate, newest first."""
        predicate = predicate or MemoryQuery()
        clauses: list[str] = []
        params: list[Any] = []

        if predicate.types:
            clauses.append(f"type IN ({', '.join('?' for _ in predicate.types)})")
            params.extend(predicate.types)
        if predicate.category is not None:
            clauses.append("category = ?")
            params.append(predicate.category)
        if predicate.has_embedding is not None:
            clauses.append(
                "embedding IS NOT NULL" if predicate.has_embedding else "embedding IS NULL"
            )
        if predicate.embedding_pending is not None:
            clauses.append("embedding_pending = ?")
            params.append(int(predicate.embedding_pending))
        if predicate.since is not None:
            clauses.append("first_observed_at >= ?")
            params.append(to_db_timestamp(predicate.since))
        if predicate.until is not None:
            clauses.append("first_observed_at < ?")
            params.append(to_db_timestamp(predicate.until))
        if predicate.text:
            clauses.append(
                "(title LIKE ? ESCAPE '\\' OR content LIKE ? ESCAPE '\\' "
                "OR category LIKE ? ESCAPE '\\')"
            )
            pattern = _like_pattern(predicate.text)
            params.extend([pattern, pattern, pattern])
        if predicate.min_confidence is not None:
            clauses.append("confidence_score >= ?")
            params.append(predicate.min_confidence)
        if predicate.session_id is not None:
            clauses.append("session_id = ?")
            params.append(predicate.session_id)

        sql = f"SELECT {_COLUMNS} FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY last_observed_at DESC, id DESC"
        if predicate.limit is not None:
            sql += " LIMIT ?"
            params.append(predicate.limit)

        rows = await self.db.fetchall(sql, params)
        return [_row_to_memory(row) for row in rows]

    async def scan_all_with_embedding(self) -> list[Memory]:
        """Every memory with a stored vector, for brute-force similarity scans."""
        return await self.query(MemoryQuery(has_embedding=True, limit=None))

    async def find_by_entities(self, entity_ids: list[str]) -> list[Memory]:
        """Memories whose related entity ids intersect ``entity_ids``."""
        if not entity_ids:
            return []
        placeholders = ", ".join("?" for _ in entity_ids)
        rows = await self.db.fetchall(
            f"""
            SELECT {_COLUMNS} FROM memories
            WHERE id IN (
                SELECT m.id FROM memories m, json_each(m.related_entities) AS j
                WHERE j.value IN ({placeholders})
            )
            ORDER BY last_observed_at DESC
            """,
            entity_ids,
        )
        return [_row_to_memory(row) for row in rows]

    async def get_pending_embeddings(self, limit: int | None = None) -> list[Memory]:
        return await self.query(MemoryQuery(embedding_pending=True, limit=limit))

    async def search(self, term: str, limit: int = DEFAULT_QUERY_LIMIT) -> list[Memory]:
        """Substring search over title, content and category."""
        pattern = _like_pattern(term)
        rows = await self.db.fetchall(
            f"""
            SELECT {_COLUMNS} FROM memories
            WHERE title LIKE ? ESCAPE '\\'
               OR content LIKE ? ESCAPE '\\'
               OR category LIKE ? ESCAPE '\\'
            ORDER BY confidence_score DESC, last_observed_at DESC
            LIMIT ?
            """,
            (pattern, pattern, pattern, limit),
        )
        return [_row_to_memory(row) for row in rows]

    async def get_recent(self, days: int = 7, limit: int = DEFAULT_QUERY_LIMIT) -> list[Memory]:
        since = utc_now() - timedelta(days=days)
        return await self.query(MemoryQuery(since=since, limit=limit))

    async def get_high_confidence(
        self, min_confidence: float = 0.8, limit: int = DEFAULT_QUERY_LIMIT
    ) -> list[Memory]:
        rows = await self.db.fetchall(
            f"""
            SELECT {_COLUMNS} FROM memories
            WHERE confidence_score >= ?
            ORDER BY confidence_score DESC, last_observed_at DESC
            LIMIT ?
            """,
            (min_confidence, limit),
        )
        return [_row_to_memory(row) for row in rows]

    async def get_most_recalled(self, limit: int = 10) -> list[Memory]:
        rows = await self.db.fetchall(
            f"""
            SELECT {_COLUMNS} FROM memories
            WHERE recall_count > 0
            ORDER BY recall_count DESC, last_observed_at DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_memory(row) for row in rows]

    async def get_best_rated(
        self, limit: int = 10, min_feedback: int = BEST_RATED_MIN_FEEDBACK
    ) -> list[Memory]:
        """Memories with the highest positive share of at least ``min_feedback`` votes."""
        rows = await self.db.fetchall(
            f"""
            SELECT {_COLUMNS} FROM memories
            WHERE positive_feedback + negative_feedback >= ?
            ORDER BY CAST(positive_feedback AS REAL)
                     / (positive_feedback + negative_feedback) DESC,
                     positive_feedback DESC
            LIMIT ?
            """,
            (min_feedback, limit),
        )
        return [_row_to_memory(row) for row in rows]

    async def latest_recall(
        self, memory_id: str, session_id: str | None = None
    ) -> RecallRecord | None:
        sql = "SELECT * FROM session_recalls WHERE memory_id = ?"
        params: list[Any] = [memory_id]
        if session_id is not None:
            sql += " AND session_id = ?"
            params.append(session_id)
        sql += " ORDER BY recalled_at DESC, id DESC LIMIT 1"
        row = await self.db.fetchone(sql, params)
        if row is None:
            return None
        return RecallRecord(
            id=row["id"],
            session_id=row["session_id"],
            memory_id=row["memory_id"],
            query_text=row["query_text"],
            similarity_score=row["similarity_score"],
            final_score=row["final_score"],
            final_rank=row["final_rank"],
            was_useful=None if row["was_useful"] is None else bool(row["was_useful"]),
            recalled_at=from_db_timestamp(row["recalled_at"]),
        )

    async def count(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) FROM memories")
        return row[0]

    async def statistics(self) -> dict:
        """Aggregate counts over the memory collection."""
        totals = await self.db.fetchone(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(recall_count), 0) AS total_recalls,
                   COALESCE(AVG(recall_count), 0) AS avg_recalls,
                   COALESCE(MAX(recall_count), 0) AS max_recalls,
                   COALESCE(SUM(positive_feedback), 0) AS positive,
                   COALESCE(SUM(negative_feedback), 0) AS negative,
                   COALESCE(SUM(embedding IS NOT NULL), 0) AS embedded,
                   COALESCE(SUM(embedding_pending), 0) AS pending
            FROM memories
            """
        )
        by_type_rows = await self.db.fetchall(
            """
            SELECT type, COUNT(*) AS count, AVG(confidence_score) AS avg_confidence
            FROM memories GROUP BY type ORDER BY count DESC
            """
        )
        total = totals["total"]
        return {
            "total": total,
            "by_type": {
                row["type"]: {
                    "count": row["count"],
                    "avg_confidence": round(row["avg_confidence"], 3),
                }
                for row in by_type_rows
            },
            "recalls": {
                "total": totals["total_recalls"],
                "average": round(totals["avg_recalls"], 2),
                "max": totals["max_recalls"],
            },
            "feedback": {
                "positive": totals["positive"],
                "negative": totals["negative"],
            },
            "embedding_coverage": round(100.0 * totals["embedded"] / total, 1) if total else 0.0,
            "embedding_pending": totals["pending"],
        }

    async def recall_statistics(self) -> dict:
        """Aggregates over session_recalls and memory_feedback."""
        recalls = await self.db.fetchone(
            """
            SELECT COUNT(*) AS total,
                   COUNT(DISTINCT COALESCE(session_id, '') || char(31) || query_text) AS queries,
                   AVG(final_score) AS avg_score
            FROM session_recalls
            """
        )
        feedback = await self.db.fetchone(
            """
            SELECT COALESCE(SUM(polarity = 'positive'), 0) AS positive,
                   COUNT(*) AS total
            FROM memory_feedback
            """
        )
        total = recalls["total"]
        queries = recalls["queries"]
        return {
            "total_recalls": total,
            "distinct_queries": queries,
            "avg_memories_per_query": round(total / queries, 2) if queries else 0.0,
            "avg_final_score": round(recalls["avg_score"], 3) if total else 0.0,
            "feedback_total": feedback["total"],
            "feedback_ratio": (
                round(feedback["positive"] / feedback["total"], 3) if feedback["total"] else None
            ),
        }


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
