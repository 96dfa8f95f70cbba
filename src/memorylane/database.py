"""SQLite storage shared by the memory and entity stores.

One aiosqlite connection per process. Reads run directly on it; writes go
through ``transaction()``, which serializes writers and commits or rolls
back as a unit.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from .constants import ENTITY_TYPES
from .errors import MemoryLaneError, StorageUnavailable
from .models import MEMORY_TYPES

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _in_list(values: Iterable[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK (type IN ({_in_list(MEMORY_TYPES)})),
        category TEXT,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        source_excerpt TEXT NOT NULL DEFAULT '',
        evidence TEXT NOT NULL DEFAULT '[]',
        embedding BLOB,
        embedding_pending INTEGER NOT NULL DEFAULT 0,
        related_entities TEXT NOT NULL DEFAULT '[]',
        confidence_score REAL NOT NULL
            CHECK (confidence_score >= 0 AND confidence_score <= 1),
        reasoning TEXT,
        session_id TEXT,
        times_observed INTEGER NOT NULL DEFAULT 1 CHECK (times_observed >= 1),
        recall_count INTEGER NOT NULL DEFAULT 0,
        positive_feedback INTEGER NOT NULL DEFAULT 0,
        negative_feedback INTEGER NOT NULL DEFAULT 0,
        first_observed_at TEXT NOT NULL,
        last_observed_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);
    CREATE INDEX IF NOT EXISTS idx_memories_first_observed ON memories(first_observed_at);
    CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id);

    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK (type IN ({_in_list(ENTITY_TYPES)})),
        canonical_name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        aliases TEXT NOT NULL DEFAULT '[]',
        linked_contact_id TEXT,
        linked_project_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{{}}',
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type);
    CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(canonical_name COLLATE NOCASE);

    CREATE TABLE IF NOT EXISTS entity_occurrences (
        id TEXT PRIMARY KEY,
        entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
        memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        context TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (entity_id, memory_id)
    );

    CREATE INDEX IF NOT EXISTS idx_occurrences_memory ON entity_occurrences(memory_id);

    CREATE TABLE IF NOT EXISTS session_recalls (
        id TEXT PRIMARY KEY,
        session_id TEXT,
        memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        query_text TEXT NOT NULL,
        similarity_score REAL,
        final_score REAL NOT NULL,
        final_rank INTEGER NOT NULL,
        was_useful INTEGER,
        recalled_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_recalls_memory ON session_recalls(memory_id, recalled_at);
    CREATE INDEX IF NOT EXISTS idx_recalls_session ON session_recalls(session_id);

    CREATE TABLE IF NOT EXISTS memory_feedback (
        id TEXT PRIMARY KEY,
        memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
        session_id TEXT,
        query_text TEXT,
        polarity TEXT NOT NULL CHECK (polarity IN ('positive', 'negative')),
        score REAL,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_feedback_memory ON memory_feedback(memory_id);
"""


class Database:
    """Async SQLite connection holder with schema management."""

    def __init__(self, db_path: Path | str):
        """Initialize the database holder.

        Args:
            db_path: Path to memorylane.db, or ":memory:" for tests
        """
        self.db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageUnavailable("Database is not open")
        return self._conn

    async def open(self) -> "Database":
        """Connect and make sure the schema exists."""
        if self._conn is not None:
            return self
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = await aiosqlite.connect(self.db_path, timeout=30.0)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA busy_timeout=30000")
            await conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open database {self.db_path}: {e}") from e
        self._conn = conn
        await self._init_schema()
        logger.debug(f"Opened database {self.db_path}")
        return self

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()

    async def __aenter__(self) -> "Database":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _init_schema(self) -> None:
        async with self.transaction() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    created_at TEXT DEFAULT (datetime('now'))
                )
            """)
            rows = await conn.execute_fetchall("SELECT version FROM schema_version")
            if not rows:
                await conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
            elif rows[0][0] < SCHEMA_VERSION:
                logger.warning(f"Schema version {rows[0][0]} detected, may need migration")
            await conn.executescript(SCHEMA)

    async def schema_version(self) -> int:
        row = await self.fetchone("SELECT version FROM schema_version")
        return row[0] if row else 0

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        async with storage_errors():
            return list(await self.conn.execute_fetchall(sql, tuple(params)))

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        rows = await self.fetchall(sql, params)
        return rows[0] if rows else None

    # ─────────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialized write transaction.

        Commits on normal exit; rolls back and re-raises on any exception.
        ``sqlite3.IntegrityError`` is re-raised untouched so callers can map
        constraint violations; other SQLite errors become StorageUnavailable.
        """
        conn = self.conn
        async with self._write_lock:
            async with storage_errors():
                try:
                    yield conn
                    await conn.commit()
                except BaseException:
                    await conn.rollback()
                    raise

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one write statement in its own transaction; returns rowcount."""
        async with self.transaction() as conn:
            cursor = await conn.execute(sql, tuple(params))
            return cursor.rowcount


@asynccontextmanager
async def storage_errors() -> AsyncIterator[None]:
    """Translate SQLite failures into StorageUnavailable."""
    try:
        yield
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as e:
        logger.error(f"Storage failure: {e}")
        raise StorageUnavailable(str(e)) from e
    except ValueError as e:
        # aiosqlite raises ValueError when the connection has been closed
        if isinstance(e, MemoryLaneError) or "closed" not in str(e).lower():
            raise
        raise StorageUnavailable(str(e)) from e
