"""Memory Lane engine - wires storage, resolver, extractor and retrieval."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .config import ExtractionConfig, RetrievalConfig, Settings
from .database import Database
from .embeddings import EmbeddingHealth, EmbeddingProvider, create_provider
from .entities import EntityResolver
from .entity_store import EntityStore
from .extraction import (
    AnthropicExtractionModel,
    ExtractionModel,
    MemoryExtractor,
    ProgressCallback,
)
from .memory_store import MemoryQuery, MemoryStore
from .models import (
    Entity,
    ExtractionResult,
    FeedbackEvent,
    FeedbackPolarity,
    Memory,
    RetrievalResult,
    SessionExtractionReport,
)
from .retrieval import RetrievalEngine
from .transcripts import ExtractionCache

logger = logging.getLogger(__name__)


class MemoryLane:
    """Composition root: one database, one embedder, one extraction model.

    Every collaborator is passed in explicitly; ``from_settings`` builds the
    production set. Use as an async context manager, or call ``open()`` and
    ``close()``.
    """

    def __init__(
        self,
        db: Database,
        embedder: EmbeddingProvider,
        model: ExtractionModel | None = None,
        retrieval_config: RetrievalConfig | None = None,
        extraction_config: ExtractionConfig | None = None,
        session_id: str | None = None,
        cache: ExtractionCache | None = None,
    ):
        self.db = db
        self.embedder = embedder
        self.model = model
        self.session_id = session_id

        self.memories = MemoryStore(db)
        self.entity_store = EntityStore(db)
        self.resolver = EntityResolver(self.entity_store)
        self.extractor = MemoryExtractor(
            self.memories,
            self.resolver,
            embedder,
            model,
            config=extraction_config,
            cache=cache,
        )
        self.retrieval = RetrievalEngine(
            self.memories,
            self.resolver,
            embedder,
            config=retrieval_config,
            session_id=session_id,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryLane":
        model = None
        if settings.anthropic_api_key:
            model = AnthropicExtractionModel(
                api_key=settings.anthropic_api_key,
                model=settings.extraction_model,
                max_tokens=settings.extraction_max_tokens,
                timeout=settings.extraction_timeout,
            )
        else:
            logger.info("ANTHROPIC_API_KEY not set; extraction disabled")
        return cls(
            db=Database(settings.db_path),
            embedder=create_provider(settings),
            model=model,
            retrieval_config=settings.retrieval_config(),
            extraction_config=settings.extraction_config(),
            session_id=settings.session_id,
        )

    async def open(self) -> "MemoryLane":
        await self.db.open()
        return self

    async def close(self) -> None:
        await self.embedder.aclose()
        aclose = getattr(self.model, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.db.close()

    async def __aenter__(self) -> "MemoryLane":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Extraction ---

    async def extract_from_chunk(
        self, chunk_text: str, session_id: str | None = None
    ) -> ExtractionResult:
        return await self.extractor.extract_from_chunk(chunk_text, session_id or self.session_id)

    async def extract_from_session(
        self,
        path: Path | str,
        session_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SessionExtractionReport:
        return await self.extractor.extract_from_session(path, session_id, on_progress)

    async def backfill_embeddings(self) -> int:
        return await self.extractor.backfill_embeddings()

    # --- Retrieval ---

    async def retrieve(
        self,
        query: str,
        hints: list[str] | None = None,
        config: RetrievalConfig | None = None,
    ) -> RetrievalResult:
        return await self.retrieval.retrieve(query, hints, config)

    async def submit_feedback(
        self, memory_id: str, polarity: FeedbackPolarity
    ) -> FeedbackEvent:
        return await self.retrieval.submit_feedback(memory_id, polarity)

    # --- Memories ---

    async def get_memory(self, memory_id: str) -> Memory:
        return await self.memories.require(memory_id)

    async def list_memories(self, query: MemoryQuery | None = None) -> list[Memory]:
        return await self.memories.query(query)

    async def search_memories(self, term: str, limit: int = 50) -> list[Memory]:
        return await self.memories.search(term, limit)

    async def cleanup(self, **kwargs: Any) -> int:
        return await self.memories.cleanup_old(**kwargs)

    # --- Entities ---

    async def list_entities(self, entity_type: str | None = None) -> list[Entity]:
        if entity_type is None:
            return await self.entity_store.list_all()
        return await self.entity_store.get_by_type(entity_type)

    async def search_entities(self, term: str, entity_type: str | None = None) -> list[Entity]:
        return await self.resolver.search(term, entity_type)

    async def merge_entities(self, keep_id: str, merge_id: str) -> Entity:
        return await self.resolver.merge(keep_id, merge_id)

    # --- Health / stats ---

    async def embedding_health(self) -> EmbeddingHealth:
        return await self.embedder.check_health()

    async def statistics(self) -> dict:
        return {
            "memories": await self.memories.statistics(),
            "entities": await self.resolver.statistics(),
            "retrieval": await self.retrieval.statistics(),
        }
