"""Dual retrieval and ranking of memories for a query.

Two candidate paths are merged by memory id:
- entity path: memories linked to an entity named in the query or hints
  (entity match score 1.0)
- semantic path: memories whose content vector is similar to the query's,
  above 0.50, or 0.40 when the query matched an entity

Each candidate scores ``max(entity match, similarity) + type boost +
feedback adjustment``. When the embedder is unavailable only the entity
path runs and the result is flagged as degraded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import RetrievalConfig
from .constants import ENTITY_MATCH_SCORE
from .embeddings import EmbeddingProvider
from .entities import EntityResolver, extract_entity_mentions
from .errors import EmbeddingUnavailable, InvalidInput
from .memory_store import MemoryStore
from .models import (
    Entity,
    FeedbackEvent,
    FeedbackPolarity,
    Memory,
    RankedMemory,
    RecallRecord,
    RetrievalResult,
)
from .scoring import feedback_adjustment, final_score, rank_key, retrieval_type_boost
from .similarity import find_similar

logger = logging.getLogger(__name__)

PLACEHOLDER_REASON = "placeholder embeddings"


@dataclass
class _Candidate:
    memory: Memory
    entity_match: float = 0.0
    similarity: float | None = None
    matched_entities: list[str] = field(default_factory=list)

    @property
    def method(self) -> str:
        if self.entity_match and self.similarity is not None:
            return "hybrid"
        return "entity" if self.entity_match else "semantic"


class RetrievalEngine:
    """Ranks stored memories for a query and ingests feedback."""

    def __init__(
        self,
        memories: MemoryStore,
        resolver: EntityResolver,
        embedder: EmbeddingProvider,
        config: RetrievalConfig | None = None,
        session_id: str | None = None,
    ):
        self.memories = memories
        self.resolver = resolver
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.session_id = session_id

    async def _resolve_query_entities(
        self, query: str, hints: list[str] | None, config: RetrievalConfig
    ) -> list[Entity]:
        names = [h for h in (hints or []) if h and h.strip()]
        if config.detect_entities:
            names.extend(extract_entity_mentions(query))
        return await self.resolver.resolve_mentions(names)

    async def retrieve(
        self,
        query: str,
        hints: list[str] | None = None,
        config: RetrievalConfig | None = None,
        session_id: str | None = None,
    ) -> RetrievalResult:
        """Return the top memories for ``query``, best first.

        Args:
            query: Free-text query
            hints: Entity names known to be relevant (looked up, never created)
            config: Per-call override of limit, thresholds and weights
            session_id: Session the recalls are attributed to

        Every returned memory has its recall counted and logged before this
        returns.

        Raises:
            InvalidInput: If the query is blank
            OperationTimeout: If the embedding call exceeds its deadline
            StorageUnavailable: If the store fails
        """
        if not query or not query.strip():
            raise InvalidInput("Query must not be blank")
        config = config or self.config
        session_id = session_id or self.session_id

        entities = await self._resolve_query_entities(query, hints, config)
        entity_names = {e.id: e.canonical_name for e in entities}
        candidates: dict[str, _Candidate] = {}

        if entities:
            for memory in await self.memories.find_by_entities(list(entity_names)):
                candidates[memory.id] = _Candidate(
                    memory=memory,
                    entity_match=ENTITY_MATCH_SCORE,
                    matched_entities=[
                        entity_names[eid] for eid in memory.related_entity_ids if eid in entity_names
                    ],
                )

        threshold = config.entity_semantic_threshold if entities else config.semantic_threshold
        degraded = False
        degraded_reason = None
        try:
            query_vector = await self.embedder.embed(query)
        except EmbeddingUnavailable as e:
            degraded = True
            degraded_reason = e.message
            logger.warning(f"Semantic retrieval skipped, entity path only: {e.message}")
            query_vector = None

        if query_vector is not None:
            if self.embedder.is_placeholder:
                degraded = True
                degraded_reason = PLACEHOLDER_REASON
            stored = await self.memories.scan_all_with_embedding()
            for memory, similarity in find_similar(query_vector, stored, threshold):
                candidate = candidates.get(memory.id)
                if candidate is None:
                    candidates[memory.id] = _Candidate(memory=memory, similarity=similarity)
                else:
                    candidate.similarity = similarity

        ranked = [self._rank(candidate, config) for candidate in candidates.values()]
        ranked.sort(key=lambda r: rank_key(r.final_score, r.memory))
        ranked = ranked[:config.limit]

        await self._record_recalls(query, ranked, session_id)

        logger.debug(
            f"Retrieved {len(ranked)} of {len(candidates)} candidates for {query!r} "
            f"(entities={len(entities)}, threshold={threshold}, degraded={degraded})"
        )
        return RetrievalResult(
            query=query,
            results=ranked,
            degraded=degraded,
            degraded_reason=degraded_reason,
            semantic_threshold=None if query_vector is None else threshold,
            resolved_entity_ids=list(entity_names),
        )

    def _rank(self, candidate: _Candidate, config: RetrievalConfig) -> RankedMemory:
        memory = candidate.memory
        boost = retrieval_type_boost(memory.type, config.type_boost_scale, config.max_type_boost)
        adjustment = feedback_adjustment(
            memory.positive_feedback,
            memory.negative_feedback,
            config.feedback_step,
            config.feedback_cap,
        )
        return RankedMemory(
            memory=memory,
            final_score=final_score(candidate.entity_match, candidate.similarity, boost, adjustment),
            entity_match_score=candidate.entity_match,
            similarity=candidate.similarity,
            type_boost=boost,
            feedback_adjustment=adjustment,
            retrieval_method=candidate.method,
            matched_entities=candidate.matched_entities,
        )

    async def _record_recalls(
        self, query: str, ranked: list[RankedMemory], session_id: str | None
    ) -> None:
        recalls = [
            RecallRecord(
                session_id=session_id,
                memory_id=item.id,
                query_text=query,
                similarity_score=item.similarity,
                final_score=item.final_score,
                final_rank=rank,
            )
            for rank, item in enumerate(ranked, start=1)
        ]
        await self.memories.record_recalls(recalls)
        for item in ranked:
            item.memory = item.memory.model_copy(
                update={"recall_count": item.memory.recall_count + 1}
            )

    async def submit_feedback(
        self,
        memory_id: str,
        polarity: FeedbackPolarity,
        session_id: str | None = None,
    ) -> FeedbackEvent:
        """Count a positive or negative signal for a recalled memory.

        Raises:
            InvalidInput: If polarity is not "positive" or "negative"
            MemoryNotFound: If the memory does not exist
        """
        if polarity not in ("positive", "negative"):
            raise InvalidInput(f"Feedback polarity must be 'positive' or 'negative', got {polarity!r}")
        event = await self.memories.add_feedback(
            memory_id, polarity, session_id or self.session_id
        )
        logger.info(f"Recorded {polarity} feedback for memory {memory_id}")
        return event

    async def statistics(self) -> dict:
        """Recall and feedback aggregates."""
        return await self.memories.recall_statistics()
