"""Memory extraction: conversation chunks to stored, deduplicated memories.

Pipeline per chunk:

1. Ask the extraction model for a JSON array of candidate memories.
2. Validate each candidate at the boundary (unknown types are dropped).
3. Adjust confidence: rescale to [0, 1], add the type boost, reward strong
   language, penalize hedging, clamp.
4. Embed the content and merge into an existing memory when one is at
   least ``duplicate_threshold`` similar.
5. Otherwise resolve related entities and insert a new memory.

Chunks of a session are processed strictly in order so a memory created by
one chunk is visible to the next chunk's duplicate check.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Protocol

import anthropic
from pydantic import ValidationError

from .config import ExtractionConfig
from .constants import (
    DEFAULT_EXTRACTION_MAX_TOKENS,
    DEFAULT_EXTRACTION_MODEL,
    DEFAULT_EXTRACTION_TIMEOUT,
    EMBEDDING_BATCH_SIZE,
    HEDGING_PENALTY,
    HEDGING_WORDS,
    STRONG_SIGNAL_BONUS,
    STRONG_SIGNAL_WORDS,
)
from .embeddings import EmbeddingProvider
from .entities import EntityResolver
from .errors import (
    EmbeddingUnavailable,
    EntityResolutionFailed,
    ExtractionModelUnavailable,
    ExtractionParseError,
    OperationTimeout,
)
from .memory_store import MemoryStore
from .models import (
    MEMORY_TYPES,
    ConversationTurn,
    ExtractionResult,
    Memory,
    MemoryCandidate,
    SessionExtractionReport,
)
from .similarity import DuplicateDetector
from .transcripts import ExtractionCache, chunk_conversation, format_chunk

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

EXTRACTION_TRIGGERS = (
    "Recovery patterns: error -> workaround -> success",
    'User corrections: "I want it this other way"',
    "Enthusiasm: \"that's exactly what I wanted!\"",
    'Negative reactions: "never do that"',
    "Repeated requests: same workflow multiple times",
    'Strong sentiment: "always", "never", "must", "critical"',
    'Explicit preferences: "I prefer", "I like", "I want"',
)

_PRIORITY_HEADINGS = (
    ("high", "HIGH PRIORITY"),
    ("medium", "MEDIUM PRIORITY"),
    ("low", "LOWER PRIORITY"),
)


def build_extraction_prompt() -> str:
    """System instruction describing memory types, triggers and output shape."""
    sections = []
    for priority, heading in _PRIORITY_HEADINGS:
        lines = [
            f"  - {name}: {info.description}"
            for name, info in MEMORY_TYPES.items()
            if info.priority == priority
        ]
        sections.append(f"{heading}:\n" + "\n".join(lines))
    types_block = "\n\n".join(sections)
    triggers_block = "\n".join(f"- {t}" for t in EXTRACTION_TRIGGERS)

    return f"""You are analyzing a conversation between a user and an AI assistant to extract memorable moments.

Your task is to identify consequential decisions, corrections, insights, and patterns that should be remembered for future sessions.

MEMORY TYPES (extract only clear examples):

{types_block}

TRIGGERS TO WATCH:
{triggers_block}

For each memory found, return:
{{
  "type": "memory_type",
  "category": "specific-category-slug",
  "title": "Brief title (5-10 words)",
  "content": "Detailed description of what happened and why it matters",
  "source_excerpt": "Exact relevant excerpt from conversation",
  "related_entities": [
    {{"type": "person|project|business|location", "raw": "Name as mentioned", "canonical_name": "Preferred name"}}
  ],
  "confidence_score": 0-100,
  "reasoning": "Why this is worth remembering"
}}

IMPORTANT:
- Only extract clear, unambiguous memories
- Provide concrete evidence in source_excerpt
- Be conservative - better to miss some than create noise
- Return an empty array if no strong memories are found
- Return a valid JSON array only, no other text"""


# ─────────────────────────────────────────────────────────────────────────────
# Extraction model boundary
# ─────────────────────────────────────────────────────────────────────────────


class ExtractionModel(Protocol):
    """Text completion taking a system instruction and a user payload."""

    async def complete(self, system: str, user: str) -> str: ...


class AnthropicExtractionModel:
    """Extraction model backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_EXTRACTION_MODEL,
        max_tokens: int = DEFAULT_EXTRACTION_MAX_TOKENS,
        timeout: float = DEFAULT_EXTRACTION_TIMEOUT,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key, timeout=timeout, max_retries=0
        )

    async def complete(self, system: str, user: str) -> str:
        try:
            message = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except anthropic.APITimeoutError as e:
            raise OperationTimeout(
                f"Extraction model timed out after {self.timeout}s"
            ) from e
        except anthropic.APIConnectionError as e:
            raise ExtractionModelUnavailable(f"Extraction model unreachable: {e}") from e
        except anthropic.APIStatusError as e:
            raise ExtractionModelUnavailable(
                f"Extraction model returned HTTP {e.status_code}"
            ) from e
        return "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )

    async def aclose(self) -> None:
        await self._client.close()


def parse_extraction_response(text: str) -> list[MemoryCandidate]:
    """Validated candidates from the first well-formed JSON array in ``text``.

    Surrounding prose (or a fenced code block) is tolerated. Items that fail
    validation are dropped individually and logged.

    Raises:
        ExtractionParseError: If no JSON array can be found
    """
    decoder = json.JSONDecoder()
    items = None
    start = text.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list):
            items = value
            break
        start = text.find("[", start + 1)

    if items is None:
        preview = text[:200].replace("\n", " ")
        raise ExtractionParseError(f"No JSON array in extraction response: {preview!r}")

    candidates = []
    for index, item in enumerate(items):
        try:
            candidates.append(MemoryCandidate.model_validate(item))
        except ValidationError as e:
            logger.warning(
                f"Dropping invalid candidate #{index}: {e.error_count()} validation errors "
                f"({e.errors()[0]['loc']}: {e.errors()[0]['msg']})"
            )
    return candidates


def adjust_confidence(candidate: MemoryCandidate) -> float:
    """Final confidence in [0, 1] for a candidate.

    ``score/100 + type boost``, +0.1 when the content uses strong language,
    -0.1 when it hedges, then clamped.
    """
    confidence = candidate.confidence_score / 100 + MEMORY_TYPES[candidate.type].boost_fraction
    content = candidate.content.lower()
    if any(word in content for word in STRONG_SIGNAL_WORDS):
        confidence += STRONG_SIGNAL_BONUS
    if any(word in content for word in HEDGING_WORDS):
        confidence -= HEDGING_PENALTY
    return max(0.0, min(1.0, confidence))


# ─────────────────────────────────────────────────────────────────────────────
# Extractor
# ─────────────────────────────────────────────────────────────────────────────


class MemoryExtractor:
    """Turns conversation chunks into stored memories."""

    def __init__(
        self,
        memories: MemoryStore,
        resolver: EntityResolver,
        embedder: EmbeddingProvider,
        model: ExtractionModel | None,
        config: ExtractionConfig | None = None,
        cache: ExtractionCache | None = None,
    ):
        """Initialize the extractor.

        Args:
            memories: Memory store to read duplicates from and write to
            resolver: Entity resolver for related entities
            embedder: Embedding provider for candidate content
            model: Extraction model; None makes extraction calls fail with
                   ExtractionModelUnavailable (retrieval still works)
            config: Chunk size, duplicate threshold, pending-embedding policy
            cache: Parsed-session cache (a private one is created if omitted)
        """
        self.memories = memories
        self.resolver = resolver
        self.embedder = embedder
        self.model = model
        self.config = config or ExtractionConfig()
        self.cache = cache or ExtractionCache()
        self.detector = DuplicateDetector(self.config.duplicate_threshold)
        self._system_prompt = build_extraction_prompt()

    async def _complete(self, chunk_text: str) -> str:
        if self.model is None:
            raise ExtractionModelUnavailable(
                "No extraction model configured (set ANTHROPIC_API_KEY)"
            )
        return await self.model.complete(
            self._system_prompt,
            f"Analyze this conversation and extract memories:\n\n{chunk_text}",
        )

    async def extract_from_chunk(
        self, chunk_text: str, session_id: str | None = None
    ) -> ExtractionResult:
        """Extract, deduplicate and store memories from one formatted chunk.

        A response that cannot be parsed counts as zero candidates
        (``parse_failed`` is set). Model and storage failures propagate.
        """
        if not chunk_text.strip():
            return ExtractionResult()

        response = await self._complete(chunk_text)
        try:
            candidates = parse_extraction_response(response)
        except ExtractionParseError as e:
            logger.warning(f"Treating chunk as empty: {e.message}")
            return ExtractionResult(parse_failed=True)

        result = ExtractionResult(candidates=len(candidates))
        if not candidates:
            return result

        existing = await self.memories.scan_all_with_embedding()
        for candidate in candidates:
            await self._store_candidate(candidate, session_id, existing, result)

        logger.info(
            f"Chunk extracted: {len(result.created)} created, {len(result.merged)} merged, "
            f"{result.dropped} dropped of {result.candidates} candidates"
        )
        return result

    async def _store_candidate(
        self,
        candidate: MemoryCandidate,
        session_id: str | None,
        existing: list[Memory],
        result: ExtractionResult,
    ) -> None:
        confidence = adjust_confidence(candidate)

        try:
            embedding: list[float] | None = await self.embedder.embed(candidate.content)
        except EmbeddingUnavailable as e:
            if not self.config.store_pending_embeddings:
                logger.warning(f"Dropping candidate '{candidate.title}': {e.message}")
                result.dropped += 1
                return
            logger.warning(f"Storing '{candidate.title}' with embedding pending: {e.message}")
            embedding = None

        if embedding is not None:
            duplicate = self.detector.find_duplicate(embedding, existing)
            if duplicate is not None:
                memory, similarity = duplicate
                await self.memories.merge_observation(
                    memory.id, confidence, candidate.source_excerpt
                )
                logger.debug(f"Merged '{candidate.title}' into {memory.id} (sim={similarity:.3f})")
                if memory.id not in result.merged:
                    result.merged.append(memory.id)
                return

        entity_ids = await self._resolve_entities(candidate)
        memory = Memory(
            type=candidate.type,
            category=candidate.category,
            title=candidate.title,
            content=candidate.content,
            source_excerpt=candidate.source_excerpt,
            evidence=[candidate.source_excerpt] if candidate.source_excerpt else [],
            embedding=embedding,
            embedding_pending=embedding is None,
            related_entity_ids=entity_ids,
            confidence_score=confidence,
            reasoning=candidate.reasoning,
            session_id=session_id,
        )
        await self.memories.insert(memory)
        for entity_id in entity_ids:
            await self.resolver.track_occurrence(
                entity_id, memory.id, context=candidate.source_excerpt or candidate.title
            )
        if embedding is not None:
            existing.append(memory)
        result.created.append(memory)

    async def _resolve_entities(self, candidate: MemoryCandidate) -> list[str]:
        entity_ids: list[str] = []
        for mention in candidate.related_entities:
            try:
                entity = await self.resolver.find_or_create(
                    mention.type, mention.raw, mention.canonical_name
                )
            except EntityResolutionFailed as e:
                logger.warning(f"Storing '{candidate.title}' without entity link: {e.message}")
                continue
            if entity.id not in entity_ids:
                entity_ids.append(entity.id)
        return entity_ids

    async def extract_from_messages(
        self,
        messages: list[ConversationTurn],
        session_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        session_path: str = "<messages>",
    ) -> SessionExtractionReport:
        """Chunk a conversation and extract each chunk in order.

        Parse failures are counted as skipped chunks. ``OperationTimeout``,
        ``ExtractionModelUnavailable`` and ``StorageUnavailable`` abort the run;
        memories from chunks finished before the failure stay stored, and
        running the session again merges them as duplicates.
        """
        chunks = chunk_conversation(messages, self.config.chunk_size)
        report = SessionExtractionReport(
            session_path=session_path,
            session_id=session_id,
            total_messages=len(messages),
            total_chunks=len(chunks),
        )

        for index, chunk in enumerate(chunks, start=1):
            result = await self.extract_from_chunk(format_chunk(chunk), session_id)
            if result.parse_failed:
                report.chunks_skipped += 1
            else:
                report.chunks_processed += 1
            report.created.extend(result.created)
            for memory_id in result.merged:
                if memory_id not in report.merged:
                    report.merged.append(memory_id)
            report.dropped += result.dropped
            if on_progress is not None:
                on_progress(index, len(chunks))

        if report.warning:
            logger.warning(f"{session_path}: {report.warning}")
        return report

    async def extract_from_session(
        self,
        path: Path | str,
        session_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SessionExtractionReport:
        """Extract memories from a JSONL session file."""
        session = self.cache.load(path)
        if session_id is None:
            session_id = Path(path).stem
        logger.info(f"Extracting {session.path}: {session.total_messages} messages")
        return await self.extract_from_messages(
            list(session.messages),
            session_id=session_id,
            on_progress=on_progress,
            session_path=session.path,
        )

    async def backfill_embeddings(self, batch_size: int = EMBEDDING_BATCH_SIZE) -> int:
        """Embed memories stored with ``embedding_pending``; returns how many.

        Each batch is embedded atomically; a provider failure stops the run
        and propagates, leaving the remaining memories pending.
        """
        pending = await self.memories.get_pending_embeddings()
        done = 0
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            vectors = await self.embedder.embed_many([m.content for m in batch])
            for memory, vector in zip(batch, vectors):
                await self.memories.set_embedding(memory.id, vector)
            done += len(batch)
        if done:
            logger.info(f"Backfilled embeddings for {done} memories")
        return done
