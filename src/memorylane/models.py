"""Core data models for Memory Lane.

Uses Pydantic v2 for validation, ULID for sortable unique IDs.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from ulid import ULID

from .constants import HIGH_PRIORITY_BOOST, LOW_PRIORITY_BOOST, MEDIUM_PRIORITY_BOOST


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


MemoryType = Literal[
    "correction",     # user corrected agent behavior
    "decision",       # explicit choice with reasoning
    "commitment",     # user preference expressed
    "insight",        # non-obvious discovery
    "learning",       # new knowledge gained
    "confidence",     # strong confidence in approach
    "pattern_seed",   # repeated behavior to formalize
    "cross_agent",    # info relevant to other agents
    "workflow_note",  # process observation
    "gap",            # missing capability or limitation
]

Priority = Literal["high", "medium", "low"]

EntityType = Literal["person", "project", "business", "location"]

FeedbackPolarity = Literal["positive", "negative"]

RetrievalMethod = Literal["entity", "semantic", "hybrid"]


@dataclass(frozen=True)
class MemoryTypeInfo:
    """Priority tier and ranking boost for a memory type."""

    priority: Priority
    description: str
    boost: int  # confidence points, 0-100 scale

    @property
    def boost_fraction(self) -> float:
        return self.boost / 100


MEMORY_TYPES: dict[str, MemoryTypeInfo] = {
    "correction": MemoryTypeInfo("high", "User corrected agent behavior", HIGH_PRIORITY_BOOST),
    "decision": MemoryTypeInfo("high", "Explicit choice with reasoning", HIGH_PRIORITY_BOOST),
    "commitment": MemoryTypeInfo("high", "User preference expressed", HIGH_PRIORITY_BOOST),
    "insight": MemoryTypeInfo("medium", "Non-obvious discovery", MEDIUM_PRIORITY_BOOST),
    "learning": MemoryTypeInfo("medium", "New knowledge gained", MEDIUM_PRIORITY_BOOST),
    "confidence": MemoryTypeInfo("medium", "Strong confidence in approach", MEDIUM_PRIORITY_BOOST),
    "pattern_seed": MemoryTypeInfo("low", "Repeated behavior to formalize", LOW_PRIORITY_BOOST),
    "cross_agent": MemoryTypeInfo("low", "Info relevant to other agents", LOW_PRIORITY_BOOST),
    "workflow_note": MemoryTypeInfo("low", "Process observation", LOW_PRIORITY_BOOST),
    "gap": MemoryTypeInfo("low", "Missing capability or limitation", LOW_PRIORITY_BOOST),
}


class Memory(BaseModel):
    """A typed, durably stored moment extracted from a conversation."""

    id: str = Field(default_factory=generate_id)
    type: MemoryType
    category: str | None = None
    title: str
    content: str
    source_excerpt: str = ""
    evidence: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None
    embedding_pending: bool = False  # stored without vector, awaiting backfill
    related_entity_ids: list[str] = Field(default_factory=list)
    confidence_score: float = Field(ge=0.0, le=1.0)
    reasoning: str | None = None
    session_id: str | None = None
    times_observed: int = Field(default=1, ge=1)
    first_observed_at: datetime = Field(default_factory=utc_now)
    last_observed_at: datetime = Field(default_factory=utc_now)
    recall_count: int = Field(default=0, ge=0)
    positive_feedback: int = Field(default=0, ge=0)
    negative_feedback: int = Field(default=0, ge=0)


class Entity(BaseModel):
    """A canonical reference to a person, project, business, or location."""

    id: str = Field(default_factory=generate_id)
    type: EntityType
    canonical_name: str
    slug: str
    aliases: list[str] = Field(default_factory=list)
    linked_contact_id: str | None = None  # opaque, owned by the contacts service
    linked_project_id: str | None = None  # opaque, owned by the projects service
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class EntityOccurrence(BaseModel):
    """Join record: an entity mentioned in a memory."""

    id: str = Field(default_factory=generate_id)
    entity_id: str
    memory_id: str
    context: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class RecallRecord(BaseModel):
    """A memory surfaced for a query; used to attribute later feedback."""

    id: str = Field(default_factory=generate_id)
    session_id: str | None = None
    memory_id: str
    query_text: str
    similarity_score: float | None = None
    final_score: float
    final_rank: int
    was_useful: bool | None = None
    recalled_at: datetime = Field(default_factory=utc_now)


class FeedbackEvent(BaseModel):
    """A human signal about whether a recalled memory was useful."""

    id: str = Field(default_factory=generate_id)
    memory_id: str
    session_id: str | None = None
    query_text: str | None = None
    polarity: FeedbackPolarity
    score: float | None = None  # final score at recall time, when known
    created_at: datetime = Field(default_factory=utc_now)


# ─────────────────────────────────────────────────────────────────────────────
# Extraction model boundary
# ─────────────────────────────────────────────────────────────────────────────


class CandidateEntity(BaseModel):
    """An entity mention as reported by the extraction model."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: EntityType
    raw: str = Field(min_length=1, validation_alias=AliasChoices("raw", "name"))
    slug: str | None = None
    canonical_name: str | None = Field(
        default=None, validation_alias=AliasChoices("canonical_name", "canonicalName")
    )

    @field_validator("raw")
    @classmethod
    def _strip_raw(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("entity name is blank")
        return value


class MemoryCandidate(BaseModel):
    """A validated candidate memory parsed from the extraction model output.

    Unknown fields are ignored; a wrong ``type`` fails validation so free-form
    strings never reach the store.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: MemoryType
    category: str | None = None
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    source_excerpt: str = Field(
        default="",
        validation_alias=AliasChoices("source_excerpt", "source_chunk", "sourceExcerpt"),
    )
    related_entities: list[CandidateEntity] = Field(
        default_factory=list,
        validation_alias=AliasChoices("related_entities", "relatedEntities"),
    )
    confidence_score: float = Field(
        ge=0.0, le=100.0,
        validation_alias=AliasChoices("confidence_score", "confidenceScore"),
    )
    reasoning: str | None = None

    @field_validator("title", "content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("related_entities", mode="before")
    @classmethod
    def _drop_invalid_entities(cls, value: Any) -> list:
        """Keep well-formed entity mentions, silently skipping the rest."""
        if not isinstance(value, list):
            return []
        kept = []
        for item in value:
            try:
                kept.append(CandidateEntity.model_validate(item))
            except ValueError:
                continue
        return kept

    @field_validator("source_excerpt", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


# ─────────────────────────────────────────────────────────────────────────────
# Operation results
# ─────────────────────────────────────────────────────────────────────────────


class ConversationTurn(BaseModel):
    """One message of a transcript."""

    role: Literal["user", "assistant"]
    content: str
    timestamp: str | None = None


class RankedMemory(BaseModel):
    """A memory returned by retrieval, with its score breakdown."""

    memory: Memory
    final_score: float
    entity_match_score: float = 0.0
    similarity: float | None = None
    type_boost: float = 0.0
    feedback_adjustment: float = 0.0
    retrieval_method: RetrievalMethod
    matched_entities: list[str] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.memory.id


class RetrievalResult(BaseModel):
    """Outcome of a retrieval call."""

    query: str
    results: list[RankedMemory] = Field(default_factory=list)
    degraded: bool = False
    degraded_reason: str | None = None
    semantic_threshold: float | None = None  # None when the semantic path was skipped
    resolved_entity_ids: list[str] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    """Outcome of extracting one conversation chunk."""

    created: list[Memory] = Field(default_factory=list)
    merged: list[str] = Field(default_factory=list)  # ids of memories re-observed
    candidates: int = 0
    dropped: int = 0  # candidates abandoned (embedding unavailable)
    parse_failed: bool = False


class SessionExtractionReport(BaseModel):
    """Outcome of extracting a whole session transcript."""

    session_path: str
    session_id: str | None = None
    total_messages: int = 0
    total_chunks: int = 0
    chunks_processed: int = 0
    chunks_skipped: int = 0  # parse errors
    created: list[Memory] = Field(default_factory=list)
    merged: list[str] = Field(default_factory=list)
    dropped: int = 0

    @property
    def warning(self) -> str | None:
        if not self.chunks_skipped:
            return None
        return (
            f"{self.chunks_processed} chunks processed, "
            f"{self.chunks_skipped} skipped due to parse errors"
        )
