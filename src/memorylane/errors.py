"""Error taxonomy for Memory Lane.

Every failure carries an ``ErrorKind`` so callers can branch on the kind
(and on ``retryable``) instead of parsing messages.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Discriminator for every Memory Lane failure."""

    EMBEDDING_UNAVAILABLE = "embedding_unavailable"
    EXTRACTION_PARSE = "extraction_parse"
    ENTITY_SLUG_COLLISION = "entity_slug_collision"
    ENTITY_RESOLUTION_FAILED = "entity_resolution_failed"
    TYPE_MISMATCH = "type_mismatch"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    TIMEOUT = "timeout"
    MODEL_UNAVAILABLE = "model_unavailable"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    CONFIGURATION = "configuration"


class MemoryLaneError(Exception):
    """Base class for all Memory Lane errors."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value

    def to_dict(self) -> dict:
        """Serialize for UI consumers."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class EmbeddingUnavailable(MemoryLaneError):
    """Embedding endpoint unreachable or model not loaded."""

    kind = ErrorKind.EMBEDDING_UNAVAILABLE
    retryable = True


class ExtractionParseError(MemoryLaneError):
    """Extraction model response did not contain a JSON array."""

    kind = ErrorKind.EXTRACTION_PARSE


class EntitySlugCollision(MemoryLaneError):
    """Insert raced another insert for the same slug."""

    kind = ErrorKind.ENTITY_SLUG_COLLISION
    retryable = True

    def __init__(self, slug: str):
        super().__init__(f"Entity with slug '{slug}' already exists")
        self.slug = slug


class EntityResolutionFailed(MemoryLaneError):
    """Entity could not be found or created after one retry."""

    kind = ErrorKind.ENTITY_RESOLUTION_FAILED


class TypeMismatch(MemoryLaneError):
    """Entity merge across different entity types."""

    kind = ErrorKind.TYPE_MISMATCH


class StorageUnavailable(MemoryLaneError):
    """Underlying SQLite store unreachable or failing."""

    kind = ErrorKind.STORAGE_UNAVAILABLE
    retryable = True


class OperationTimeout(MemoryLaneError):
    """Embedding or extraction model call exceeded its deadline."""

    kind = ErrorKind.TIMEOUT
    retryable = True


class ExtractionModelUnavailable(MemoryLaneError):
    """Extraction model endpoint refused or failed the request."""

    kind = ErrorKind.MODEL_UNAVAILABLE
    retryable = True


class NotFoundError(MemoryLaneError):
    kind = ErrorKind.NOT_FOUND


class MemoryNotFound(NotFoundError):
    def __init__(self, memory_id: str):
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id


class EntityNotFound(NotFoundError):
    def __init__(self, entity_id: str):
        super().__init__(f"Entity not found: {entity_id}")
        self.entity_id = entity_id


class InvalidInput(MemoryLaneError, ValueError):
    """Caller passed a value outside the accepted domain."""

    kind = ErrorKind.INVALID_INPUT


class ConfigError(MemoryLaneError):
    """Configuration loading or validation failed."""

    kind = ErrorKind.CONFIGURATION
