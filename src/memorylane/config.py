"""Configuration for Memory Lane.

Settings come from environment variables (see ``Settings.from_env``); the
per-call knobs for retrieval and extraction live in small models so callers
can override a single threshold without rebuilding everything.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DUPLICATE_THRESHOLD,
    DEFAULT_EMBEDDING_DIMENSION,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EMBEDDING_PROVIDER,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_ENTITY_SEMANTIC_THRESHOLD,
    DEFAULT_EXTRACTION_MAX_TOKENS,
    DEFAULT_EXTRACTION_MODEL,
    DEFAULT_EXTRACTION_TIMEOUT,
    DEFAULT_LOCAL_EMBEDDING_DIMENSION,
    DEFAULT_LOCAL_EMBEDDING_MODEL,
    DEFAULT_OLLAMA_BASE_URL,
    DEFAULT_RETRIEVAL_LIMIT,
    DEFAULT_SEMANTIC_THRESHOLD,
    FEEDBACK_CAP,
    FEEDBACK_STEP,
    MAX_RETRIEVAL_TYPE_BOOST,
)
from .errors import ConfigError

logger = logging.getLogger(__name__)

EmbeddingProviderName = Literal["ollama", "sentence-transformers", "hash"]

DB_FILENAME = "memorylane.db"
LOG_FILENAME = "memorylane.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_TRUE_VALUES = ("1", "true", "yes", "on")


class RetrievalConfig(BaseModel):
    """Knobs for one retrieval call."""

    model_config = ConfigDict(frozen=True)

    limit: int = Field(default=DEFAULT_RETRIEVAL_LIMIT, ge=1)
    semantic_threshold: float = Field(default=DEFAULT_SEMANTIC_THRESHOLD, ge=-1.0, le=1.0)
    entity_semantic_threshold: float = Field(
        default=DEFAULT_ENTITY_SEMANTIC_THRESHOLD, ge=-1.0, le=1.0
    )
    detect_entities: bool = True  # scan query text for mentions in addition to hints
    type_boost_scale: float = Field(default=1.0, ge=0.0)
    max_type_boost: float = Field(default=MAX_RETRIEVAL_TYPE_BOOST, ge=0.0)
    feedback_step: float = Field(default=FEEDBACK_STEP, ge=0.0)
    feedback_cap: float = Field(default=FEEDBACK_CAP, ge=0.0)


class ExtractionConfig(BaseModel):
    """Knobs for the memory extractor."""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1)
    duplicate_threshold: float = Field(default=DEFAULT_DUPLICATE_THRESHOLD, ge=0.0, le=1.0)
    store_pending_embeddings: bool = False


class Settings(BaseModel):
    """Immutable runtime configuration derived from environment variables."""

    model_config = ConfigDict(frozen=True)

    memory_path: Path = Path(".memorylane")
    session_id: str = "default"
    log_level: str = "INFO"

    embedding_provider: EmbeddingProviderName = DEFAULT_EMBEDDING_PROVIDER
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = Field(default=DEFAULT_EMBEDDING_DIMENSION, ge=1)
    embedding_timeout: float = Field(default=DEFAULT_EMBEDDING_TIMEOUT, gt=0)

    anthropic_api_key: str | None = Field(default=None, repr=False)
    extraction_model: str = DEFAULT_EXTRACTION_MODEL
    extraction_max_tokens: int = Field(default=DEFAULT_EXTRACTION_MAX_TOKENS, ge=1)
    extraction_timeout: float = Field(default=DEFAULT_EXTRACTION_TIMEOUT, gt=0)

    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1)
    duplicate_threshold: float = Field(default=DEFAULT_DUPLICATE_THRESHOLD, ge=0.0, le=1.0)
    semantic_threshold: float = Field(default=DEFAULT_SEMANTIC_THRESHOLD, ge=-1.0, le=1.0)
    entity_semantic_threshold: float = Field(
        default=DEFAULT_ENTITY_SEMANTIC_THRESHOLD, ge=-1.0, le=1.0
    )
    retrieval_limit: int = Field(default=DEFAULT_RETRIEVAL_LIMIT, ge=1)
    store_pending_embeddings: bool = False

    @model_validator(mode="before")
    @classmethod
    def _local_model_defaults(cls, data: Any) -> Any:
        # Ollama model names are not sentence-transformers ids
        if isinstance(data, dict) and data.get("embedding_provider") == "sentence-transformers":
            data = dict(data)
            data.setdefault("embedding_model", DEFAULT_LOCAL_EMBEDDING_MODEL)
            data.setdefault("embedding_dimensions", DEFAULT_LOCAL_EMBEDDING_DIMENSION)
        return data

    @model_validator(mode="after")
    def _check_log_level(self) -> "Settings":
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown LOG_LEVEL '{self.log_level}'")
        return self

    @property
    def db_path(self) -> Path:
        return self.memory_path / DB_FILENAME

    @property
    def log_path(self) -> Path:
        return self.memory_path / LOG_FILENAME

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "Settings":
        """Build settings from the environment (``os.environ`` by default).

        Keyword overrides win over environment values.

        Raises:
            ConfigError: If a value cannot be parsed or is out of range.
        """
        env = os.environ if environ is None else environ

        mapping = {
            "memory_path": "MEMORY_PATH",
            "session_id": "SESSION_ID",
            "log_level": "LOG_LEVEL",
            "embedding_provider": "EMBEDDING_PROVIDER",
            "ollama_base_url": "OLLAMA_BASE_URL",
            "embedding_model": "EMBEDDING_MODEL",
            "embedding_dimensions": "EMBEDDING_DIMENSIONS",
            "embedding_timeout": "EMBEDDING_TIMEOUT",
            "anthropic_api_key": "ANTHROPIC_API_KEY",
            "extraction_model": "EXTRACTION_MODEL",
            "extraction_max_tokens": "EXTRACTION_MAX_TOKENS",
            "extraction_timeout": "EXTRACTION_TIMEOUT",
            "chunk_size": "CHUNK_SIZE",
            "duplicate_threshold": "DUPLICATE_THRESHOLD",
            "semantic_threshold": "SEMANTIC_THRESHOLD",
            "entity_semantic_threshold": "ENTITY_SEMANTIC_THRESHOLD",
            "retrieval_limit": "RETRIEVAL_LIMIT",
        }

        values: dict = {}
        for field_name, var in mapping.items():
            raw = env.get(var)
            if raw is None or not raw.strip():
                continue
            values[field_name] = raw.strip()

        pending = env.get("STORE_PENDING_EMBEDDINGS")
        if pending is not None and pending.strip():
            values["store_pending_embeddings"] = pending.strip().lower() in _TRUE_VALUES

        if "embedding_provider" in values:
            values["embedding_provider"] = values["embedding_provider"].lower()

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            settings = cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        logger.debug("Settings resolved: %s", settings.masked())
        return settings

    def masked(self) -> dict:
        """Settings as a dict with secrets masked, safe to log."""
        data = self.model_dump(mode="json")
        key = self.anthropic_api_key
        if not key:
            data["anthropic_api_key"] = "<empty>"
        elif len(key) <= 8:
            data["anthropic_api_key"] = "*" * len(key)
        else:
            data["anthropic_api_key"] = f"{key[:4]}***{key[-4:]}"
        return data

    def retrieval_config(self) -> RetrievalConfig:
        return RetrievalConfig(
            limit=self.retrieval_limit,
            semantic_threshold=self.semantic_threshold,
            entity_semantic_threshold=self.entity_semantic_threshold,
        )

    def extraction_config(self) -> ExtractionConfig:
        return ExtractionConfig(
            chunk_size=self.chunk_size,
            duplicate_threshold=self.duplicate_threshold,
            store_pending_embeddings=self.store_pending_embeddings,
        )


def setup_logging(settings: Settings) -> None:
    """Log to ``<memory_path>/memorylane.log`` and stderr.

    When the root logger already has handlers only its level is changed.
    """
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(settings.log_level.upper())
        return
    settings.memory_path.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(settings.log_path, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )
