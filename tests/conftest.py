"""Shared pytest fixtures for Memory Lane tests."""

import re

import pytest

from memorylane.config import ExtractionConfig, RetrievalConfig
from memorylane.database import Database
from memorylane.embeddings import EmbeddingHealth, EmbeddingStatus
from memorylane.entities import EntityResolver
from memorylane.entity_store import EntityStore
from memorylane.errors import EmbeddingUnavailable
from memorylane.extraction import MemoryExtractor
from memorylane.memory_store import MemoryStore
from memorylane.models import Memory
from memorylane.retrieval import RetrievalEngine


# Each concept is one vector dimension; a text lights up every concept it
# has a word for (matched by prefix, so "services" hits "service").
CONCEPTS = (
    ("typescript", "javascript", "python", "language", "code", "backend", "service"),
    ("meeting", "notion", "notes", "agenda"),
    ("deploy", "release", "staging", "production"),
    ("coffee", "lunch", "food"),
)

_WORD = re.compile(r"[a-z]+")


def keyword_vector(text: str) -> list[float]:
    words = _WORD.findall(text.lower())
    vector = [
        1.0 if any(w.startswith(k) for w in words for k in keywords) else 0.0
        for keywords in CONCEPTS
    ]
    vector.append(0.1)  # keeps concept-free texts off the zero vector
    return vector


class KeywordEmbedder:
    """Deterministic embedder for tests.

    ``vectors`` pins exact vectors for given texts; everything else gets a
    concept vector. Set ``fail`` to simulate an unreachable endpoint.
    """

    model_name = "keyword-test"
    is_placeholder = False

    def __init__(self):
        self.vectors: dict[str, list[float]] = {}
        self.fail = False
        self.calls: list[str] = []

    @property
    def dimensions(self) -> int:
        return len(CONCEPTS) + 1

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingUnavailable("embedding endpoint down")
        return self.vectors.get(text) or keyword_vector(text)

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    async def check_health(self) -> EmbeddingHealth:
        if self.fail:
            return EmbeddingHealth(status=EmbeddingStatus.UNAVAILABLE, error="down")
        return EmbeddingHealth(status=EmbeddingStatus.READY, embedding_model=self.model_name)

    async def aclose(self) -> None:
        return None


class ScriptedExtractionModel:
    """Returns queued responses in order and records every prompt."""

    def __init__(self, *responses: str):
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def complete(self, system: str, user: str) -> str:
        self.prompts.append(user)
        if not self.responses:
            return "[]"
        return self.responses.pop(0)


def _make_memory(**overrides) -> Memory:
    data = {
        "type": "insight",
        "title": "A memory",
        "content": "Something worth remembering",
        "confidence_score": 0.7,
    }
    data.update(overrides)
    return Memory(**data)


@pytest.fixture
def make_memory():
    """Factory for Memory objects with sensible defaults."""
    return _make_memory


@pytest.fixture
async def db(tmp_path):
    """Open database in a temporary directory, closed after the test."""
    database = Database(tmp_path / "test.db")
    await database.open()
    yield database
    await database.close()


@pytest.fixture
def store(db):
    return MemoryStore(db)


@pytest.fixture
def entity_store(db):
    return EntityStore(db)


@pytest.fixture
def resolver(entity_store):
    return EntityResolver(entity_store)


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def model():
    return ScriptedExtractionModel()


@pytest.fixture
def extractor(store, resolver, embedder, model):
    return MemoryExtractor(store, resolver, embedder, model, config=ExtractionConfig(chunk_size=4))


@pytest.fixture
def retriever(store, resolver, embedder):
    return RetrievalEngine(store, resolver, embedder, config=RetrievalConfig(), session_id="test")
