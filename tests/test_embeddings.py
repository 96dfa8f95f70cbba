"""Tests for embedding providers, the vector codec and cosine similarity."""

import json
import math

import httpx
import pytest

from memorylane.config import Settings
from memorylane.embeddings import (
    EmbeddingStatus,
    HashEmbeddingProvider,
    OllamaEmbeddingProvider,
    SentenceTransformerProvider,
    create_provider,
    decode_vector,
    encode_vector,
)
from memorylane.errors import EmbeddingUnavailable, InvalidInput, OperationTimeout
from memorylane.similarity import DuplicateDetector, cosine_similarity, find_similar


def ollama(handler, dimensions: int = 3) -> OllamaEmbeddingProvider:
    client = httpx.AsyncClient(
        base_url="http://ollama.test", transport=httpx.MockTransport(handler)
    )
    return OllamaEmbeddingProvider(model="test-embed", dimensions=dimensions, client=client)


def embed_handler(requests: list):
    """Answer /api/embed with one vector per input, [len(text), 1, 0]."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        vectors = [[float(len(text)), 1.0, 0.0] for text in body["input"]]
        return httpx.Response(200, json={"model": body["model"], "embeddings": vectors})

    return handler


# --- Cosine similarity ---


def test_cosine_identical_and_orthogonal():
    assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)


def test_cosine_is_symmetric_and_scale_invariant():
    a, b = [0.3, -0.2, 0.9], [0.1, 0.4, 0.5]
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert cosine_similarity([x * 7 for x in a], b) == pytest.approx(cosine_similarity(a, b))


def test_cosine_zero_vector_is_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_cosine_length_mismatch_raises():
    with pytest.raises(ValueError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_find_similar_skips_mismatched_dimensions(make_memory):
    good = make_memory(embedding=[1.0, 0.0])
    wrong = make_memory(embedding=[1.0, 0.0, 0.0])
    none = make_memory()
    results = find_similar([1.0, 0.0], [good, wrong, none], threshold=0.5)
    assert [m.id for m, _ in results] == [good.id]


def test_duplicate_detector_threshold(make_memory):
    near = make_memory(embedding=[1.0, 0.1])
    far = make_memory(embedding=[0.0, 1.0])
    detector = DuplicateDetector(0.9)
    match = detector.find_duplicate([1.0, 0.0], [far, near])
    assert match is not None
    assert match[0].id == near.id
    assert detector.find_duplicate([0.5, -1.0], [near]) is None


def test_duplicate_detector_rejects_bad_threshold():
    with pytest.raises(ValueError):
        DuplicateDetector(1.5)


# --- Codec ---


def test_vector_codec_is_little_endian_float32():
    blob = encode_vector([1.0, -2.5])
    assert len(blob) == 8
    assert decode_vector(blob) == [1.0, -2.5]


# --- Ollama ---


async def test_ollama_embed():
    requests: list = []
    provider = ollama(embed_handler(requests))
    vector = await provider.embed("hello")
    assert vector == [5.0, 1.0, 0.0]
    assert requests == [{"model": "test-embed", "input": ["hello"]}]


async def test_ollama_embed_many_batches_preserve_order():
    requests: list = []
    provider = ollama(embed_handler(requests))
    texts = ["x" * (i % 7 + 1) for i in range(150)]
    vectors = await provider.embed_many(texts)
    assert len(requests) == 2
    assert [len(r["input"]) for r in requests] == [100, 50]
    assert [v[0] for v in vectors] == [float(len(t)) for t in texts]


async def test_ollama_blank_text_is_invalid():
    provider = ollama(embed_handler([]))
    with pytest.raises(InvalidInput):
        await provider.embed("   ")


async def test_ollama_timeout_raises_operation_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(OperationTimeout) as exc_info:
        await ollama(handler).embed("hello")
    assert exc_info.value.retryable


async def test_ollama_connection_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(EmbeddingUnavailable):
        await ollama(handler).embed("hello")


async def test_ollama_http_error_is_unavailable():
    provider = ollama(lambda request: httpx.Response(404, json={"error": "model not found"}))
    with pytest.raises(EmbeddingUnavailable, match="HTTP 404"):
        await provider.embed("hello")


async def test_ollama_dimension_mismatch_fails_whole_batch():
    def handler(request):
        body = json.loads(request.content)
        vectors = [[1.0, 2.0, 3.0] for _ in body["input"]]
        vectors[-1] = [1.0, 2.0]
        return httpx.Response(200, json={"embeddings": vectors})

    with pytest.raises(EmbeddingUnavailable, match="dimensions"):
        await ollama(handler).embed_many(["a", "b", "c"])


async def test_ollama_count_mismatch_is_unavailable():
    provider = ollama(lambda request: httpx.Response(200, json={"embeddings": [[1.0, 0.0, 0.0]]}))
    with pytest.raises(EmbeddingUnavailable):
        await provider.embed_many(["a", "b"])


async def test_ollama_health_ready_and_cached():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"models": [{"name": "test-embed:latest"}]})

    provider = ollama(handler)
    health = await provider.check_health()
    assert health.status is EmbeddingStatus.READY
    assert health.dimension == 3

    await provider.check_health()
    assert calls == ["/api/tags"]


async def test_ollama_health_model_not_pulled():
    provider = ollama(lambda request: httpx.Response(200, json={"models": [{"name": "other"}]}))
    health = await provider.check_health()
    assert health.status is EmbeddingStatus.DEGRADED
    assert "not pulled" in health.error


async def test_ollama_health_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    health = await ollama(handler).check_health()
    assert health.status is EmbeddingStatus.UNAVAILABLE


# --- Hash placeholder ---


async def test_hash_provider_is_deterministic_unit_vectors():
    provider = HashEmbeddingProvider(dimensions=16)
    a = await provider.embed("same text")
    b = await provider.embed("same text")
    c = await provider.embed("different text")
    assert a == b
    assert a != c
    assert math.sqrt(sum(x * x for x in a)) == pytest.approx(1.0)
    assert provider.is_placeholder
    assert (await provider.check_health()).status is EmbeddingStatus.DEGRADED


def test_create_provider_by_name():
    provider = create_provider(Settings(embedding_provider="hash", embedding_dimensions=8))
    assert isinstance(provider, HashEmbeddingProvider)
    assert provider.dimensions == 8

    provider = create_provider(Settings(embedding_provider="ollama"))
    assert isinstance(provider, OllamaEmbeddingProvider)

    provider = create_provider(Settings(embedding_provider="sentence-transformers"))
    assert isinstance(provider, SentenceTransformerProvider)
    assert provider.model_name == "all-MiniLM-L6-v2"
