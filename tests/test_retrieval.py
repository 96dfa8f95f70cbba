"""Tests for dual retrieval, ranking and feedback."""

import math
from datetime import timedelta

import pytest

from memorylane.config import RetrievalConfig
from memorylane.embeddings import HashEmbeddingProvider
from memorylane.errors import InvalidInput, MemoryNotFound, OperationTimeout
from memorylane.models import utc_now
from memorylane.retrieval import PLACEHOLDER_REASON, RetrievalEngine

QUERY = "how do we handle releases"


def at_similarity(sim: float) -> list[float]:
    """2-D unit vector with cosine ``sim`` to [1, 0]."""
    return [sim, math.sqrt(1 - sim * sim)]


@pytest.fixture
def pinned(embedder):
    embedder.vectors[QUERY] = [1.0, 0.0]
    return embedder


async def test_blank_query_is_invalid(retriever):
    with pytest.raises(InvalidInput):
        await retriever.retrieve("   ")


async def test_ranking_combines_similarity_boost_and_feedback(retriever, store, pinned, make_memory):
    a = make_memory(type="workflow_note", title="A", embedding=at_similarity(0.85))
    b = make_memory(type="correction", title="B", embedding=at_similarity(0.45), positive_feedback=5)
    c = make_memory(type="gap", title="C", embedding=at_similarity(0.55), negative_feedback=10)
    for memory in (c, b, a):
        await store.insert(memory)

    result = await retriever.retrieve(QUERY, config=RetrievalConfig(semantic_threshold=0.3))

    assert [r.memory.title for r in result.results] == ["A", "B", "C"]
    assert [r.final_score for r in result.results] == pytest.approx([0.90, 0.70, 0.50])
    first = result.results[0]
    assert first.retrieval_method == "semantic"
    assert first.similarity == pytest.approx(0.85)
    assert first.type_boost == pytest.approx(0.05)
    assert result.results[1].feedback_adjustment == pytest.approx(0.1)
    assert result.results[2].feedback_adjustment == pytest.approx(-0.1)
    assert not result.degraded
    assert result.semantic_threshold == 0.3


async def test_limit_truncates_after_ranking(retriever, store, pinned, make_memory):
    for i in range(8):
        await store.insert(make_memory(title=f"m{i}", embedding=at_similarity(0.6 + i * 0.04)))
    result = await retriever.retrieve(QUERY, config=RetrievalConfig(limit=3))
    assert [r.memory.title for r in result.results] == ["m7", "m6", "m5"]


async def test_ties_broken_by_recency(retriever, store, pinned, make_memory):
    older = make_memory(
        title="older",
        embedding=at_similarity(0.7),
        last_observed_at=utc_now() - timedelta(days=1),
    )
    newer = make_memory(title="newer", embedding=at_similarity(0.7))
    await store.insert(older)
    await store.insert(newer)
    result = await retriever.retrieve(QUERY)
    assert [r.memory.title for r in result.results] == ["newer", "older"]


async def test_entity_path_scores_full_match(retriever, store, resolver, pinned, make_memory):
    acme = await resolver.find_or_create("business", "Acme")
    linked = make_memory(title="linked", related_entity_ids=[acme.id], embedding=[0.0, 1.0])
    await store.insert(linked)

    result = await retriever.retrieve(QUERY, hints=["Acme"])

    [ranked] = result.results
    assert ranked.retrieval_method == "entity"
    assert ranked.entity_match_score == 1.0
    assert ranked.matched_entities == ["Acme"]
    assert ranked.final_score == pytest.approx(1.10)
    assert result.resolved_entity_ids == [acme.id]


async def test_entity_detected_in_query_text(retriever, store, resolver, embedder, make_memory):
    phoenix = await resolver.find_or_create("project", "Phoenix")
    await store.insert(make_memory(title="phoenix note", related_entity_ids=[phoenix.id]))

    result = await retriever.retrieve("what is the status of Phoenix?")
    assert [r.memory.title for r in result.results] == ["phoenix note"]


async def test_hybrid_when_both_paths_match(retriever, store, resolver, pinned, make_memory):
    acme = await resolver.find_or_create("business", "Acme")
    await store.insert(make_memory(related_entity_ids=[acme.id], embedding=at_similarity(0.8)))

    [ranked] = (await retriever.retrieve(QUERY, hints=["Acme"])).results
    assert ranked.retrieval_method == "hybrid"
    assert ranked.similarity == pytest.approx(0.8)
    assert ranked.final_score == pytest.approx(1.10)  # max(1.0, 0.8) + insight boost


async def test_entity_match_lowers_semantic_threshold(retriever, store, resolver, pinned, make_memory):
    await resolver.find_or_create("business", "Acme")
    await store.insert(make_memory(title="borderline", embedding=at_similarity(0.45)))

    without = await retriever.retrieve(QUERY)
    assert without.results == []
    assert without.semantic_threshold == 0.5

    with_hint = await retriever.retrieve(QUERY, hints=["Acme"])
    assert [r.memory.title for r in with_hint.results] == ["borderline"]
    assert with_hint.semantic_threshold == 0.4


async def test_unknown_hint_does_not_lower_threshold(retriever, store, pinned, make_memory):
    await store.insert(make_memory(embedding=at_similarity(0.45)))
    result = await retriever.retrieve(QUERY, hints=["Nobody"])
    assert result.results == []
    assert result.resolved_entity_ids == []


async def test_degraded_when_embeddings_unavailable(retriever, store, resolver, embedder, make_memory):
    acme = await resolver.find_or_create("business", "Acme")
    await store.insert(make_memory(title="linked", related_entity_ids=[acme.id]))
    await store.insert(make_memory(title="semantic only", embedding=[1.0, 0.0]))
    embedder.fail = True

    result = await retriever.retrieve(QUERY, hints=["Acme"])

    assert result.degraded
    assert result.degraded_reason == "embedding endpoint down"
    assert result.semantic_threshold is None
    assert [r.memory.title for r in result.results] == ["linked"]


async def test_timeout_propagates(retriever, embedder):
    async def slow(text):
        raise OperationTimeout("too slow")

    embedder.embed = slow
    with pytest.raises(OperationTimeout):
        await retriever.retrieve(QUERY)


async def test_placeholder_embeddings_mark_degraded(store, resolver, make_memory):
    provider = HashEmbeddingProvider(dimensions=8)
    retriever = RetrievalEngine(store, resolver, provider)
    await store.insert(make_memory(
        content="exact text", embedding=await provider.embed("exact text")
    ))

    result = await retriever.retrieve("exact text")
    assert result.degraded
    assert result.degraded_reason == PLACEHOLDER_REASON
    assert len(result.results) == 1


async def test_recalls_are_counted_and_logged(retriever, store, pinned, make_memory):
    memory = make_memory(embedding=at_similarity(0.9))
    await store.insert(memory)

    result = await retriever.retrieve(QUERY)
    assert result.results[0].memory.recall_count == 1
    assert (await store.require(memory.id)).recall_count == 1

    recall = await store.latest_recall(memory.id, "test")
    assert recall.query_text == QUERY
    assert recall.final_rank == 1
    assert recall.final_score == pytest.approx(result.results[0].final_score)


async def test_feedback_moves_score_monotonically(retriever, store, pinned, make_memory):
    memory = make_memory(embedding=at_similarity(0.7))
    await store.insert(memory)

    async def score() -> float:
        return (await retriever.retrieve(QUERY)).results[0].final_score

    baseline = await score()
    await retriever.submit_feedback(memory.id, "positive")
    after_positive = await score()
    assert after_positive == pytest.approx(baseline + 0.02)

    for _ in range(3):
        await retriever.submit_feedback(memory.id, "negative")
    after_negative = await score()
    assert after_negative < after_positive
    assert after_negative == pytest.approx(baseline - 0.04)


async def test_feedback_is_capped(retriever, store, pinned, make_memory):
    memory = make_memory(embedding=at_similarity(0.7), positive_feedback=50)
    await store.insert(memory)
    [ranked] = (await retriever.retrieve(QUERY)).results
    assert ranked.feedback_adjustment == pytest.approx(0.1)


async def test_feedback_validation(retriever):
    with pytest.raises(InvalidInput):
        await retriever.submit_feedback("any", "neutral")
    with pytest.raises(MemoryNotFound):
        await retriever.submit_feedback("missing", "positive")


async def test_feedback_attributes_recall_query(retriever, store, pinned, make_memory):
    memory = make_memory(embedding=at_similarity(0.9))
    await store.insert(memory)
    await retriever.retrieve(QUERY)

    event = await retriever.submit_feedback(memory.id, "positive")
    assert event.query_text == QUERY
    assert event.session_id == "test"

    stats = await retriever.statistics()
    assert stats["total_recalls"] == 1
    assert stats["feedback_ratio"] == 1.0


async def test_positive_feedback_counts_accumulate(retriever, store, make_memory):
    memory = make_memory(negative_feedback=0)
    await store.insert(memory)

    for _ in range(3):
        await retriever.submit_feedback(memory.id, "positive")

    stored = await store.require(memory.id)
    assert stored.positive_feedback == 3
    assert stored.negative_feedback == 0


async def test_typescript_preference_end_to_end(extractor, retriever, model):
    model.responses.append("""[
      {
        "type": "commitment",
        "category": "language-preference",
        "title": "TypeScript for new backend services",
        "content": "Always use TypeScript for new backend services",
        "source_excerpt": "User: Always use TypeScript for new backend services.",
        "related_entities": [],
        "confidence_score": 85,
        "reasoning": "Stated preference"
      }
    ]""")
    extracted = await extractor.extract_from_chunk(
        "User: Always use TypeScript for new backend services. "
        "Assistant: Noted, I'll use TypeScript going forward."
    )
    [memory] = extracted.created
    assert memory.type == "commitment"
    assert "TypeScript" in memory.content
    assert memory.confidence_score > 0.7

    result = await retriever.retrieve("what language should I use for a new service")

    top5 = result.results[:5]
    assert memory.id in [r.id for r in top5]
    ranked = next(r for r in top5 if r.id == memory.id)
    assert ranked.retrieval_method == "semantic"
    assert ranked.type_boost == pytest.approx(0.15)
    assert ranked.final_score == pytest.approx(
        max(ranked.entity_match_score, ranked.similarity) + 0.15 + ranked.feedback_adjustment
    )
