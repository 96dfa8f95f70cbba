"""Tests for the SQLite database and memory store."""

from datetime import timedelta

import pytest

from memorylane.database import Database
from memorylane.errors import InvalidInput, MemoryNotFound, StorageUnavailable
from memorylane.memory_store import MemoryQuery, MemoryStore
from memorylane.models import RecallRecord, utc_now


# --- Database ---


async def test_schema_version(db):
    assert await db.schema_version() == 1


async def test_closed_database_raises_storage_unavailable(tmp_path):
    database = Database(tmp_path / "closed.db")
    with pytest.raises(StorageUnavailable):
        _ = database.conn


async def test_reopen_keeps_data(tmp_path, make_memory):
    path = tmp_path / "persist.db"
    async with Database(path) as database:
        await MemoryStore(database).insert(make_memory(title="Persisted"))

    async with Database(path) as database:
        rows = await MemoryStore(database).query()
    assert [m.title for m in rows] == ["Persisted"]


async def test_transaction_rolls_back_on_error(db, store, make_memory):
    memory = make_memory(title="Original")
    await store.insert(memory)
    with pytest.raises(RuntimeError):
        async with db.transaction() as conn:
            await conn.execute("UPDATE memories SET title = ? WHERE id = ?", ("Changed", memory.id))
            raise RuntimeError("boom")
    assert (await store.require(memory.id)).title == "Original"


# --- Memory store ---


async def test_insert_and_get_round_trips_fields(store, make_memory):
    memory = make_memory(
        type="correction",
        category="tooling",
        embedding=[0.1, 0.2, 0.3],
        related_entity_ids=["E1"],
        evidence=["User: never use tabs"],
        session_id="s1",
    )
    await store.insert(memory)

    loaded = await store.require(memory.id)
    assert loaded.type == "correction"
    assert loaded.category == "tooling"
    assert loaded.related_entity_ids == ["E1"]
    assert loaded.evidence == ["User: never use tabs"]
    assert loaded.embedding == pytest.approx([0.1, 0.2, 0.3], abs=1e-6)
    assert loaded.first_observed_at == memory.first_observed_at


async def test_require_missing_raises(store):
    with pytest.raises(MemoryNotFound):
        await store.require("nope")


async def test_update_rejects_unknown_fields(store, make_memory):
    memory = make_memory()
    await store.insert(memory)
    with pytest.raises(InvalidInput):
        await store.update(memory.id, recall_count=10)


async def test_update_missing_memory_raises(store):
    with pytest.raises(MemoryNotFound):
        await store.update("missing", title="x")


async def test_merge_observation(store, make_memory):
    memory = make_memory(confidence_score=0.6, evidence=["first"])
    await store.insert(memory)

    merged = await store.merge_observation(memory.id, 0.8, "second")
    assert merged.times_observed == 2
    assert merged.confidence_score == pytest.approx(0.8)
    assert merged.evidence == ["first", "second"]
    assert merged.last_observed_at >= memory.last_observed_at

    merged = await store.merge_observation(memory.id, 0.5, "")
    assert merged.times_observed == 3
    assert merged.confidence_score == pytest.approx(0.8)  # never lowered
    assert merged.evidence == ["first", "second"]


async def test_record_recalls_increments_count(store, make_memory):
    memory = make_memory()
    await store.insert(memory)
    await store.record_recalls([
        RecallRecord(memory_id=memory.id, query_text="q", final_score=0.9, final_rank=1),
    ])
    assert (await store.require(memory.id)).recall_count == 1
    recall = await store.latest_recall(memory.id)
    assert recall.query_text == "q"
    assert recall.was_useful is None


async def test_feedback_attributed_to_latest_recall(store, make_memory):
    memory = make_memory()
    await store.insert(memory)
    await store.record_recalls([
        RecallRecord(
            memory_id=memory.id, session_id="s1", query_text="typescript?",
            final_score=0.77, final_rank=1,
        ),
    ])

    event = await store.add_feedback(memory.id, "positive", "s1")
    assert event.query_text == "typescript?"
    assert event.score == pytest.approx(0.77)
    assert (await store.require(memory.id)).positive_feedback == 1
    assert (await store.latest_recall(memory.id, "s1")).was_useful is True


async def test_feedback_validation(store, make_memory):
    memory = make_memory()
    await store.insert(memory)
    with pytest.raises(InvalidInput):
        await store.add_feedback(memory.id, "meh")
    with pytest.raises(MemoryNotFound):
        await store.add_feedback("missing", "negative")


async def test_query_filters(store, make_memory):
    await store.insert(make_memory(type="correction", title="Tabs", content="never use tabs"))
    await store.insert(make_memory(type="gap", title="No deploy", category="ops"))
    await store.insert(make_memory(type="insight", title="Pending", embedding_pending=True))

    corrections = await store.query(MemoryQuery(types=["correction"]))
    assert [m.title for m in corrections] == ["Tabs"]

    ops = await store.query(MemoryQuery(category="ops"))
    assert [m.title for m in ops] == ["No deploy"]

    pending = await store.get_pending_embeddings()
    assert [m.title for m in pending] == ["Pending"]

    text = await store.query(MemoryQuery(text="tabs"))
    assert [m.title for m in text] == ["Tabs"]


async def test_search_escapes_like_wildcards(store, make_memory):
    await store.insert(make_memory(title="100% coverage"))
    await store.insert(make_memory(title="1000 users"))
    results = await store.search("100%")
    assert [m.title for m in results] == ["100% coverage"]


async def test_cleanup_old_only_removes_unrecalled_low_confidence(store, make_memory):
    old = utc_now() - timedelta(days=120)
    stale = make_memory(title="stale", confidence_score=0.2, first_observed_at=old)
    recalled = make_memory(
        title="recalled", confidence_score=0.2, first_observed_at=old, recall_count=1
    )
    confident = make_memory(title="confident", confidence_score=0.9, first_observed_at=old)
    fresh = make_memory(title="fresh", confidence_score=0.1)
    for memory in (stale, recalled, confident, fresh):
        await store.insert(memory)

    assert await store.cleanup_old() == 1
    remaining = {m.title for m in await store.query()}
    assert remaining == {"recalled", "confident", "fresh"}


async def test_statistics(store, make_memory):
    await store.insert(make_memory(type="correction", embedding=[1.0, 0.0]))
    await store.insert(make_memory(type="correction"))
    await store.insert(make_memory(type="gap", embedding_pending=True))

    stats = await store.statistics()
    assert stats["total"] == 3
    assert stats["by_type"]["correction"]["count"] == 2
    assert stats["embedding_coverage"] == pytest.approx(33.3)
    assert stats["embedding_pending"] == 1


async def test_ranked_listings(store, make_memory):
    old = make_memory(title="old", confidence_score=0.95,
                      first_observed_at=utc_now() - timedelta(days=30))
    popular = make_memory(title="popular", recall_count=7, positive_feedback=2, negative_feedback=2)
    loved = make_memory(title="loved", recall_count=1, positive_feedback=4, negative_feedback=1)
    barely_rated = make_memory(title="barely rated", positive_feedback=2)
    for memory in (old, popular, loved, barely_rated):
        await store.insert(memory)

    assert {m.title for m in await store.get_recent(days=7)} == {"popular", "loved", "barely rated"}
    assert [m.title for m in await store.get_high_confidence(0.9)] == ["old"]
    assert [m.title for m in await store.get_most_recalled()] == ["popular", "loved"]
    assert [m.title for m in await store.get_best_rated()] == ["loved", "popular"]


async def test_recall_statistics_without_feedback(store):
    stats = await store.recall_statistics()
    assert stats["total_recalls"] == 0
    assert stats["feedback_ratio"] is None


async def test_delete_cascades_recalls(store, db, make_memory):
    memory = make_memory()
    await store.insert(memory)
    await store.record_recalls([
        RecallRecord(memory_id=memory.id, query_text="q", final_score=0.5, final_rank=1),
    ])
    assert await store.delete(memory.id)
    row = await db.fetchone("SELECT COUNT(*) FROM session_recalls")
    assert row[0] == 0
