"""Tests for the ranking formula."""

from datetime import timedelta

import pytest

from memorylane.models import MEMORY_TYPES, Memory, utc_now
from memorylane.scoring import feedback_adjustment, final_score, rank_key, retrieval_type_boost


class TestTypeBoost:
    def test_priority_tiers(self):
        assert retrieval_type_boost("correction") == pytest.approx(0.15)
        assert retrieval_type_boost("insight") == pytest.approx(0.10)
        assert retrieval_type_boost("workflow_note") == pytest.approx(0.05)

    def test_every_type_has_a_boost(self):
        for name in MEMORY_TYPES:
            assert 0 < retrieval_type_boost(name) <= 0.15

    def test_scale_and_cap(self):
        assert retrieval_type_boost("insight", scale=0.5) == pytest.approx(0.05)
        assert retrieval_type_boost("correction", scale=2.0) == pytest.approx(0.15)
        assert retrieval_type_boost("correction", scale=2.0, cap=0.25) == pytest.approx(0.25)

    def test_unknown_type(self):
        assert retrieval_type_boost("opinion") == 0.0


class TestFeedbackAdjustment:
    def test_zero_net_is_zero(self):
        assert feedback_adjustment(0, 0) == 0.0
        assert feedback_adjustment(4, 4) == 0.0

    def test_steps(self):
        assert feedback_adjustment(3, 0) == pytest.approx(0.06)
        assert feedback_adjustment(1, 3) == pytest.approx(-0.04)

    def test_capped_both_ways(self):
        assert feedback_adjustment(100, 0) == pytest.approx(0.1)
        assert feedback_adjustment(0, 100) == pytest.approx(-0.1)

    def test_monotonic_in_net_feedback(self):
        values = [feedback_adjustment(p, 3) for p in range(12)]
        assert values == sorted(values)


class TestFinalScore:
    def test_takes_max_of_entity_and_similarity(self):
        assert final_score(1.0, 0.7, 0.1, 0.0) == pytest.approx(1.1)
        assert final_score(0.0, 0.7, 0.1, 0.02) == pytest.approx(0.82)

    def test_missing_similarity(self):
        assert final_score(1.0, None, 0.05, -0.1) == pytest.approx(0.95)
        assert final_score(0.0, None, 0.05, 0.0) == pytest.approx(0.05)


def test_rank_key_orders_by_score_recency_confidence():
    now = utc_now()

    def memory(**kwargs) -> Memory:
        data = {"type": "insight", "title": "t", "content": "c", "confidence_score": 0.5,
                "last_observed_at": now}
        data.update(kwargs)
        return Memory(**data)

    best = memory()
    recent = memory(last_observed_at=now + timedelta(seconds=1))
    confident = memory(confidence_score=0.9)

    items = [(0.5, best), (0.6, best), (0.5, recent), (0.5, confident)]
    ordered = sorted(items, key=lambda pair: rank_key(*pair))
    assert ordered[0][0] == 0.6
    assert ordered[1][1] is recent
    assert ordered[2][1] is confident
