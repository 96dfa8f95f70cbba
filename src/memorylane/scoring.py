"""Ranking formula for retrieved memories.

Provides:
- retrieval_type_boost(): per-type boost, scaled for retrieval
- feedback_adjustment(): bounded bonus or penalty from net feedback
- final_score(): max(entity match, similarity) + boost + feedback
- rank_key(): sort key with recency and confidence tie-breaks
"""

from .constants import FEEDBACK_CAP, FEEDBACK_STEP, MAX_RETRIEVAL_TYPE_BOOST
from .models import MEMORY_TYPES, Memory


def retrieval_type_boost(
    memory_type: str,
    scale: float = 1.0,
    cap: float = MAX_RETRIEVAL_TYPE_BOOST,
) -> float:
    """Type boost used at ranking time.

    The extraction boost (15/10/5 points) as a fraction, times ``scale``,
    capped at ``cap``.

    Examples:
        >>> retrieval_type_boost("correction")
        0.15
        >>> retrieval_type_boost("gap")
        0.05
    """
    info = MEMORY_TYPES.get(memory_type)
    if info is None:
        return 0.0
    return min(cap, info.boost_fraction * scale)


def feedback_adjustment(
    positive: int,
    negative: int,
    step: float = FEEDBACK_STEP,
    cap: float = FEEDBACK_CAP,
) -> float:
    """``net * step`` clamped to ``[-cap, cap]``; zero net gives zero.

    Examples:
        >>> feedback_adjustment(3, 0)
        0.06
        >>> feedback_adjustment(0, 10)
        -0.1
    """
    net = positive - negative
    if net == 0:
        return 0.0
    return max(-cap, min(cap, round(net * step, 10)))


def final_score(
    entity_match: float,
    similarity: float | None,
    type_boost: float,
    feedback: float,
) -> float:
    """``max(entity_match, similarity) + type_boost + feedback``."""
    base = max(entity_match, similarity if similarity is not None else 0.0)
    return base + type_boost + feedback


def rank_key(score: float, memory: Memory) -> tuple:
    """Sort ascending: higher score, then more recent, then more confident first."""
    return (-score, -memory.last_observed_at.timestamp(), -memory.confidence_score)
