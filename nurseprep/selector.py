"""
Question selection: uniform or difficulty-balanced sampling of a pool into one attempt's assignment.
Pure functions; the pool is fetched once by the caller before selection runs.
"""
import logging
import random
from collections import Counter
from typing import Dict, List, Optional

from .errors import ExamConfigError, InsufficientQuestionsError
from .models import Difficulty, Question

logger = logging.getLogger(__name__)

APPROVED = "approved"


def eligible_questions(pool: List[Question], approved_only: bool = False) -> List[Question]:
    """Drop duplicate ids (first wins) and, if asked, anything not approved by review."""
    seen = set()
    out = []
    for q in pool:
        if q.id in seen:
            continue
        if approved_only and (q.review_status or APPROVED) != APPROVED:
            continue
        seen.add(q.id)
        out.append(q)
    return out


def _tier_quotas(count: int, targets: Dict[str, float]) -> Dict[Difficulty, int]:
    """
    Split count across tiers by ratio (largest remainder), so quotas always sum to count.

    Example: count=10, {easy: .3, medium: .5, hard: .2} -> {EASY: 3, MEDIUM: 5, HARD: 2}
    """
    weights = {}
    for name, ratio in targets.items():
        tier = Difficulty.parse(name)
        if tier is None:
            raise ExamConfigError(f"Unknown difficulty tier: {name!r}")
        if ratio < 0:
            raise ExamConfigError(f"Negative ratio for {name!r}")
        weights[tier] = weights.get(tier, 0.0) + float(ratio)

    total = sum(weights.values())
    if total <= 0:
        raise ExamConfigError("Difficulty targets must have a positive total")

    exact = {tier: count * w / total for tier, w in weights.items()}
    quotas = {tier: int(v) for tier, v in exact.items()}
    remainder = count - sum(quotas.values())
    by_fraction = sorted(exact, key=lambda t: exact[t] - quotas[t], reverse=True)
    for tier in by_fraction[:remainder]:
        quotas[tier] += 1
    return quotas


def select_questions(
    pool: List[Question],
    count: int,
    difficulty_targets: Optional[Dict[str, float]] = None,
    rng: Optional[random.Random] = None,
    approved_only: bool = False,
) -> List[Question]:
    """
    Pick exactly `count` questions for one attempt.

    Args:
        pool: Pre-fetched question pool
        count: Number of questions the attempt needs
        difficulty_targets: Optional tier ratios, e.g. {"easy": 0.3, "medium": 0.5, "hard": 0.2}.
            A short tier is topped up from the other tiers, never under-filled.
        rng: Random source (seed it for reproducible assignments)
        approved_only: Only use questions whose review_status is approved (or unset)

    Returns:
        List of `count` distinct questions in randomized order

    Raises:
        InsufficientQuestionsError: if the (filtered) pool has fewer than `count` questions
        ExamConfigError: non-positive count, or difficulty targets with unknown tiers or no positive weight
    """
    if count <= 0:
        raise ExamConfigError("count must be positive")
    rng = rng or random.Random()
    candidates = eligible_questions(pool, approved_only)

    if len(candidates) < count:
        logger.warning(f"Pool too small: need {count}, have {len(candidates)} (approved_only={approved_only})")
        raise InsufficientQuestionsError(requested=count, available=len(candidates))

    if not difficulty_targets:
        return rng.sample(candidates, count)

    quotas = _tier_quotas(count, difficulty_targets)
    tiers: Dict[Optional[Difficulty], List[Question]] = {}
    for q in candidates:
        tiers.setdefault(q.difficulty, []).append(q)

    picked: List[Question] = []
    leftovers: List[Question] = []
    for tier, questions in tiers.items():
        rng.shuffle(questions)
        quota = quotas.get(tier, 0)
        picked.extend(questions[:quota])
        leftovers.extend(questions[quota:])

    deficit = count - len(picked)
    if deficit > 0:
        logger.info(f"Difficulty tiers short by {deficit}; topping up from other tiers")
        rng.shuffle(leftovers)
        picked.extend(leftovers[:deficit])

    rng.shuffle(picked)
    return picked


def pool_statistics(pool: List[Question]) -> Dict:
    """Question-bank stats: totals by difficulty and by topic."""
    by_difficulty = Counter(q.difficulty.value if q.difficulty else "unknown" for q in pool)
    by_topic = Counter(topic for q in pool for topic in q.topics)
    return {
        "total_questions": len(pool),
        "by_difficulty": dict(by_difficulty),
        "by_topic": dict(by_topic),
    }
