"""Decay-weighted scoring and maturity classification for bullets.

Every function here is pure: it reads a bullet and returns numbers or a
suggestion, and never mutates the bullet.
"""

from dataclasses import dataclass
from datetime import datetime

from rulebook.core.config import ScoringConfig
from rulebook.core.schema import MATURITY_RANK, Bullet, FeedbackEvent, Maturity

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class ScoreResult:
    effective_score: float
    helpful_weight: float
    harmful_weight: float
    maturity_suggestion: Maturity


def decay_weight(event: FeedbackEvent, now: datetime, half_life_days: float) -> float:
    """Weight of one event: 0.5 ** (age_days / half_life_days).

    Events timestamped in the future count as age zero.
    """
    age_days = max(0.0, (now - event.timestamp).total_seconds() / SECONDS_PER_DAY)
    return 0.5 ** (age_days / half_life_days)


def half_life_for(bullet: Bullet, config: ScoringConfig) -> float:
    return bullet.confidence_decay_half_life_days or config.decay_half_life_days


def decayed_weights(bullet: Bullet, now: datetime, config: ScoringConfig) -> tuple[float, float]:
    half_life = half_life_for(bullet, config)
    helpful = 0.0
    harmful = 0.0
    for event in bullet.feedback_events:
        w = decay_weight(event, now, half_life)
        if event.type == "helpful":
            helpful += w
        else:
            harmful += w
    return helpful, harmful


def effective_score(bullet: Bullet, now: datetime, config: ScoringConfig) -> float:
    helpful, harmful = decayed_weights(bullet, now, config)
    return helpful - config.harmful_multiplier * harmful


def suggest_maturity(bullet: Bullet, score: float, config: ScoringConfig) -> Maturity:
    """Suggest a maturity from non-decayed counts.

    The suggestion never ranks below the bullet's current maturity; the only
    backward move is to ``deprecated`` once harmful feedback exceeds the
    prune threshold. Pinned bullets are never suggested for deprecation.
    """
    helpful, harmful = bullet.helpful_count, bullet.harmful_count
    current = bullet.maturity

    if current == "deprecated":
        return "deprecated"
    if harmful > config.prune_harmful_threshold and not bullet.pinned:
        return "deprecated"

    suggested: Maturity = "candidate"
    total = helpful + harmful
    if total >= config.min_feedback_for_active and score > 0:
        suggested = "established"
        harmful_ratio = harmful / total if total else 0.0
        if (
            helpful >= config.min_helpful_for_proven
            and harmful_ratio <= config.max_harmful_ratio_for_proven
        ):
            suggested = "proven"

    if MATURITY_RANK[suggested] < MATURITY_RANK[current]:
        return current
    return suggested


def score(bullet: Bullet, now: datetime, config: ScoringConfig) -> ScoreResult:
    """Compute the decay-weighted effective score and maturity suggestion.

    Args:
        bullet: Bullet to score
        now: Reference time for event age
        config: Scoring thresholds and weights

    Returns:
        ScoreResult with the effective score and suggested maturity
    """
    helpful_w, harmful_w = decayed_weights(bullet, now, config)
    value = helpful_w - config.harmful_multiplier * harmful_w
    return ScoreResult(
        effective_score=value,
        helpful_weight=helpful_w,
        harmful_weight=harmful_w,
        maturity_suggestion=suggest_maturity(bullet, value, config),
    )


def last_feedback_at(bullet: Bullet) -> datetime | None:
    if not bullet.feedback_events:
        return None
    return max(e.timestamp for e in bullet.feedback_events)


def is_stale(bullet: Bullet, now: datetime, stale_days: int) -> bool:
    """True when the newest feedback event is older than ``stale_days``.

    Bullets without feedback are judged by their last update.
    """
    last = last_feedback_at(bullet) or bullet.updated_at
    return (now - last).total_seconds() / SECONDS_PER_DAY > stale_days
