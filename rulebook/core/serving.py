"""Read-only queries over a playbook snapshot.

Nothing here takes the store lock: serving may observe a slightly stale
playbook while a curation run is in progress.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime

from rulebook.core.config import ScoringConfig
from rulebook.core.schema import Bullet, DeprecatedPattern, Playbook
from rulebook.core.scoring import SECONDS_PER_DAY, effective_score, is_stale, last_feedback_at
from rulebook.utils import STOPWORDS, tokenize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredBullet:
    bullet: Bullet
    relevance: float
    effective_score: float

    def to_dict(self) -> dict:
        return {
            "id": self.bullet.id,
            "content": self.bullet.content,
            "category": self.bullet.category,
            "type": self.bullet.type,
            "maturity": self.bullet.maturity,
            "relevance": round(self.relevance, 4),
            "effective_score": round(self.effective_score, 4),
        }


@dataclass(frozen=True)
class PatternWarning:
    pattern: str
    reason: str
    replacement: str | None


def _query_terms(query: str) -> set[str]:
    return {t for t in tokenize(query) if t not in STOPWORDS}


def relevance(bullet: Bullet, terms: set[str]) -> float:
    """Fraction of query terms found in the bullet's content, category or tags."""
    if not terms:
        return 0.0
    haystack = set(tokenize(bullet.content)) | set(tokenize(bullet.category))
    for tag in bullet.tags:
        haystack |= set(tokenize(tag))
    return len(terms & haystack) / len(terms)


def get_relevant_bullets(
    playbook: Playbook,
    query: str,
    config: ScoringConfig,
    now: datetime,
    top_k: int = 10,
    scope_key: str | None = None,
) -> list[ScoredBullet]:
    """Rank live bullets for a task description.

    Deprecated bullets are never returned. With an empty query every live
    bullet is eligible and ordering falls back to effective score.
    """
    terms = _query_terms(query)
    scored = []
    for bullet in playbook.live_bullets():
        if scope_key and bullet.scope_key and bullet.scope_key != scope_key:
            continue
        rel = relevance(bullet, terms)
        if terms and rel == 0.0:
            continue
        scored.append(ScoredBullet(bullet, rel, effective_score(bullet, now, config)))
    scored.sort(key=lambda s: (-s.relevance, -s.effective_score, s.bullet.id))
    return scored[:top_k]


def top_bullets(playbook: Playbook, config: ScoringConfig, now: datetime,
                limit: int = 10) -> list[ScoredBullet]:
    return get_relevant_bullets(playbook, "", config, now, top_k=limit)


@dataclass(frozen=True)
class StaleBullet:
    bullet: Bullet
    days_since_feedback: float
    last_feedback: datetime | None
    effective_score: float

    def to_dict(self) -> dict:
        return {
            "id": self.bullet.id,
            "content": self.bullet.content,
            "category": self.bullet.category,
            "maturity": self.bullet.maturity,
            "days_since_feedback": int(self.days_since_feedback),
            "last_feedback": self.last_feedback.isoformat() if self.last_feedback else None,
            "effective_score": round(self.effective_score, 4),
        }


def stale_bullets(playbook: Playbook, config: ScoringConfig, now: datetime,
                  days: int) -> list[StaleBullet]:
    """Live bullets with no feedback in more than ``days`` days, stalest first.

    Bullets that never received feedback are aged from their last update.
    """
    found = []
    for bullet in playbook.live_bullets():
        if not is_stale(bullet, now, days):
            continue
        last = last_feedback_at(bullet)
        age = (now - (last or bullet.updated_at)).total_seconds() / SECONDS_PER_DAY
        found.append(StaleBullet(bullet, age, last, effective_score(bullet, now, config)))
    found.sort(key=lambda s: (-s.days_since_feedback, s.bullet.id))
    return found


def _pattern_matches(pattern: str, text: str) -> bool:
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        try:
            return re.search(pattern[1:-1], text, re.IGNORECASE) is not None
        except re.error as e:
            logger.warning(f"Invalid deprecated pattern {pattern!r}: {e}")
            return False
    return pattern.lower() in text.lower()


def check_deprecated_patterns(
    patterns: list[DeprecatedPattern], text: str
) -> list[PatternWarning]:
    """Flag text that matches a deprecated pattern (substring, or /regex/)."""
    return [
        PatternWarning(p.pattern, p.reason, p.replacement)
        for p in patterns
        if _pattern_matches(p.pattern, text)
    ]


def playbook_stats(playbook: Playbook, config: ScoringConfig, now: datetime) -> dict:
    by_maturity = Counter(b.maturity for b in playbook.bullets)
    by_state = Counter(b.state for b in playbook.bullets)
    live = playbook.live_bullets()
    return {
        "name": playbook.name,
        "total": len(playbook.bullets),
        "live": len(live),
        "pinned": sum(1 for b in live if b.pinned),
        "anti_patterns": sum(1 for b in live if b.is_negative),
        "by_maturity": dict(sorted(by_maturity.items())),
        "by_state": dict(sorted(by_state.items())),
        "deprecated_patterns": len(playbook.deprecated_patterns),
        "total_reflections": playbook.metadata.total_reflections,
        "total_sessions_processed": playbook.metadata.total_sessions_processed,
        "top": [s.to_dict() for s in top_bullets(playbook, config, now, limit=5)],
    }
