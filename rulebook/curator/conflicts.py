"""Lexical directive-conflict heuristics.

Flags a new bullet whose wording pulls against a live bullet on the same
subject: one says do, the other says avoid, or one says always while the
other carves out an exception.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass

from datasketch import MinHash  # type: ignore

from rulebook.core.schema import Bullet
from rulebook.utils import tokenize

NEGATIVE_MARKERS = ("never", "dont", "don't", "avoid", "forbid", "forbidden", "disable",
                    "prevent", "stop", "skip")
POSITIVE_MARKERS = ("always", "must", "required", "ensure", "use", "enable")
EXCEPTION_MARKERS = ("unless", "except", "only if", "only when", "except when")

NUM_PERM = 128


def _marker_re(markers: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(m) for m in markers)
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_NEG_RE = _marker_re(NEGATIVE_MARKERS)
_POS_RE = _marker_re(POSITIVE_MARKERS)
_EXC_RE = _marker_re(EXCEPTION_MARKERS)


@dataclass(frozen=True)
class DirectiveConflict:
    bullet_id: str
    content: str
    reason: str
    overlap: float


@dataclass
class _Profile:
    tokens: set[str]
    minhash: MinHash
    neg: bool
    pos: bool
    exc: bool

    @property
    def has_markers(self) -> bool:
        return self.neg or self.pos or self.exc


def _profile(text: str) -> _Profile:
    tokens = set(tokenize(text))
    m = MinHash(num_perm=NUM_PERM)
    for token in sorted(tokens):
        m.update(token.encode("utf8"))
    return _Profile(
        tokens=tokens,
        minhash=m,
        neg=bool(_NEG_RE.search(text)),
        pos=bool(_POS_RE.search(text)),
        exc=bool(_EXC_RE.search(text)),
    )


class DirectiveConflictDetector:
    """Caches per-bullet token profiles across a curation run."""

    def __init__(self) -> None:
        self._profiles: dict[tuple[str, str], _Profile] = {}

    def _bullet_profile(self, bullet: Bullet) -> _Profile:
        key = (bullet.id, bullet.content)
        if key not in self._profiles:
            self._profiles[key] = _profile(bullet.content)
        return self._profiles[key]

    def detect(self, content: str, existing: Iterable[Bullet]) -> list[DirectiveConflict]:
        new = _profile(content)
        if not new.tokens:
            return []

        conflicts = []
        for bullet in existing:
            if not bullet.is_live or bullet.state == "retired":
                continue
            other = self._bullet_profile(bullet)
            if not other.tokens:
                continue

            min_overlap = 0.1 if (new.has_markers or other.has_markers) else 0.2
            small, large = sorted((len(new.tokens), len(other.tokens)))
            if small / large < min_overlap:
                continue
            overlap = new.minhash.jaccard(other.minhash)
            if overlap < min_overlap:
                continue

            reason = None
            if new.neg != other.neg:
                reason = "Possible negation conflict (one says do, the other says avoid)"
            elif (new.pos and other.neg) or (other.pos and new.neg):
                reason = "Opposite directives (must vs avoid) on similar subject matter"
            elif (new.pos and other.exc) or (other.pos and new.exc):
                reason = "Potential scope conflict (always vs exception) on overlapping topic"
            if reason:
                conflicts.append(DirectiveConflict(bullet.id, bullet.content, reason, overlap))
        return conflicts
