# rulebook/curator/semantic_matcher.py

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

import numpy as np

from rulebook.core.schema import Bullet
from rulebook.core.storage.embedding_store import (
    EmbeddingCache,
    EmbeddingProvider,
    NullEmbeddingProvider,
)
from rulebook.utils import content_hash

logger = logging.getLogger(__name__)

Verdict = Literal["none", "duplicate", "conflict"]


@dataclass(frozen=True)
class SimilarityResult:
    verdict: Verdict
    match_id: str | None = None
    similarity: float | None = None
    tier: Literal["exact", "hash", "embedding"] | None = None


NO_MATCH = SimilarityResult(verdict="none")


class SimilarityService:
    """
    Detects near-duplicate or conflicting bullet content.

    Tiers, cheapest first:
      1. exact match after trimming
      2. normalized content hash (case and whitespace insensitive)
      3. embedding cosine >= threshold; same polarity is a duplicate, opposite
         polarity over an overlapping category or tags is a conflict

    Tiers 1-2 also compare against deprecated bullets so retired content is not
    re-added. Tier 3 only looks at live bullets and is skipped entirely when the
    provider is disabled or fails.
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        cache: EmbeddingCache | None = None,
        threshold: float = 0.85,
        allow_compute: bool = True,
    ):
        self.provider = provider if provider is not None else NullEmbeddingProvider()
        self.cache = cache if cache is not None else EmbeddingCache(None, self.provider.model_name)
        self.threshold = threshold
        self.allow_compute = allow_compute
        self._text_vectors: dict[str, np.ndarray] = {}
        self.degraded = False

    @property
    def semantic_enabled(self) -> bool:
        return self.provider.enabled and not self.degraded

    def frozen(self) -> "SimilarityService":
        """View sharing this service's caches that never calls the provider."""
        view = SimilarityService(self.provider, self.cache, self.threshold, allow_compute=False)
        view._text_vectors = self._text_vectors
        view.degraded = self.degraded
        return view

    def check(
        self,
        content: str,
        existing: Iterable[Bullet],
        *,
        is_negative: bool = False,
        category: str | None = None,
        tags: Iterable[str] = (),
    ) -> SimilarityResult:
        """Compare candidate content against existing bullets.

        Args:
            content: Candidate bullet content
            existing: Bullets to compare against
            is_negative: Polarity of the candidate (True for anti-patterns)
            category: Candidate category, used for conflict overlap
            tags: Candidate tags, used for conflict overlap

        Returns:
            SimilarityResult; verdict "none" when nothing matches or tier 3 is unavailable
        """
        existing = list(existing)
        trimmed = content.strip()
        for bullet in existing:
            if bullet.content.strip() == trimmed:
                return SimilarityResult("duplicate", bullet.id, 1.0, "exact")

        candidate_hash = content_hash(content)
        for bullet in existing:
            if content_hash(bullet.content) == candidate_hash:
                return SimilarityResult("duplicate", bullet.id, 1.0, "hash")

        if not self.semantic_enabled:
            return NO_MATCH

        try:
            return self._check_embeddings(content, existing, is_negative, category, set(tags))
        except Exception as e:
            logger.warning(f"Embedding comparison failed, falling back to lexical tiers: {e}")
            self.degraded = True
            return NO_MATCH

    def _check_embeddings(
        self,
        content: str,
        existing: list[Bullet],
        is_negative: bool,
        category: str | None,
        tags: set[str],
    ) -> SimilarityResult:
        candidate = self.text_embedding(content)
        if candidate is None:
            return NO_MATCH

        duplicate: tuple[float, Bullet] | None = None
        conflict: tuple[float, Bullet] | None = None
        for bullet in existing:
            if not bullet.is_live:
                continue
            vector = self.bullet_embedding(bullet)
            if vector is None:
                continue
            sim = self._cosine_similarity(candidate, vector)
            if sim < self.threshold:
                continue
            if bullet.is_negative == is_negative:
                if duplicate is None or sim > duplicate[0]:
                    duplicate = (sim, bullet)
                continue
            same_category = category is not None and category.lower() == bullet.category.lower()
            if (same_category or tags & set(bullet.tags)) and (conflict is None or sim > conflict[0]):
                conflict = (sim, bullet)

        # A same-polarity match outranks any conflict, however close.
        if duplicate is not None:
            sim, bullet = duplicate
            return SimilarityResult("duplicate", bullet.id, sim, "embedding")
        if conflict is not None:
            sim, bullet = conflict
            return SimilarityResult("conflict", bullet.id, sim, "embedding")
        return NO_MATCH

    def text_embedding(self, text: str) -> np.ndarray | None:
        key = content_hash(text)
        vector = self._text_vectors.get(key)
        if vector is None and self.allow_compute:
            vector = self.provider.embed(text)
            self._text_vectors[key] = vector
        return vector

    def bullet_embedding(self, bullet: Bullet) -> np.ndarray | None:
        """Cached embedding for a bullet; recomputed only when its content hash changed."""
        key = content_hash(bullet.content)
        vector = self.cache.get(bullet.id, key)
        if vector is not None:
            return vector
        vector = self.text_embedding(bullet.content)
        if vector is not None:
            self.cache.put(bullet.id, key, vector)
        return vector

    def warm(self, bullets: Iterable[Bullet] = (), texts: Iterable[str] = ()) -> int:
        """Batch-compute missing embeddings ahead of a locked section.

        Returns the number of vectors computed. Provider failures are logged and
        leave the service in lexical-only mode.
        """
        if not self.semantic_enabled or not self.allow_compute:
            return 0

        pending: dict[str, str] = {}
        bullet_keys: list[tuple[Bullet, str]] = []
        for bullet in bullets:
            if not bullet.is_live:
                continue
            key = content_hash(bullet.content)
            if self.cache.get(bullet.id, key) is None:
                bullet_keys.append((bullet, key))
                if key not in self._text_vectors:
                    pending[key] = bullet.content
        for text in texts:
            key = content_hash(text)
            if key not in self._text_vectors:
                pending[key] = text

        if pending:
            keys = list(pending)
            try:
                vectors = self.provider.batch_embed([pending[k] for k in keys])
            except Exception as e:
                logger.warning(f"Embedding warm-up failed, continuing without embeddings: {e}")
                self.degraded = True
                return 0
            for key, vector in zip(keys, vectors, strict=True):
                self._text_vectors[key] = np.asarray(vector, dtype=np.float32)

        for bullet, key in bullet_keys:
            self.cache.put(bullet.id, key, self._text_vectors[key])
        return len(pending)

    def _cosine_similarity(self, vec1: np.ndarray, vec2: np.ndarray) -> float:
        """Calculate cosine similarity between two embedding vectors."""
        vec1_norm = vec1 / (np.linalg.norm(vec1) + 1e-10)
        vec2_norm = vec2 / (np.linalg.norm(vec2) + 1e-10)
        return float(np.dot(vec1_norm, vec2_norm))
