# tests/conftest.py
"""Pytest configuration and shared fixtures."""

import os
from datetime import UTC, datetime, timedelta

import numpy as np
import pytest

# Set test environment before any rulebook imports.
# Only set if not explicitly overridden by a specific test, so the mock LLM
# provider and disabled embeddings are used unless a test asks otherwise.
if "RULEBOOK_LLM_PROVIDER" not in os.environ:
    os.environ["RULEBOOK_LLM_PROVIDER"] = "mock"
if "RULEBOOK_EMBEDDINGS_MODEL" not in os.environ:
    os.environ["RULEBOOK_EMBEDDINGS_MODEL"] = "none"

from rulebook.core.config import RulebookConfig  # noqa: E402
from rulebook.core.schema import Bullet, FeedbackEvent  # noqa: E402
from rulebook.core.storage.embedding_store import EmbeddingProvider  # noqa: E402

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class FakeEmbedder(EmbeddingProvider):
    """Deterministic embedder: texts listed in ``groups`` share a vector.

    Any other text gets its own orthogonal direction, so only grouped texts
    are ever similar.
    """

    model_name = "fake-embedder"

    def __init__(self, groups: list[list[str]] | None = None, dim: int = 64):
        self.dim = dim
        self.groups = groups or []
        self.calls = 0
        self._free: dict[str, int] = {}

    def _slot(self, text: str) -> int:
        key = text.strip().lower()
        for i, group in enumerate(self.groups):
            if key in (t.strip().lower() for t in group):
                return i
        if key not in self._free:
            self._free[key] = len(self.groups) + len(self._free)
        return self._free[key] % self.dim

    def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        vec = np.zeros(self.dim, dtype=np.float32)
        vec[self._slot(text)] = 1.0
        return vec


class FailingEmbedder(EmbeddingProvider):
    model_name = "failing"

    def embed(self, text: str) -> np.ndarray:
        raise RuntimeError("model download failed")


class VectorEmbedder(EmbeddingProvider):
    """Embedder returning fixed vectors per text, for exact similarity setups."""

    model_name = "vector-embedder"

    def __init__(self, vectors: dict[str, list[float]]):
        self.vectors = {k.strip().lower(): np.asarray(v, dtype=np.float32)
                        for k, v in vectors.items()}

    def embed(self, text: str) -> np.ndarray:
        return self.vectors[text.strip().lower()]


def make_bullet(
    bullet_id: str,
    content: str,
    helpful: int = 0,
    harmful: int = 0,
    age_days: float = 0.0,
    **kwargs,
) -> Bullet:
    """Bullet with ``helpful``/``harmful`` events all ``age_days`` old relative to NOW."""
    ts = NOW - timedelta(days=age_days)
    events = [FeedbackEvent(type="helpful", timestamp=ts) for _ in range(helpful)]
    events += [FeedbackEvent(type="harmful", timestamp=ts) for _ in range(harmful)]
    kwargs.setdefault("created_at", NOW - timedelta(days=age_days))
    kwargs.setdefault("updated_at", NOW - timedelta(days=age_days))
    return Bullet(id=bullet_id, content=content, feedback_events=events, **kwargs)


@pytest.fixture
def config() -> RulebookConfig:
    return RulebookConfig()


@pytest.fixture
def tmp_config(tmp_path, monkeypatch) -> RulebookConfig:
    """Config whose storage files live under a temporary directory."""
    cfg = RulebookConfig()
    cfg.storage.playbook_path = str(tmp_path / "playbook.json")
    cfg.storage.blocked_log_path = str(tmp_path / "blocked.jsonl")
    cfg.storage.decision_log_path = str(tmp_path / "decisions.jsonl")
    cfg.storage.embedding_cache_path = str(tmp_path / "embeddings.json")
    cfg.storage.lock_retries = 3
    cfg.storage.lock_backoff_seconds = 0.01
    cfg.embeddings.model = "none"
    cfg.llm.provider = "mock"
    return cfg
