"""Embedding providers and the persistent per-bullet embedding cache."""

import json
import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np

from rulebook.core.storage.lock import atomic_write_text, file_lock

logger = logging.getLogger(__name__)

DISABLED_MODEL = "none"


class EmbeddingProvider(ABC):
    """Text → fixed-length vector."""

    model_name: str = DISABLED_MODEL

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        pass

    def batch_embed(self, texts: list[str]) -> list[np.ndarray]:
        return [self.embed(t) for t in texts]

    def close(self) -> None:
        pass


class NullEmbeddingProvider(EmbeddingProvider):
    """Provider for model "none": embeddings are disabled."""

    @property
    def enabled(self) -> bool:
        return False

    def embed(self, text: str) -> np.ndarray:
        raise RuntimeError("Embeddings are disabled (model = 'none')")


class SentenceTransformerProvider(EmbeddingProvider):
    """Lazily loads a sentence-transformers model on first use."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
                 batch_size: int = 32):
        self.model_name = model_name
        self.batch_size = batch_size
        self._model: Any = None

    def _get_model(self) -> Any:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, text: str) -> np.ndarray:
        embedding = self._get_model().encode(text, convert_to_numpy=True)
        return np.asarray(embedding, dtype=np.float32)

    def batch_embed(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        matrix = self._get_model().encode(
            texts, batch_size=self.batch_size, convert_to_numpy=True
        )
        return [np.asarray(row, dtype=np.float32) for row in matrix]

    def close(self) -> None:
        self._model = None


def create_embedding_provider(model_name: str, batch_size: int = 32) -> EmbeddingProvider:
    if not model_name or model_name.lower() == DISABLED_MODEL:
        return NullEmbeddingProvider()
    return SentenceTransformerProvider(model_name, batch_size=batch_size)


class EmbeddingCache:
    """Embeddings keyed by bullet id and bound to the content hash they were computed from.

    Entries computed by a different model are ignored on load. ``save`` merges
    new entries into whatever is on disk under the path-scoped lock.
    """

    def __init__(self, path: Path | None, model_name: str, lock_retries: int = 20,
                 lock_backoff: float = 0.05):
        self.path = Path(path) if path else None
        self.model_name = model_name
        self.lock_retries = lock_retries
        self.lock_backoff = lock_backoff
        self._entries: dict[str, dict[str, Any]] = {}
        self._dirty: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def _read_file(self) -> dict[str, dict[str, Any]]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable embedding cache {self.path}: {e}")
            return {}
        if not isinstance(raw, dict) or raw.get("model") != self.model_name:
            return {}
        entries = raw.get("entries")
        return entries if isinstance(entries, dict) else {}

    def load(self) -> "EmbeddingCache":
        self._entries = self._read_file()
        self._dirty.clear()
        return self

    def get(self, bullet_id: str, content_hash: str) -> np.ndarray | None:
        entry = self._entries.get(bullet_id)
        if not entry or entry.get("content_hash") != content_hash:
            return None
        return np.asarray(entry["embedding"], dtype=np.float32)

    def put(self, bullet_id: str, content_hash: str, embedding: np.ndarray) -> None:
        self._entries[bullet_id] = {
            "content_hash": content_hash,
            "embedding": [float(x) for x in np.asarray(embedding).ravel()],
            "computed_at": datetime.now(UTC).isoformat(),
        }
        self._dirty.add(bullet_id)

    def save(self) -> int:
        """Persist new entries. Returns how many were written."""
        if self.path is None or not self._dirty:
            return 0
        with file_lock(self.path, self.lock_retries, self.lock_backoff):
            on_disk = self._read_file()
            for bullet_id in self._dirty:
                on_disk[bullet_id] = self._entries[bullet_id]
            payload = {"model": self.model_name, "entries": on_disk}
            atomic_write_text(self.path, json.dumps(payload))
        written = len(self._dirty)
        self._dirty.clear()
        return written
