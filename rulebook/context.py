"""Explicit handle on the collaborators a rulebook process uses.

A context is opened once per process (CLI invocation or server), reused for
every operation, and closed at the end. Nothing here is a module-level
singleton.
"""

import logging
from pathlib import Path

from rulebook.core.config import RulebookConfig, load_config, resolve_path
from rulebook.core.schema import BlockedEntry, DecisionLogEntry
from rulebook.core.storage.embedding_store import (
    EmbeddingCache,
    EmbeddingProvider,
    create_embedding_provider,
)
from rulebook.core.storage.jsonl_log import JsonlLog
from rulebook.core.storage.playbook_store import PlaybookStore
from rulebook.curator.semantic_matcher import SimilarityService
from rulebook.history import CassHistorySearch, HistorySearch
from rulebook.llm import LLMClient, create_llm_client

logger = logging.getLogger(__name__)


class RulebookContext:
    def __init__(
        self,
        config: RulebookConfig,
        embedder: EmbeddingProvider | None = None,
        llm_client: LLMClient | None = None,
        history: HistorySearch | None = None,
    ):
        self.config = config
        storage = config.storage
        retries, backoff = storage.lock_retries, storage.lock_backoff_seconds

        self.store = PlaybookStore(resolve_path(storage.playbook_path), retries, backoff)
        self.blocked_log: JsonlLog[BlockedEntry] = JsonlLog(
            resolve_path(storage.blocked_log_path), BlockedEntry, retries, backoff
        )
        self.decision_log: JsonlLog[DecisionLogEntry] = JsonlLog(
            resolve_path(storage.decision_log_path), DecisionLogEntry, retries, backoff
        )

        self.embedder = embedder or create_embedding_provider(
            config.embeddings.model, config.embeddings.batch_size
        )
        cache_path: Path | None = None
        if self.embedder.enabled:
            cache_path = resolve_path(storage.embedding_cache_path)
        self.embedding_cache = EmbeddingCache(
            cache_path, self.embedder.model_name, retries, backoff
        ).load()
        self.similarity = SimilarityService(
            self.embedder,
            self.embedding_cache,
            threshold=config.curation.dedup_similarity_threshold,
        )
        self.history = history or CassHistorySearch(
            config.history.cass_path, config.history.timeout_seconds
        )
        self._llm = llm_client
        self._closed = False

    @classmethod
    def open(cls, config_path: Path | None = None, **collaborators) -> "RulebookContext":
        return cls(load_config(config_path), **collaborators)

    @property
    def llm(self) -> LLMClient:
        """LLM client, created on first use so offline commands never need credentials."""
        if self._llm is None:
            self._llm = create_llm_client(self.config.llm)
        return self._llm

    def close(self) -> None:
        if self._closed:
            return
        self.embedding_cache.save()
        self.embedder.close()
        if self._llm is not None:
            self._llm.close()
        self._closed = True
        logger.debug("Rulebook context closed")

    def __enter__(self) -> "RulebookContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
