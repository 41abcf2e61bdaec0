"""Historical session search collaborator.

Searches never raise: every failure is reported through ``SearchResult.status``
so callers can tell "no evidence" apart from "search unavailable".
"""

import json
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

SearchStatus = Literal["ok", "unavailable", "not_found", "index_missing", "timeout"]

EXIT_INDEX_MISSING = 3
EXIT_NOT_FOUND = 4
EXIT_TIMEOUT = 10


class HistoryHit(BaseModel):
    source_path: str
    snippet: str
    score: float | None = None
    timestamp: str | None = Field(default=None, validation_alias="created_at")
    line_number: int | None = None
    agent: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if value is not None else None


class SearchResult(BaseModel):
    status: SearchStatus
    hits: list[HistoryHit] = Field(default_factory=list)
    detail: str | None = None

    @property
    def available(self) -> bool:
        return self.status in ("ok", "not_found")


class HistorySearch(ABC):
    """Search past agent sessions for snippets mentioning a query."""

    @abstractmethod
    def search(self, query: str, limit: int = 20, days: int | None = None) -> SearchResult:
        pass


class CassHistorySearch(HistorySearch):
    """Shells out to the ``cass`` session indexer in robot (JSON) mode."""

    def __init__(self, cass_path: str = "cass", timeout: float = 10.0):
        self.cass_path = cass_path
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.cass_path) is not None

    def search(self, query: str, limit: int = 20, days: int | None = None) -> SearchResult:
        if not self.available():
            return SearchResult(status="unavailable", detail=f"{self.cass_path} not found on PATH")

        args = [self.cass_path, "search", query, "--robot", "--limit", str(limit)]
        if days:
            args += ["--days", str(days)]

        try:
            proc = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout,
                                  check=False)
        except subprocess.TimeoutExpired:
            logger.warning(f"History search timed out after {self.timeout}s: {query!r}")
            return SearchResult(status="timeout")
        except OSError as e:
            return SearchResult(status="unavailable", detail=str(e))

        if proc.returncode == EXIT_NOT_FOUND:
            return SearchResult(status="not_found")
        if proc.returncode == EXIT_INDEX_MISSING:
            return SearchResult(status="index_missing", detail=proc.stderr.strip() or None)
        if proc.returncode == EXIT_TIMEOUT:
            return SearchResult(status="timeout")
        if proc.returncode != 0:
            detail = f"exit {proc.returncode}: {proc.stderr.strip()}"
            logger.warning(f"History search failed ({detail})")
            return SearchResult(status="unavailable", detail=detail)

        return SearchResult(status="ok", hits=parse_hits(proc.stdout))


def parse_hits(stdout: str) -> list[HistoryHit]:
    """Parse robot-mode output: either a list of hits or an object with a ``hits`` list."""
    if not stdout.strip():
        return []
    try:
        raw = json.loads(stdout)
    except json.JSONDecodeError as e:
        logger.warning(f"Unparsable history search output: {e}")
        return []
    items = raw.get("hits", []) if isinstance(raw, dict) else raw
    hits = []
    for item in items if isinstance(items, list) else []:
        try:
            hits.append(HistoryHit.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping malformed history hit: {e}")
    return hits
