"""Append-only JSON Lines logs (blocked bullets, curation decisions)."""

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from rulebook.core.storage.lock import file_lock

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class JsonlLog(Generic[M]):
    """Line-oriented log of pydantic records.

    Appends happen under the path-scoped lock. Reads take no lock and skip
    lines that are not valid JSON or fail validation.
    """

    def __init__(self, path: Path, model: type[M], lock_retries: int = 20,
                 lock_backoff: float = 0.05):
        self.path = Path(path)
        self.model = model
        self.lock_retries = lock_retries
        self.lock_backoff = lock_backoff

    def append(self, records: Iterable[M]) -> int:
        lines = [r.model_dump_json() + "\n" for r in records]
        if not lines:
            return 0
        with file_lock(self.path, self.lock_retries, self.lock_backoff):
            with open(self.path, "a", encoding="utf-8") as f:
                f.writelines(lines)
        return len(lines)

    def read(self) -> list[M]:
        if not self.path.exists():
            return []
        records: list[M] = []
        with open(self.path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(self.model.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning(f"Skipping corrupt line {lineno} in {self.path}: {e}")
        return records
