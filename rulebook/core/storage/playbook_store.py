import json
import logging
import shutil
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError

from rulebook.core.errors import StoreCorruptError, StoreError
from rulebook.core.schema import Bullet, DeprecatedPattern, Playbook, PlaybookMetadata
from rulebook.core.storage.lock import atomic_write_text, file_lock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PlaybookStore:
    """JSON document store for one playbook file.

    ``load`` takes no lock and may see a slightly stale snapshot. Every write
    goes through ``update``, which holds the path-scoped lock across
    read, mutate and atomic rename.
    """

    def __init__(self, path: Path, lock_retries: int = 20, lock_backoff: float = 0.05):
        self.path = Path(path)
        self.lock_retries = lock_retries
        self.lock_backoff = lock_backoff

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Playbook:
        return self._load()[0]

    def _load(self) -> tuple[Playbook, int]:
        """Load the playbook and count the stored entries that were dropped as invalid."""
        if not self.path.exists():
            return Playbook(), 0
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            if not isinstance(raw, dict):
                raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
        except (json.JSONDecodeError, ValueError) as e:
            backup = self._backup()
            logger.error(f"Playbook {self.path} is unreadable ({e}); backed up to {backup}")
            return Playbook(), 0
        return self._parse(raw)

    def _parse(self, raw: dict[str, Any]) -> tuple[Playbook, int]:
        dropped = 0
        bullets: list[Bullet] = []
        for i, item in enumerate(raw.get("bullets") or []):
            try:
                bullets.append(Bullet.model_validate(item))
            except ValidationError as e:
                dropped += 1
                bullet_id = item.get("id") if isinstance(item, dict) else None
                logger.warning(f"Skipping invalid bullet #{i} ({bullet_id}) in {self.path}: {e}")

        patterns: list[DeprecatedPattern] = []
        for item in raw.get("deprecatedPatterns") or raw.get("deprecated_patterns") or []:
            try:
                patterns.append(DeprecatedPattern.model_validate(item))
            except ValidationError as e:
                dropped += 1
                logger.warning(f"Skipping invalid deprecated pattern in {self.path}: {e}")

        try:
            metadata = PlaybookMetadata.model_validate(raw.get("metadata") or {})
        except ValidationError as e:
            dropped += 1
            logger.warning(f"Invalid playbook metadata in {self.path}, resetting: {e}")
            metadata = PlaybookMetadata()

        unique = _drop_duplicate_ids(bullets, self.path)
        dropped += len(bullets) - len(unique)
        playbook = Playbook(
            schema_version=raw.get("schema_version", 2),
            name=raw.get("name", "playbook"),
            description=raw.get("description", ""),
            metadata=metadata,
            deprecated_patterns=patterns,
            bullets=unique,
        )
        warn_dangling_references(playbook)
        return playbook, dropped

    def _backup(self) -> Path:
        """Copy the playbook file aside before content it holds is overwritten.

        Raises:
            StoreCorruptError: If the copy fails; the original is left in place
        """
        ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        backup = self.path.with_name(f"{self.path.name}.backup.{ts}")
        try:
            shutil.copy2(self.path, backup)
        except OSError as e:
            raise StoreCorruptError(
                f"Playbook {self.path} could not be backed up: {e}"
            ) from e
        return backup

    def _write(self, playbook: Playbook) -> None:
        atomic_write_text(self.path, dump_playbook(playbook))

    def save(self, playbook: Playbook) -> None:
        """Overwrite the playbook under lock."""
        with file_lock(self.path, self.lock_retries, self.lock_backoff):
            self._write(playbook)

    def update(self, mutator: Callable[[Playbook], tuple[Playbook, T]]) -> T:
        """Read-modify-write under the lock.

        ``mutator`` receives the current playbook and returns the playbook to
        persist together with a value handed back to the caller. If it raises,
        nothing is written. When entries were dropped as invalid while loading,
        the file is backed up before it is rewritten without them.
        """
        with file_lock(self.path, self.lock_retries, self.lock_backoff):
            current, dropped = self._load()
            updated, value = mutator(current)
            if dropped:
                backup = self._backup()
                logger.warning(f"Dropped {dropped} invalid entries from {self.path}; "
                               f"original backed up to {backup}")
            self._write(updated)
            return value

    def init(self, name: str = "playbook", description: str = "") -> Playbook:
        """Create an empty playbook file.

        Raises:
            StoreError: If the file already exists
        """
        with file_lock(self.path, self.lock_retries, self.lock_backoff):
            if self.path.exists():
                raise StoreError(f"Playbook already exists at {self.path}")
            playbook = Playbook(name=name, description=description)
            self._write(playbook)
            return playbook


def dump_playbook(playbook: Playbook) -> str:
    return playbook.model_dump_json(by_alias=True, indent=2) + "\n"


def _drop_duplicate_ids(bullets: list[Bullet], path: Path) -> list[Bullet]:
    seen: set[str] = set()
    kept = []
    for bullet in bullets:
        if bullet.id in seen:
            logger.warning(f"Skipping bullet with duplicate id {bullet.id} in {path}")
            continue
        seen.add(bullet.id)
        kept.append(bullet)
    return kept


def warn_dangling_references(playbook: Playbook) -> list[str]:
    """Log bullets whose replaced_by points at a missing id. Returns their ids."""
    ids = playbook.ids()
    dangling = [b.id for b in playbook.bullets if b.replaced_by and b.replaced_by not in ids]
    for bullet_id in dangling:
        logger.warning(f"Bullet {bullet_id} has replaced_by referencing a missing bullet")
    return dangling
