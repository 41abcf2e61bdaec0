"""Path-scoped exclusive file locks and atomic writes.

A lock on ``<path>`` is a POSIX ``flock`` on the sibling file ``<path>.lock``,
so readers of ``<path>`` itself are never blocked.
"""

import fcntl
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from rulebook.core.errors import LockTimeoutError

logger = logging.getLogger(__name__)


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def file_lock(path: Path, retries: int = 20, backoff: float = 0.05) -> Iterator[None]:
    """Hold an exclusive lock for ``path`` for the duration of the block.

    Args:
        path: File whose read-modify-write is being protected
        retries: Attempts before giving up
        backoff: Initial sleep between attempts, doubled each retry (capped at 1s)

    Raises:
        LockTimeoutError: If the lock is still held elsewhere after all attempts
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = open(lock_path_for(path), "a+", encoding="utf-8")
    try:
        delay = backoff
        for attempt in range(1, retries + 1):
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if attempt == retries:
                    raise LockTimeoutError(str(path), retries) from None
                logger.debug(f"Lock busy on {path}, retry {attempt}/{retries} in {delay:.2f}s")
                time.sleep(delay)
                delay = min(delay * 2, 1.0)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


def atomic_write_text(path: Path, payload: str) -> None:
    """Write ``payload`` to a temp file in the same directory, then rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
