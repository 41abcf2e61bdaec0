"""Exception hierarchy for rulebook."""


class RulebookError(Exception):
    """Base class for all rulebook errors."""

    pass


class StoreError(RulebookError):
    """Raised when a store file cannot be read or written."""

    pass


class LockTimeoutError(StoreError):
    """Raised when a path-scoped lock cannot be acquired within the retry budget."""

    def __init__(self, path: str, attempts: int):
        super().__init__(f"Could not acquire lock on {path} after {attempts} attempts")
        self.path = path
        self.attempts = attempts


class StoreCorruptError(StoreError):
    pass


class CurationError(RulebookError):
    pass


class BulletNotFoundError(CurationError):
    def __init__(self, bullet_id: str):
        super().__init__(f"Bullet not found: {bullet_id}")
        self.bullet_id = bullet_id


class DeltaParseError(RulebookError):
    """Raised when delta generator output cannot be parsed."""

    pass


class ConfigError(RulebookError, ValueError):
    pass
