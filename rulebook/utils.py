import hashlib
import json
import logging
import re
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "have",
        "in", "is", "it", "its", "of", "on", "or", "that", "the", "this", "to", "was",
        "were", "will", "with", "when", "which", "while", "into", "than", "then",
        "there", "these", "those", "been", "being", "but", "can", "could", "should",
        "would", "all", "any", "each", "not", "no", "so", "if", "do", "does", "you",
        "your", "we", "our", "they", "them", "their", "he", "she", "i", "me", "my",
    }
)

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_\-']*")
_WS_RE = re.compile(r"\s+")


def utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_text(text: str) -> str:
    """Lowercase, collapse whitespace and trim."""
    return _WS_RE.sub(" ", text.lower()).strip()


def content_hash(text: str) -> str:
    """Generate stable SHA-256 hash of normalized text content"""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()[:16]


def tokenize(text: str) -> list[str]:
    """Split text into lowercase tokens of length > 1."""
    return [t.strip("-'") for t in _TOKEN_RE.findall(text.lower()) if len(t.strip("-'")) > 1]


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Top non-stopword tokens by frequency, ties broken by first appearance."""
    tokens = [t for t in tokenize(text) if t not in STOPWORDS and len(t) > 2]
    counts = Counter(tokens)
    order = {tok: i for i, tok in reversed(list(enumerate(tokens)))}
    ranked = sorted(counts, key=lambda t: (-counts[t], order[t]))
    return ranked[:limit]


def generate_bullet_id(content: str, existing_ids: Iterable[str] = ()) -> str:
    """Generate deterministic bullet ID in format: b-{content_hash}[-{n}]

    A numeric suffix is appended when the hash-derived ID is already taken.
    """
    taken = set(existing_ids)
    base = f"b-{content_hash(content)}"
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure structured JSON logging"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    if json_format:
        class JSONFormatter(logging.Formatter):
            def format(self, record: logging.LogRecord) -> str:
                log_obj = {
                    "timestamp": datetime.now(UTC).isoformat(),
                    "level": record.levelname,
                    "logger": record.name,
                    "message": record.getMessage(),
                }
                if record.exc_info:
                    log_obj["exception"] = self.formatException(record.exc_info)
                event_data = getattr(record, "event_data", None)
                if event_data:
                    log_obj.update(event_data)
                return json.dumps(log_obj, default=str)

        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logging.root.handlers = []
    logging.root.addHandler(handler)
    logging.root.setLevel(log_level)


def log_event(event_type: str, data: dict[str, Any]) -> None:
    """Log structured event with metadata"""
    logger = logging.getLogger("rulebook.events")
    logger.info(event_type, extra={"event_data": {"event_type": event_type, **data}})
