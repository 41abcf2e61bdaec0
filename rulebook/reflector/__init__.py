# rulebook/reflector/__init__.py
from .parser import parse_deltas, strip_fences
from .reflector import (
    DeltaGenerator,
    LLMDeltaGenerator,
    ReflectionLoop,
    deduplicate_deltas,
    hash_delta,
    normalize_delta,
)
from .schema import ReflectionResult, SessionDiary

__all__ = [
    "DeltaGenerator",
    "LLMDeltaGenerator",
    "ReflectionLoop",
    "ReflectionResult",
    "SessionDiary",
    "deduplicate_deltas",
    "hash_delta",
    "normalize_delta",
    "parse_deltas",
    "strip_fences",
]
