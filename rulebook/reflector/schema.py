# rulebook/reflector/schema.py
from dataclasses import dataclass, field
from typing import Literal

from rulebook.core.schema import PlaybookDelta

ExitReason = Literal["no_new_deltas", "max_iterations", "max_deltas", "time_budget", "generator_error"]


@dataclass
class SessionDiary:
    """Condensed record of one agent session, the input to reflection."""

    session_path: str
    content: str
    agent: str | None = None
    workspace: str | None = None


@dataclass
class ReflectionResult:
    deltas: list[PlaybookDelta] = field(default_factory=list)
    iterations: int = 0
    exit_reason: ExitReason = "no_new_deltas"
    elapsed_seconds: float = 0.0
    dropped_duplicates: int = 0
