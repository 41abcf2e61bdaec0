# rulebook/reflector/reflector.py
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable

from rulebook.core.config import ReflectorConfig
from rulebook.core.errors import DeltaParseError
from rulebook.core.schema import (
    AddDelta,
    HarmfulDelta,
    HelpfulDelta,
    MergeDelta,
    Playbook,
    PlaybookDelta,
    ReplaceDelta,
)
from rulebook.curator.semantic_matcher import SimilarityService
from rulebook.llm import LLMClient, Message
from rulebook.utils import content_hash, normalize_text

from .parser import parse_deltas
from .prompts import format_delta_prompt
from .schema import ReflectionResult, SessionDiary

logger = logging.getLogger(__name__)


class DeltaGenerator(ABC):
    """Session diary → proposed playbook deltas."""

    @abstractmethod
    def generate(
        self,
        diary: SessionDiary,
        playbook: Playbook,
        previous: list[PlaybookDelta],
        iteration: int = 0,
    ) -> list[PlaybookDelta]:
        pass


class LLMDeltaGenerator(DeltaGenerator):
    """Delta generator backed by an LLM client, retrying on unparsable output."""

    def __init__(self, llm_client: LLMClient, max_retries: int = 3, temperature: float = 0.3):
        """
        Args:
            llm_client: LLM client used for generation
            max_retries: Maximum attempts when the output fails to parse
            temperature: LLM temperature (lower = more deterministic)
        """
        self.client = llm_client
        self.max_retries = max(1, max_retries)
        self.temperature = temperature

    def generate(
        self,
        diary: SessionDiary,
        playbook: Playbook,
        previous: list[PlaybookDelta],
        iteration: int = 0,
    ) -> list[PlaybookDelta]:
        system_prompt, user_prompt = format_delta_prompt(
            diary.session_path, diary.content, playbook, previous, iteration
        )
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_prompt),
        ]

        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            response = self.client.complete(messages, temperature=self.temperature)
            try:
                return parse_deltas(response.text)
            except DeltaParseError as e:
                last_error = e
                logger.warning(f"Delta parse failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                messages = messages + [
                    Message(role="assistant", content=response.text),
                    Message(
                        role="user",
                        content=f"Previous attempt failed: {e}. "
                        "Please output ONLY valid JSON without markdown fencing.",
                    ),
                ]

        raise DeltaParseError(
            f"Failed to parse deltas after {self.max_retries} attempts: {last_error}"
        )


def normalize_delta(delta: PlaybookDelta) -> PlaybookDelta:
    """Canonical form used for hashing: merge ids sorted, replace content trimmed."""
    match delta:
        case MergeDelta():
            return delta.model_copy(update={"bullet_ids": sorted(set(delta.bullet_ids))})
        case ReplaceDelta():
            return delta.model_copy(update={"new_content": delta.new_content.strip()})
        case _:
            return delta


def hash_delta(delta: PlaybookDelta) -> str:
    """Identity key of a delta; equal keys mean the same proposed change."""
    match delta:
        case AddDelta():
            return f"add:{content_hash(delta.bullet.content)}"
        case ReplaceDelta():
            return f"replace:{delta.bullet_id}:{normalize_text(delta.new_content)}"
        case MergeDelta():
            return f"merge:{','.join(sorted(set(delta.bullet_ids)))}"
        case _:
            return f"{delta.type}:{delta.bullet_id}"


def deduplicate_deltas(deltas: Iterable[PlaybookDelta]) -> list[PlaybookDelta]:
    """Drop deltas whose hash was already seen, keeping first occurrences in order."""
    seen: set[str] = set()
    unique = []
    for delta in deltas:
        delta = normalize_delta(delta)
        key = hash_delta(delta)
        if key not in seen:
            seen.add(key)
            unique.append(delta)
    return unique


def _with_session(delta: PlaybookDelta, session_path: str) -> PlaybookDelta:
    if isinstance(delta, (AddDelta, HelpfulDelta, HarmfulDelta)) and not delta.source_session:
        return delta.model_copy(update={"source_session": session_path})
    return delta


class ReflectionLoop:
    """Runs the delta generator repeatedly over one session, accumulating unique deltas.

    Stops when an iteration yields nothing new, after ``max_iterations``
    iterations, once ``max_deltas`` deltas are accumulated, when the time budget
    is spent, or when the generator fails. Deltas gathered before a failure are
    kept.
    """

    def __init__(
        self,
        generator: DeltaGenerator,
        config: ReflectorConfig,
        similarity: SimilarityService | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.generator = generator
        self.config = config
        self.similarity = similarity
        self.clock = clock

    def _duplicates_playbook(self, delta: PlaybookDelta, playbook: Playbook) -> bool:
        if not isinstance(delta, AddDelta) or self.similarity is None:
            return False
        result = self.similarity.check(
            delta.bullet.content,
            playbook.bullets,
            is_negative=delta.bullet.is_negative,
            category=delta.bullet.category,
            tags=delta.bullet.tags,
        )
        return result.verdict == "duplicate"

    def reflect(self, diary: SessionDiary, playbook: Playbook) -> ReflectionResult:
        result = ReflectionResult()
        seen: set[str] = set()
        start = self.clock()
        max_iterations = self.config.max_iterations

        for iteration in range(max_iterations):
            if self.clock() - start >= self.config.time_budget_seconds:
                result.exit_reason = "time_budget"
                break

            try:
                proposed = self.generator.generate(diary, playbook, list(result.deltas), iteration)
            except Exception as e:
                logger.error(f"Delta generation failed at iteration {iteration}: {e}")
                result.exit_reason = "generator_error"
                break
            result.iterations = iteration + 1

            new_count = 0
            capped = False
            for delta in proposed:
                delta = _with_session(normalize_delta(delta), diary.session_path)
                key = hash_delta(delta)
                if key in seen:
                    result.dropped_duplicates += 1
                    continue
                seen.add(key)
                if self._duplicates_playbook(delta, playbook):
                    result.dropped_duplicates += 1
                    continue
                result.deltas.append(delta)
                new_count += 1
                if len(result.deltas) >= self.config.max_deltas:
                    capped = True
                    break

            logger.info(
                f"Reflection iteration {iteration}: {len(proposed)} proposed, {new_count} new"
            )
            if capped:
                result.exit_reason = "max_deltas"
                break
            if new_count == 0:
                result.exit_reason = "no_new_deltas"
                break
            if iteration >= max_iterations - 1:
                result.exit_reason = "max_iterations"
                break

        result.elapsed_seconds = self.clock() - start
        return result
