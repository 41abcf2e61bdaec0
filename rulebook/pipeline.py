# rulebook/pipeline.py
"""
Curation pipeline orchestration.

Session diary → ReflectionLoop → deduplicated deltas → EvidenceGate (add deltas)
→ curate under the playbook lock → metadata counters → decision audit log.

Embedding, LLM and history-search calls all happen before the playbook lock
is taken; only the local read-modify-write runs under it.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rulebook.context import RulebookContext
from rulebook.core.schema import (
    AddDelta,
    BlockedEntry,
    CurationResult,
    DecisionLogEntry,
    HarmfulDelta,
    HarmfulReason,
    HelpfulDelta,
    Playbook,
    PlaybookDelta,
)
from rulebook.curator.curator import curate, forget_bullet, invert_bullet
from rulebook.reflector import DeltaGenerator, LLMDeltaGenerator, ReflectionLoop, SessionDiary
from rulebook.reflector.schema import ReflectionResult
from rulebook.utils import log_event, utcnow
from rulebook.validator import EvidenceGate, LLMRuleReasoner, ValidationOutcome

logger = logging.getLogger(__name__)


def _add_contents(deltas: list[PlaybookDelta | dict[str, Any]]) -> list[str]:
    contents = []
    for delta in deltas:
        if isinstance(delta, AddDelta):
            contents.append(delta.bullet.content)
        elif isinstance(delta, dict) and delta.get("type") == "add":
            content = (delta.get("bullet") or {}).get("content")
            if isinstance(content, str) and content.strip():
                contents.append(content)
    return contents


@dataclass
class PipelineResult:
    """Result of processing one session."""

    reflection: ReflectionResult
    curation: CurationResult | None
    gate_decisions: list[DecisionLogEntry] = field(default_factory=list)
    rejected: int = 0


class Pipeline:
    """
    Wires reflection, gating and curation against one rulebook context.
    """

    def __init__(
        self,
        ctx: RulebookContext,
        generator: DeltaGenerator | None = None,
        gate: EvidenceGate | None = None,
    ):
        """
        Args:
            ctx: Open rulebook context (config, store, collaborators)
            generator: Delta generator. If None, an LLM generator over ctx.llm.
            gate: Evidence gate. If None, built from config (skipped when disabled).
        """
        self.ctx = ctx
        self.config = ctx.config
        self._generator = generator
        self._gate = gate

    @property
    def generator(self) -> DeltaGenerator:
        if self._generator is None:
            self._generator = LLMDeltaGenerator(
                self.ctx.llm,
                max_retries=self.config.reflector.max_retries,
                temperature=self.config.reflector.temperature,
            )
        return self._generator

    @property
    def gate(self) -> EvidenceGate:
        if self._gate is None:
            self._gate = EvidenceGate(
                self.ctx.history, self.config.gate, reasoner=LLMRuleReasoner(self.ctx.llm)
            )
        return self._gate

    def _commit(
        self,
        mutate: Callable[[Playbook], CurationResult],
        event: str,
    ) -> CurationResult:
        def mutator(playbook: Playbook) -> tuple[Playbook, CurationResult]:
            result = mutate(playbook)
            return result.playbook, result

        result = self.ctx.store.update(mutator)
        self.ctx.embedding_cache.save()
        if result.decision_log:
            self.ctx.decision_log.append(result.decision_log)
        log_event(event, result.summary())
        return result

    def curate(
        self,
        deltas: list[PlaybookDelta | dict[str, Any]],
        now: datetime | None = None,
        on_playbook: Callable[[Playbook], None] | None = None,
    ) -> CurationResult:
        """
        Apply deltas to the stored playbook under its lock.

        Args:
            deltas: Deltas to apply
            now: Reference time (defaults to current UTC time)
            on_playbook: Optional hook run on the curated playbook before it is written

        Returns:
            CurationResult of the committed run
        """
        now = now or utcnow()
        snapshot = self.ctx.store.load()
        similarity = self.ctx.similarity
        similarity.warm(snapshot.bullets, _add_contents(deltas))
        frozen = similarity.frozen()

        def mutate(playbook: Playbook) -> CurationResult:
            result = curate(playbook, deltas, self.config, similarity=frozen, now=now)
            if on_playbook is not None:
                on_playbook(result.playbook)
            return result

        result = self._commit(mutate, "curation.completed")
        logger.info(
            f"Curation applied {result.applied} deltas, skipped {result.skipped}, "
            f"pruned {result.pruned}"
        )
        return result

    def reflect_session(
        self,
        diary: SessionDiary,
        apply: bool = True,
        now: datetime | None = None,
    ) -> PipelineResult:
        """
        Reflect on one session, gate the proposed rules and (optionally) curate them.

        Args:
            diary: Session diary to reflect on
            apply: If False, stop after gating and return the proposed deltas
            now: Reference time for curation

        Returns:
            PipelineResult with reflection details, gate decisions and curation result
        """
        now = now or utcnow()
        logger.info(f"Reflecting on session {diary.session_path}")
        playbook = self.ctx.store.load()

        loop = ReflectionLoop(self.generator, self.config.reflector, self.ctx.similarity)
        reflection = loop.reflect(diary, playbook)
        logger.info(
            f"Reflection produced {len(reflection.deltas)} deltas in "
            f"{reflection.iterations} iteration(s) ({reflection.exit_reason})"
        )

        gated: list[PlaybookDelta] = []
        decisions: list[DecisionLogEntry] = []
        rejected = 0
        for delta in reflection.deltas:
            if not self.config.gate.enabled:
                gated.append(delta)
                continue
            outcome = self.gate.validate_delta(delta, now=now)
            if outcome.decision is not None:
                decisions.append(outcome.decision)
            if outcome.delta is None:
                rejected += 1
            else:
                gated.append(outcome.delta)

        reflection.deltas = gated
        if not apply:
            return PipelineResult(reflection, None, decisions, rejected)

        if decisions:
            self.ctx.decision_log.append(decisions)

        def bump_metadata(playbook: Playbook) -> None:
            playbook.metadata.last_reflection = now
            playbook.metadata.total_reflections += 1
            playbook.metadata.total_sessions_processed += 1

        curation = self.curate(gated, now=now, on_playbook=bump_metadata)
        return PipelineResult(reflection, curation, decisions, rejected)

    def mark(
        self,
        bullet_id: str,
        helpful: bool,
        reason: HarmfulReason | None = None,
        context: str | None = None,
        session: str | None = None,
        now: datetime | None = None,
    ) -> CurationResult:
        """Record direct helpful/harmful feedback on one bullet."""
        delta: PlaybookDelta
        if helpful:
            delta = HelpfulDelta(bullet_id=bullet_id, context=context, source_session=session)
        else:
            delta = HarmfulDelta(bullet_id=bullet_id, reason=reason, context=context,
                                 source_session=session)
        return self.curate([delta], now=now)

    def invert(self, bullet_id: str, reason: str, now: datetime | None = None) -> CurationResult:
        """Turn a rule into an anti-pattern; both bullets are written in one update."""
        now = now or utcnow()
        return self._commit(
            lambda pb: invert_bullet(pb, bullet_id, reason, self.config, now=now),
            "curation.inverted",
        )

    def forget(self, bullet_id: str, reason: str, now: datetime | None = None) -> BlockedEntry:
        """Deprecate a bullet on request and record it in the blocked log."""
        now = now or utcnow()

        def mutator(playbook: Playbook) -> tuple[Playbook, BlockedEntry]:
            return forget_bullet(playbook, bullet_id, reason, now=now)

        entry = self.ctx.store.update(mutator)
        self.ctx.blocked_log.append([entry])
        self.ctx.decision_log.append([
            DecisionLogEntry(timestamp=now, phase="forget", action="accepted",
                             bullet_id=bullet_id, reason=reason, content=entry.content[:100])
        ])
        log_event("curation.forgotten", {"bullet_id": bullet_id})
        return entry

    def validate(self, rule_text: str) -> ValidationOutcome:
        return self.gate.validate(rule_text)
