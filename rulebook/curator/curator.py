# rulebook/curator/curator.py
import logging
import re
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from rulebook.core.config import RulebookConfig
from rulebook.core.errors import BulletNotFoundError, CurationError
from rulebook.core.schema import (
    AddDelta,
    BlockedEntry,
    Bullet,
    ConflictReport,
    CurationResult,
    DecisionLogEntry,
    DeprecateDelta,
    FeedbackEvent,
    HarmfulDelta,
    HelpfulDelta,
    InversionReport,
    MergeDelta,
    Playbook,
    PlaybookDelta,
    PromotionReport,
    ReplaceDelta,
    delta_adapter,
)
from rulebook.core.scoring import is_stale, score
from rulebook.utils import content_hash, generate_bullet_id, utcnow

from .conflicts import DirectiveConflictDetector
from .semantic_matcher import SimilarityService

logger = logging.getLogger(__name__)

# Deltas are applied phase by phase; order within a phase is preserved.
PHASE_ORDER: dict[str, int] = {
    "add": 0,
    "helpful": 1,
    "harmful": 1,
    "replace": 2,
    "deprecate": 3,
    "merge": 4,
}

_DIRECTIVE_PREFIX_RE = re.compile(r"^(always|prefer|use|try|consider|ensure)\s+", re.IGNORECASE)
PREVIEW_CHARS = 100


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS]


def _union(*lists: Iterable[str]) -> list[str]:
    out: list[str] = []
    for items in lists:
        for item in items:
            if item not in out:
                out.append(item)
    return out


def deprecate(bullet: Bullet, reason: str, now: datetime, replaced_by: str | None = None) -> None:
    """Retire a bullet in place."""
    bullet.deprecated = True
    bullet.deprecated_at = now
    bullet.deprecation_reason = reason
    bullet.maturity = "deprecated"
    bullet.state = "retired"
    bullet.updated_at = now
    if replaced_by is not None:
        bullet.replaced_by = replaced_by


class Curator:
    """Applies one batch of deltas to a private copy of a playbook.

    A Curator is single-use: construct it, call ``run`` once, read the result.
    """

    def __init__(
        self,
        playbook: Playbook,
        config: RulebookConfig,
        similarity: SimilarityService | None = None,
        now: datetime | None = None,
    ):
        self.config = config
        self.now = now or utcnow()
        self.similarity = similarity or SimilarityService(
            threshold=config.curation.dedup_similarity_threshold
        )
        self.directives = DirectiveConflictDetector() if config.curation.lexical_conflicts else None
        self.result = CurationResult(playbook=playbook.model_copy(deep=True))

    @property
    def playbook(self) -> Playbook:
        return self.result.playbook

    def _log(
        self,
        phase: Any,
        action: Any,
        reason: str,
        bullet_id: str | None = None,
        content: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.result.decision_log.append(
            DecisionLogEntry(
                timestamp=self.now,
                phase=phase,
                action=action,
                bullet_id=bullet_id,
                reason=reason,
                content=_preview(content) if content is not None else None,
                details=details,
            )
        )

    def run(self, deltas: Iterable[PlaybookDelta | dict[str, Any]]) -> CurationResult:
        valid: list[PlaybookDelta] = []
        for i, raw in enumerate(deltas):
            if isinstance(raw, dict):
                try:
                    raw = delta_adapter.validate_python(raw)
                except ValidationError as e:
                    self.result.skipped += 1
                    self._log("validate", "skipped", f"Malformed delta #{i}",
                              details={"errors": e.error_count(), "type": raw.get("type")})
                    continue
            valid.append(raw)

        for delta in sorted(valid, key=lambda d: PHASE_ORDER[d.type]):
            match delta:
                case AddDelta():
                    applied = self._apply_add(delta)
                case HelpfulDelta() | HarmfulDelta():
                    applied = self._apply_feedback(delta)
                case ReplaceDelta():
                    applied = self._apply_replace(delta)
                case DeprecateDelta():
                    applied = self._apply_deprecate(delta)
                case MergeDelta():
                    applied = self._apply_merge(delta)
                case _:
                    raise CurationError(f"Unhandled delta type: {type(delta).__name__}")
            if applied:
                self.result.applied += 1
            else:
                self.result.skipped += 1

        self._prune_stale()
        return self.result

    def _apply_add(self, delta: AddDelta) -> bool:
        payload = delta.bullet
        content = payload.content.strip()
        if not content:
            self._log("add", "rejected", "Empty bullet content")
            return False

        if payload.id and self.playbook.get(payload.id) is not None:
            self._log("add", "skipped", "Bullet id already present", bullet_id=payload.id,
                      content=content)
            return False

        is_negative = payload.is_negative or payload.type == "anti-pattern" \
            or payload.kind == "anti_pattern"
        sim = self.similarity.check(
            content,
            self.playbook.bullets,
            is_negative=is_negative,
            category=payload.category,
            tags=payload.tags,
        )
        if sim.verdict == "duplicate":
            existing = self.playbook.get(sim.match_id or "")
            if sim.tier == "embedding" and existing is not None:
                self.result.conflicts.append(
                    ConflictReport(
                        kind="duplicate",
                        new_content=content,
                        existing_id=existing.id,
                        existing_content=existing.content,
                        similarity=sim.similarity,
                        reason="Semantically equivalent to an existing bullet",
                    )
                )
            self._log("add", "skipped", f"Duplicate of existing bullet ({sim.tier} match)",
                      bullet_id=sim.match_id, content=content,
                      details={"similarity": sim.similarity})
            return False

        if sim.verdict == "conflict":
            existing = self.playbook.get(sim.match_id or "")
            if existing is not None:
                self.result.conflicts.append(
                    ConflictReport(
                        kind="conflict",
                        new_content=content,
                        existing_id=existing.id,
                        existing_content=existing.content,
                        similarity=sim.similarity,
                        reason="Opposite polarity on an overlapping topic",
                    )
                )

        if self.directives is not None:
            for found in self.directives.detect(content, self.playbook.bullets):
                self.result.conflicts.append(
                    ConflictReport(
                        kind="directive",
                        new_content=content,
                        existing_id=found.bullet_id,
                        existing_content=found.content,
                        similarity=round(found.overlap, 4),
                        reason=found.reason,
                    )
                )

        bullet_id = payload.id or generate_bullet_id(content, self.playbook.ids())
        bullet = Bullet(
            id=bullet_id,
            scope=payload.scope,
            scope_key=payload.scope_key,
            category=payload.category,
            content=content,
            type="anti-pattern" if is_negative else "rule",
            is_negative=is_negative,
            kind=payload.kind,
            state="draft",
            maturity="candidate",
            created_at=self.now,
            updated_at=self.now,
            source_sessions=[delta.source_session] if delta.source_session else [],
            tags=payload.tags,
            reasoning=payload.reasoning or delta.reason or None,
        )
        self.playbook.bullets.append(bullet)
        details = {"conflict_with": sim.match_id} if sim.verdict == "conflict" else None
        self._log("add", "accepted", delta.reason or "New bullet added as draft",
                  bullet_id=bullet.id, content=content, details=details)
        return True

    def _apply_feedback(self, delta: HelpfulDelta | HarmfulDelta) -> bool:
        bullet = self.playbook.get(delta.bullet_id)
        if bullet is None:
            self._log("feedback", "skipped", f"Unknown bullet for {delta.type} feedback",
                      bullet_id=delta.bullet_id)
            return False
        if not bullet.is_live:
            self._log("feedback", "skipped", f"Bullet is deprecated; {delta.type} ignored",
                      bullet_id=bullet.id)
            return False
        if delta.source_session and any(
            e.type == delta.type and e.session_path == delta.source_session
            for e in bullet.feedback_events
        ):
            self._log("feedback", "skipped",
                      f"{delta.type} feedback already recorded for this session",
                      bullet_id=bullet.id, details={"session": delta.source_session})
            return False

        bullet.feedback_events.append(
            FeedbackEvent(
                type=delta.type,
                timestamp=self.now,
                reason=delta.reason if isinstance(delta, HarmfulDelta) else None,
                context=delta.context,
                session_path=delta.source_session,
            )
        )
        bullet.recount()
        self._log("feedback", "accepted", f"Recorded {delta.type} feedback", bullet_id=bullet.id,
                  details={"helpful": bullet.helpful_count, "harmful": bullet.harmful_count})
        self._apply_score(bullet)
        return True

    def _apply_score(self, bullet: Bullet) -> None:
        result = score(bullet, self.now, self.config.scoring)
        suggested = result.maturity_suggestion
        previous = bullet.maturity
        if suggested == previous:
            return

        self.result.promotions.append(
            PromotionReport(
                bullet_id=bullet.id,
                from_maturity=previous,
                to_maturity=suggested,
                effective_score=round(result.effective_score, 6),
            )
        )
        if suggested == "deprecated":
            threshold = self.config.scoring.prune_harmful_threshold
            reason = (
                f"Harmful feedback count {bullet.harmful_count} exceeded prune threshold "
                f"{threshold}"
            )
            deprecate(bullet, reason, self.now)
            self.result.pruned += 1
            self._log("feedback", "modified", reason, bullet_id=bullet.id,
                      details={"from": previous, "to": suggested})
            return

        bullet.maturity = suggested
        if bullet.state == "draft":
            bullet.state = "active"
        self._log("feedback", "modified", f"Maturity changed from {previous} to {suggested}",
                  bullet_id=bullet.id,
                  details={"from": previous, "to": suggested,
                           "effective_score": round(result.effective_score, 6)})

    def _apply_replace(self, delta: ReplaceDelta) -> bool:
        bullet = self.playbook.get(delta.bullet_id)
        if bullet is None or not bullet.is_live:
            self._log("replace", "skipped", "Unknown or deprecated bullet", bullet_id=delta.bullet_id)
            return False
        new_content = delta.new_content.strip()
        if not new_content:
            self._log("replace", "rejected", "Empty replacement content", bullet_id=bullet.id)
            return False
        if content_hash(new_content) == content_hash(bullet.content):
            self._log("replace", "skipped", "Replacement content unchanged", bullet_id=bullet.id)
            return False
        new_hash = content_hash(new_content)
        clash = next(
            (b for b in self.playbook.bullets
             if b.id != bullet.id and content_hash(b.content) == new_hash),
            None,
        )
        if clash is not None:
            self._log("replace", "skipped", "Replacement duplicates another bullet",
                      bullet_id=bullet.id, details={"duplicate_of": clash.id})
            return False

        previous = bullet.content
        bullet.content = new_content
        bullet.updated_at = self.now
        bullet.embedding = None
        self._log("replace", "modified", delta.reason or "Bullet content replaced",
                  bullet_id=bullet.id, content=new_content,
                  details={"previous_content": _preview(previous)})
        return True

    def _apply_deprecate(self, delta: DeprecateDelta) -> bool:
        bullet = self.playbook.get(delta.bullet_id)
        if bullet is None:
            self._log("deprecate", "skipped", "Unknown bullet", bullet_id=delta.bullet_id)
            return False
        if not bullet.is_live:
            self._log("deprecate", "skipped", "Bullet already deprecated", bullet_id=bullet.id)
            return False
        if bullet.pinned:
            self._log("deprecate", "rejected", "Pinned bullets are not deprecated by deltas",
                      bullet_id=bullet.id)
            return False
        if delta.replaced_by is not None and (
            delta.replaced_by == bullet.id or self.playbook.get(delta.replaced_by) is None
        ):
            self._log("deprecate", "rejected", "replaced_by must reference another existing bullet",
                      bullet_id=bullet.id, details={"replaced_by": delta.replaced_by})
            return False

        deprecate(bullet, delta.reason, self.now, delta.replaced_by)
        self._log("deprecate", "accepted", delta.reason, bullet_id=bullet.id,
                  details={"replaced_by": delta.replaced_by} if delta.replaced_by else None)
        return True

    def _apply_merge(self, delta: MergeDelta) -> bool:
        ids = _union(delta.bullet_ids)
        sources = [self.playbook.get(i) for i in ids]
        found = [b for b in sources if b is not None and b.is_live]
        merged_content = delta.merged_content.strip()
        if len(found) != len(ids) or len(found) < 2:
            self._log("merge", "rejected", "Cannot merge: missing bullets or insufficient count",
                      details={"requested": len(ids), "found": len(found)})
            return False
        if not merged_content:
            self._log("merge", "rejected", "Empty merged content", details={"bullet_ids": ids})
            return False

        merged_hash = content_hash(merged_content)
        survivor = next(
            (b for b in self.playbook.bullets
             if b.is_live and content_hash(b.content) == merged_hash),
            None,
        )
        pinned = [b.id for b in found if b.pinned and (survivor is None or b.id != survivor.id)]
        if pinned:
            self._log("merge", "rejected", "Pinned bullets are not deprecated by deltas",
                      details={"bullet_ids": ids, "pinned": pinned})
            return False

        if survivor is not None:
            survivor.tags = _union(survivor.tags, *(b.tags for b in found))
            survivor.source_sessions = _union(survivor.source_sessions,
                                              *(b.source_sessions for b in found))
            survivor.source_agents = _union(survivor.source_agents,
                                            *(b.source_agents for b in found))
            survivor.updated_at = self.now
        else:
            first = found[0]
            survivor = Bullet(
                id=generate_bullet_id(merged_content, self.playbook.ids()),
                scope=first.scope,
                scope_key=first.scope_key,
                category=first.category,
                content=merged_content,
                is_negative=all(b.is_negative for b in found),
                kind=first.kind if all(b.kind == first.kind for b in found) else "workflow_rule",
                state="draft",
                maturity="candidate",
                created_at=self.now,
                updated_at=self.now,
                source_sessions=_union(*(b.source_sessions for b in found)),
                source_agents=_union(*(b.source_agents for b in found)),
                tags=_union(*(b.tags for b in found)),
                reasoning=delta.reason,
            )
            self.playbook.bullets.append(survivor)

        for bullet in found:
            if bullet.id != survivor.id:
                deprecate(bullet, f"Merged into {survivor.id}", self.now, survivor.id)
        self._log("merge", "accepted", delta.reason or "Bullets merged into combined bullet",
                  bullet_id=survivor.id, content=merged_content,
                  details={"merged_from": ids})
        return True

    def _prune_stale(self) -> None:
        stale_days = self.config.curation.stale_days
        for bullet in self.playbook.bullets:
            if not bullet.is_live or bullet.pinned:
                continue
            if bullet.maturity not in ("established", "proven"):
                continue
            value = score(bullet, self.now, self.config.scoring).effective_score
            if value < 0 and is_stale(bullet, self.now, stale_days):
                reason = (
                    f"Effective score {value:.3f} below zero with no feedback in "
                    f"{stale_days} days"
                )
                previous = bullet.maturity
                deprecate(bullet, reason, self.now)
                self.result.pruned += 1
                self._log("prune", "accepted", reason, bullet_id=bullet.id,
                          details={"from": previous})


def curate(
    playbook: Playbook,
    deltas: Iterable[PlaybookDelta | dict[str, Any]],
    config: RulebookConfig,
    similarity: SimilarityService | None = None,
    now: datetime | None = None,
) -> CurationResult:
    """
    Apply a batch of deltas to a playbook.

    The input playbook is never mutated: the returned result carries an updated
    deep copy. Deltas run in a fixed phase order (add, helpful/harmful, replace,
    deprecate, merge) followed by a stale-bullet prune pass. Invalid or
    inapplicable deltas are recorded as skipped/rejected and never abort the batch.

    Args:
        playbook: Current playbook
        deltas: Typed deltas, or raw dicts to be validated
        config: Full configuration (scoring and curation sections are used)
        similarity: Similarity service; defaults to lexical-only matching
        now: Reference time; pass a fixed value for a reproducible decision log

    Returns:
        CurationResult with the new playbook, counters, reports and decision log
    """
    return Curator(playbook, config, similarity, now).run(deltas)


def _inverted_content(content: str, reason: str) -> str:
    cleaned = _DIRECTIVE_PREFIX_RE.sub("", content.strip()).rstrip(". ")
    reason = reason.strip()
    return f"AVOID: {cleaned}. {reason}" if reason else f"AVOID: {cleaned}."


def invert_bullet(
    playbook: Playbook,
    bullet_id: str,
    reason: str,
    config: RulebookConfig,
    now: datetime | None = None,
) -> CurationResult:
    """
    Replace a rule with its anti-pattern.

    Creates an ``AVOID: ...`` anti-pattern bullet tagged ``inverted`` in the
    same category and scope, and deprecates the original with ``replaced_by``
    pointing at it. Works on a copy; persist the returned playbook in a single
    store update so both changes land together.

    Raises:
        BulletNotFoundError: If the bullet does not exist
        CurationError: If the bullet is deprecated or already an anti-pattern
    """
    now = now or utcnow()
    result = CurationResult(playbook=playbook.model_copy(deep=True))
    original = result.playbook.get(bullet_id)
    if original is None:
        raise BulletNotFoundError(bullet_id)
    if not original.is_live:
        raise CurationError(f"Bullet {bullet_id} is deprecated and cannot be inverted")
    if original.is_negative:
        raise CurationError(f"Bullet {bullet_id} is already an anti-pattern")

    content = _inverted_content(original.content, reason)
    inverted = Bullet(
        id=generate_bullet_id(content, result.playbook.ids()),
        scope=original.scope,
        scope_key=original.scope_key,
        category=original.category,
        content=content,
        type="anti-pattern",
        is_negative=True,
        kind="anti_pattern",
        state="active",
        maturity="candidate",
        created_at=now,
        updated_at=now,
        source_sessions=list(original.source_sessions),
        source_agents=list(original.source_agents),
        tags=_union(original.tags, ["inverted"]),
        confidence_decay_half_life_days=original.confidence_decay_half_life_days,
        reasoning=reason or None,
    )
    result.playbook.bullets.append(inverted)
    deprecate(original, f"Inverted to anti-pattern: {inverted.id}", now, inverted.id)

    result.inversions.append(
        InversionReport(
            original_id=original.id,
            new_id=inverted.id,
            original_content=original.content,
            new_content=inverted.content,
            reason=reason,
        )
    )
    result.applied = 1
    result.decision_log.append(
        DecisionLogEntry(
            timestamp=now,
            phase="invert",
            action="accepted",
            bullet_id=original.id,
            reason=reason or "Rule inverted to anti-pattern",
            content=_preview(original.content),
            details={"anti_pattern_id": inverted.id},
        )
    )
    return result


def forget_bullet(
    playbook: Playbook,
    bullet_id: str,
    reason: str,
    now: datetime | None = None,
) -> tuple[Playbook, BlockedEntry]:
    """
    Deprecate a bullet on operator request and return the blocked-log entry for it.

    Pinned bullets are forgotten too: an explicit operator action overrides the pin.

    Raises:
        BulletNotFoundError: If the bullet does not exist
    """
    now = now or utcnow()
    updated = playbook.model_copy(deep=True)
    bullet = updated.get(bullet_id)
    if bullet is None:
        raise BulletNotFoundError(bullet_id)
    if bullet.is_live:
        deprecate(bullet, f"Forgotten: {reason}", now)
        bullet.pinned = False
    logger.info(f"Forgot bullet {bullet_id}: {reason}")
    entry = BlockedEntry(id=bullet.id, content=bullet.content, reason=reason, forgotten_at=now)
    return updated, entry
