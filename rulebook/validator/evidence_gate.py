"""Evidence gate: cheap heuristic accept/reject of proposed rules.

Keywords from the rule are searched in past sessions; each returned snippet is
classified as success- or failure-indicating by a fixed regex lexicon. Clear
majorities decide without an LLM call; everything else is AMBIGUOUS and may be
handed to a ``RuleReasoner``. The gate never touches the store.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from rulebook.core.config import GateConfig
from rulebook.core.schema import AddDelta, DecisionLogEntry, NewBullet, PlaybookDelta
from rulebook.history import HistoryHit, HistorySearch, SearchResult
from rulebook.utils import extract_keywords, utcnow

from .reasoner import RuleReasoner

logger = logging.getLogger(__name__)

GateVerdict = Literal["ACCEPT", "REJECT", "AMBIGUOUS"]
FinalVerdict = Literal["ACCEPT", "REJECT", "ACCEPT_WITH_CAUTION", "AMBIGUOUS"]

REFINE_CONFIDENCE_FACTOR = 0.8

SUCCESS_PATTERNS = [
    re.compile(r"\bfixed\s+(the|a|an|this|that|it)\b", re.IGNORECASE),
    re.compile(r"\bsuccessfully\b", re.IGNORECASE),
    re.compile(r"\bsuccess\b(?!ful)", re.IGNORECASE),
    re.compile(r"\bsolved\s+(the|a|an|this|that|it)\b", re.IGNORECASE),
    re.compile(r"\bworking\s+now\b", re.IGNORECASE),
    re.compile(r"\bworks\s+(now|correctly|properly)\b", re.IGNORECASE),
    re.compile(r"\bresolved\b", re.IGNORECASE),
    re.compile(r"\bcompleted\b", re.IGNORECASE),
]

FAILURE_PATTERNS = [
    re.compile(r"\bfailed\s+(to|with)\b", re.IGNORECASE),
    re.compile(r"\berror:", re.IGNORECASE),
    re.compile(r"\b(threw|throws)\s+.*error\b", re.IGNORECASE),
    re.compile(r"\bbroken\b", re.IGNORECASE),
    re.compile(r"\bcrash(ed|es|ing)?\b", re.IGNORECASE),
    re.compile(r"\bbug\s+(in|found|caused)\b", re.IGNORECASE),
    re.compile(r"\bdoesn't\s+work\b", re.IGNORECASE),
]


def is_success(snippet: str) -> bool:
    return any(p.search(snippet) for p in SUCCESS_PATTERNS)


def is_failure(snippet: str) -> bool:
    return any(p.search(snippet) for p in FAILURE_PATTERNS)


@dataclass
class EvidenceGateResult:
    verdict: GateVerdict
    confidence: float
    success_count: int
    failure_count: int
    evidence_count: int
    reason: str
    keywords: list[str] = field(default_factory=list)
    search_status: str = "ok"
    hits: list[HistoryHit] = field(default_factory=list)


@dataclass
class ValidationOutcome:
    verdict: FinalVerdict
    confidence: float
    reason: str
    gate: EvidenceGateResult
    refined_rule: str | None = None
    used_reasoner: bool = False

    @property
    def accepted(self) -> bool:
        """False only for an explicit rejection; ambiguous rules proceed as drafts."""
        return self.verdict != "REJECT"


@dataclass
class GatedDelta:
    delta: PlaybookDelta | None
    outcome: ValidationOutcome | None
    decision: DecisionLogEntry | None = None


class EvidenceGate:
    def __init__(
        self,
        search: HistorySearch | None,
        config: GateConfig,
        reasoner: RuleReasoner | None = None,
    ):
        self.search = search
        self.config = config
        self.reasoner = reasoner

    def _collect(self, rule_text: str) -> tuple[list[str], SearchResult]:
        keywords = extract_keywords(rule_text)
        if not keywords or self.search is None:
            return keywords, SearchResult(status="unavailable" if self.search is None else "ok")
        return keywords, self.search.search(
            " ".join(keywords), limit=self.config.search_limit, days=self.config.lookback_days
        )

    def evaluate(
        self, rule_text: str, evidence: list[HistoryHit] | None = None
    ) -> EvidenceGateResult:
        """Classify a proposed rule from historical evidence.

        Args:
            rule_text: Proposed rule content
            evidence: Pre-fetched snippets; searched for when omitted

        Returns:
            EvidenceGateResult with verdict ACCEPT, REJECT or AMBIGUOUS
        """
        keywords: list[str] = []
        status = "ok"
        if evidence is None:
            keywords, result = self._collect(rule_text)
            evidence = result.hits
            status = result.status

        unique: dict[tuple[str, str], HistoryHit] = {}
        for hit in evidence:
            unique.setdefault((hit.source_path, hit.snippet), hit)
        hits = list(unique.values())

        successes = sum(1 for h in hits if is_success(h.snippet))
        failures = sum(1 for h in hits if is_failure(h.snippet))
        classified = successes + failures

        def result(verdict: GateVerdict, confidence: float, reason: str) -> EvidenceGateResult:
            return EvidenceGateResult(
                verdict=verdict,
                confidence=round(confidence, 4),
                success_count=successes,
                failure_count=failures,
                evidence_count=len(hits),
                reason=reason,
                keywords=keywords,
                search_status=status,
                hits=hits,
            )

        if not hits:
            reason = "No historical evidence found"
            if status not in ("ok", "not_found"):
                reason = f"History search {status}; no evidence available"
            return result("AMBIGUOUS", 0.0, reason)

        failure_ratio = failures / classified if classified else 0.0
        success_ratio = successes / classified if classified else 0.0
        if failures >= self.config.min_failures and failure_ratio >= self.config.reject_ratio:
            return result("REJECT", failure_ratio,
                          f"Strong failure signal ({failures} of {classified} snippets)")
        if successes >= self.config.min_successes and success_ratio >= self.config.accept_ratio:
            return result("ACCEPT", success_ratio,
                          f"Strong success signal ({successes} of {classified} snippets)")
        return result("AMBIGUOUS", 0.5,
                      f"Mixed evidence ({successes} success, {failures} failure snippets)")

    def validate(
        self, rule_text: str, evidence: list[HistoryHit] | None = None
    ) -> ValidationOutcome:
        """Run the gate and, for ambiguous rules with evidence, the reasoner."""
        gate = self.evaluate(rule_text, evidence)

        if gate.verdict == "REJECT":
            return ValidationOutcome("REJECT", gate.confidence, gate.reason, gate)
        if gate.verdict == "ACCEPT":
            return ValidationOutcome("ACCEPT", gate.confidence, gate.reason, gate)
        if gate.evidence_count == 0:
            return ValidationOutcome("ACCEPT", 0.0, f"{gate.reason}; proposing as draft", gate)
        if self.reasoner is None:
            return ValidationOutcome("AMBIGUOUS", gate.confidence, gate.reason, gate)

        try:
            judged = self.reasoner.judge(rule_text, gate.hits)
        except Exception as e:
            logger.warning(f"Rule reasoner unavailable, leaving rule ambiguous: {e}")
            return ValidationOutcome("AMBIGUOUS", gate.confidence,
                                     f"{gate.reason}; reasoner failed", gate)

        if judged.verdict == "REFINE":
            return ValidationOutcome(
                "ACCEPT_WITH_CAUTION",
                round(judged.confidence * REFINE_CONFIDENCE_FACTOR, 4),
                judged.reason,
                gate,
                refined_rule=(judged.refined_rule or "").strip() or None,
                used_reasoner=True,
            )
        return ValidationOutcome(judged.verdict, judged.confidence, judged.reason, gate,
                                 used_reasoner=True)

    def validate_delta(self, delta: PlaybookDelta, now: datetime | None = None) -> GatedDelta:
        """Gate an ``add`` delta; every other delta type passes through untouched.

        Returns:
            GatedDelta whose ``delta`` is None when the rule was rejected, or a
            rewritten add delta when the reasoner refined the rule text.
        """
        if not isinstance(delta, AddDelta):
            return GatedDelta(delta, None)

        now = now or utcnow()
        content = delta.bullet.content.strip()
        if len(content) < self.config.min_content_length:
            decision = DecisionLogEntry(
                timestamp=now, phase="add", action="skipped", content=content[:100],
                reason=f"Content too short for evidence gate ({len(content)} chars)",
            )
            return GatedDelta(delta, None, decision)

        outcome = self.validate(content)
        details = {
            "verdict": outcome.verdict,
            "confidence": outcome.confidence,
            "success_count": outcome.gate.success_count,
            "failure_count": outcome.gate.failure_count,
            "evidence_count": outcome.gate.evidence_count,
        }
        if not outcome.accepted:
            decision = DecisionLogEntry(
                timestamp=now, phase="add", action="rejected", content=content[:100],
                reason=f"Evidence gate: {outcome.reason}", details=details,
            )
            return GatedDelta(None, outcome, decision)

        gated: PlaybookDelta = delta
        action: Literal["accepted", "modified"] = "accepted"
        if outcome.refined_rule and outcome.refined_rule != content:
            refined: NewBullet = delta.bullet.model_copy(update={"content": outcome.refined_rule})
            gated = delta.model_copy(update={"bullet": refined})
            action = "modified"
            details["original_content"] = content[:100]
        decision = DecisionLogEntry(
            timestamp=now, phase="add", action=action, content=content[:100],
            reason=f"Evidence gate: {outcome.reason}", details=details,
        )
        return GatedDelta(gated, outcome, decision)
