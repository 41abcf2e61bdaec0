from .evidence_gate import (
    EvidenceGate,
    EvidenceGateResult,
    GatedDelta,
    ValidationOutcome,
    is_failure,
    is_success,
)
from .reasoner import LLMRuleReasoner, ReasonerVerdict, RuleReasoner

__all__ = [
    "EvidenceGate",
    "EvidenceGateResult",
    "GatedDelta",
    "LLMRuleReasoner",
    "ReasonerVerdict",
    "RuleReasoner",
    "ValidationOutcome",
    "is_failure",
    "is_success",
]
