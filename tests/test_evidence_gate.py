"""Tests for the evidence gate and rule reasoner."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from rulebook.core.config import GateConfig
from rulebook.core.errors import DeltaParseError
from rulebook.core.schema import AddDelta, HelpfulDelta, NewBullet
from rulebook.history import CassHistorySearch, HistoryHit, HistorySearch, SearchResult
from rulebook.history.search import parse_hits
from rulebook.llm import MockLLMClient
from rulebook.validator import (
    EvidenceGate,
    LLMRuleReasoner,
    ReasonerVerdict,
    RuleReasoner,
    is_failure,
    is_success,
)

from conftest import NOW

RULE = "Use connection pooling for postgres clients"


def _hits(snippets: list[str]) -> list[HistoryHit]:
    return [HistoryHit(source_path=f"/sessions/{i}.jsonl", snippet=s) for i, s in enumerate(snippets)]


class StaticSearch(HistorySearch):
    def __init__(self, result: SearchResult):
        self.result = result
        self.queries: list[str] = []

    def search(self, query, limit=20, days=None):
        self.queries.append(query)
        return self.result


class ScriptedReasoner(RuleReasoner):
    def __init__(self, verdict: ReasonerVerdict | Exception):
        self.verdict = verdict
        self.calls = 0

    def judge(self, rule_text, hits):
        self.calls += 1
        if isinstance(self.verdict, Exception):
            raise self.verdict
        return self.verdict


FAILURES = [
    "connection pool failed to start",
    "Error: too many clients",
    "pool crashed under load",
    "this is broken again",
    "failed with timeout on pool",
]
SUCCESSES = [
    "fixed the pool config",
    "tests pass, successfully deployed",
    "resolved by raising max connections",
    "works now with pgbouncer",
    "migration completed",
]


def test_lexicons():
    assert all(is_failure(s) for s in FAILURES)
    assert all(is_success(s) for s in SUCCESSES)
    assert not is_success("nothing interesting")
    assert not is_failure("nothing interesting")


def test_five_failures_reject_without_reasoner():
    reasoner = ScriptedReasoner(ReasonerVerdict(verdict="ACCEPT"))
    gate = EvidenceGate(None, GateConfig(), reasoner=reasoner)
    outcome = gate.validate(RULE, evidence=_hits(FAILURES))

    assert outcome.verdict == "REJECT"
    assert outcome.gate.failure_count == 5
    assert outcome.gate.success_count == 0
    assert reasoner.calls == 0
    assert not outcome.accepted


def test_five_successes_accept():
    gate = EvidenceGate(None, GateConfig())
    outcome = gate.validate(RULE, evidence=_hits(SUCCESSES))
    assert outcome.verdict == "ACCEPT"


def test_mixed_evidence_is_ambiguous():
    result = EvidenceGate(None, GateConfig()).evaluate(RULE, _hits(SUCCESSES[:2] + FAILURES[:2]))
    assert result.verdict == "AMBIGUOUS"
    assert result.success_count == 2
    assert result.failure_count == 2


def test_duplicate_snippets_counted_once():
    hits = _hits(FAILURES[:2]) + _hits(FAILURES[:2])
    result = EvidenceGate(None, GateConfig()).evaluate(RULE, hits)
    assert result.failure_count == 2
    assert result.verdict == "AMBIGUOUS"


def test_no_evidence_accepts_as_draft_without_reasoner():
    reasoner = ScriptedReasoner(ReasonerVerdict(verdict="REJECT"))
    gate = EvidenceGate(StaticSearch(SearchResult(status="not_found")), GateConfig(), reasoner)
    outcome = gate.validate(RULE)
    assert outcome.verdict == "ACCEPT"
    assert outcome.confidence == 0.0
    assert reasoner.calls == 0


def test_search_unavailable_is_reported():
    gate = EvidenceGate(StaticSearch(SearchResult(status="timeout")), GateConfig())
    result = gate.evaluate(RULE)
    assert result.verdict == "AMBIGUOUS"
    assert result.search_status == "timeout"
    assert "timeout" in result.reason


def test_search_query_uses_keywords():
    search = StaticSearch(SearchResult(status="ok"))
    EvidenceGate(search, GateConfig()).evaluate(RULE)
    assert "postgres" in search.queries[0]
    assert "for" not in search.queries[0].split()


def test_ambiguous_goes_to_reasoner():
    reasoner = ScriptedReasoner(ReasonerVerdict(verdict="REJECT", confidence=0.7, reason="nope"))
    gate = EvidenceGate(None, GateConfig(), reasoner)
    outcome = gate.validate(RULE, _hits(SUCCESSES[:1] + FAILURES[:1]))
    assert reasoner.calls == 1
    assert outcome.verdict == "REJECT"
    assert outcome.used_reasoner


def test_refine_maps_to_accept_with_caution():
    reasoner = ScriptedReasoner(
        ReasonerVerdict(verdict="REFINE", confidence=0.5, refined_rule="Use pgbouncer for pooling")
    )
    gate = EvidenceGate(None, GateConfig(), reasoner)
    outcome = gate.validate(RULE, _hits(SUCCESSES[:1] + FAILURES[:1]))
    assert outcome.verdict == "ACCEPT_WITH_CAUTION"
    assert outcome.confidence == pytest.approx(0.4)
    assert outcome.refined_rule == "Use pgbouncer for pooling"


def test_reasoner_failure_leaves_rule_ambiguous():
    gate = EvidenceGate(None, GateConfig(), ScriptedReasoner(RuntimeError("llm down")))
    outcome = gate.validate(RULE, _hits(SUCCESSES[:1] + FAILURES[:1]))
    assert outcome.verdict == "AMBIGUOUS"
    assert outcome.accepted


class TestValidateDelta:
    def test_non_add_passes_through(self):
        gate = EvidenceGate(None, GateConfig())
        delta = HelpfulDelta(bullet_id="b-1")
        gated = gate.validate_delta(delta, now=NOW)
        assert gated.delta is delta
        assert gated.decision is None

    def test_short_content_skips_gate(self):
        gate = EvidenceGate(None, GateConfig())
        delta = AddDelta(bullet=NewBullet(content="Use uv"))
        gated = gate.validate_delta(delta, now=NOW)
        assert gated.delta is delta
        assert gated.decision.action == "skipped"

    def test_rejected_add_is_dropped(self):
        search = StaticSearch(SearchResult(status="ok", hits=_hits(FAILURES)))
        gate = EvidenceGate(search, GateConfig())
        gated = gate.validate_delta(AddDelta(bullet=NewBullet(content=RULE)), now=NOW)
        assert gated.delta is None
        assert gated.decision.action == "rejected"
        assert gated.decision.details["failure_count"] == 5

    def test_refined_add_is_rewritten(self):
        search = StaticSearch(SearchResult(status="ok", hits=_hits(SUCCESSES[:1] + FAILURES[:1])))
        reasoner = ScriptedReasoner(
            ReasonerVerdict(verdict="REFINE", confidence=0.9, refined_rule="Use pgbouncer")
        )
        gate = EvidenceGate(search, GateConfig(), reasoner)
        gated = gate.validate_delta(AddDelta(bullet=NewBullet(content=RULE)), now=NOW)
        assert gated.delta.bullet.content == "Use pgbouncer"
        assert gated.decision.action == "modified"


class TestLLMRuleReasoner:
    def test_parses_verdict(self):
        client = MockLLMClient(['```json\n{"verdict": "refine", "confidence": 0.6, '
                                '"reason": "too broad", "refined_rule": "x"}\n```'])
        verdict = LLMRuleReasoner(client).judge(RULE, _hits(["snippet"]))
        assert verdict.verdict == "REFINE"
        assert verdict.refined_rule == "x"

    def test_retries_then_raises(self):
        client = MockLLMClient(["not json", "still not json"])
        with pytest.raises(DeltaParseError):
            LLMRuleReasoner(client, max_retries=2).judge(RULE, [])
        assert len(client.calls) == 2


class TestCassHistorySearch:
    def test_missing_binary_is_unavailable(self):
        search = CassHistorySearch(cass_path="definitely-not-a-real-binary")
        result = search.search("pool")
        assert result.status == "unavailable"
        assert not result.available

    @pytest.mark.parametrize(
        "returncode,status",
        [(3, "index_missing"), (4, "not_found"), (10, "timeout"), (1, "unavailable")],
    )
    def test_exit_codes(self, returncode, status):
        proc = MagicMock(returncode=returncode, stdout="", stderr="oops")
        search = CassHistorySearch()
        with patch.object(search, "available", return_value=True), \
                patch("rulebook.history.search.subprocess.run", return_value=proc):
            assert search.search("pool").status == status

    def test_timeout_expired(self):
        search = CassHistorySearch(timeout=0.1)
        with patch.object(search, "available", return_value=True), \
                patch("rulebook.history.search.subprocess.run",
                      side_effect=subprocess.TimeoutExpired("cass", 0.1)):
            assert search.search("pool").status == "timeout"

    def test_successful_search(self):
        stdout = '{"hits": [{"source_path": "/s/1.jsonl", "snippet": "fixed the pool", ' \
                 '"score": 0.9, "created_at": 1700000000}]}'
        proc = MagicMock(returncode=0, stdout=stdout, stderr="")
        search = CassHistorySearch()
        with patch.object(search, "available", return_value=True), \
                patch("rulebook.history.search.subprocess.run", return_value=proc) as run:
            result = search.search("pool", limit=5, days=30)
        assert result.status == "ok"
        assert result.hits[0].timestamp == "1700000000"
        args = run.call_args[0][0]
        assert args[:3] == ["cass", "search", "pool"]
        assert "--robot" in args

    def test_parse_hits_skips_malformed(self):
        hits = parse_hits('[{"source_path": "a", "snippet": "b"}, {"snippet": "no path"}]')
        assert len(hits) == 1
        assert parse_hits("garbage") == []
