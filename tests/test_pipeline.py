# tests/test_pipeline.py
"""
Tests for the pipeline orchestration.
Covers the full cycle: session diary → reflection → evidence gate → curation → audit logs.
"""
import fcntl
import json

import pytest

from rulebook.context import RulebookContext
from rulebook.core.errors import BulletNotFoundError, LockTimeoutError
from rulebook.core.schema import Bullet, HelpfulDelta, Playbook
from rulebook.core.storage.lock import lock_path_for
from rulebook.history import HistoryHit, HistorySearch, SearchResult
from rulebook.llm import MockLLMClient
from rulebook.pipeline import Pipeline
from rulebook.reflector import SessionDiary

from conftest import NOW, FakeEmbedder

RULE = "Pin random seeds in flaky tests"


class StaticSearch(HistorySearch):
    def __init__(self, result: SearchResult | None = None):
        self.result = result or SearchResult(status="not_found")

    def search(self, query, limit=20, days=None):
        return self.result


def _delta_response(*contents: str) -> str:
    return json.dumps(
        {"deltas": [{"type": "add", "bullet": {"content": c, "category": "testing"}}
                    for c in contents]}
    )


@pytest.fixture
def make_ctx(tmp_config):
    contexts = []

    def factory(responses=(), search=None, embedder=None) -> RulebookContext:
        ctx = RulebookContext(
            tmp_config,
            embedder=embedder,
            llm_client=MockLLMClient(responses),
            history=search or StaticSearch(),
        )
        contexts.append(ctx)
        return ctx

    yield factory
    for ctx in contexts:
        ctx.close()


def test_curate_persists_and_logs(make_ctx):
    ctx = make_ctx()
    result = Pipeline(ctx).curate(
        [{"type": "add", "bullet": {"content": RULE}}, {"type": "bogus"}], now=NOW
    )

    assert result.applied == 1
    assert result.skipped == 1
    stored = ctx.store.load()
    assert [b.content for b in stored.bullets] == [RULE]

    decisions = ctx.decision_log.read()
    assert [d.phase for d in decisions] == ["validate", "add"]


def test_reflect_session_end_to_end(make_ctx):
    ctx = make_ctx([_delta_response(RULE)])
    diary = SessionDiary(session_path="/sessions/1.jsonl", content="Tests were flaky until seeded")

    result = Pipeline(ctx).reflect_session(diary, now=NOW)

    assert result.reflection.exit_reason == "no_new_deltas"
    assert result.rejected == 0
    assert result.curation.applied == 1
    playbook = ctx.store.load()
    bullet = playbook.bullets[0]
    assert bullet.content == RULE
    assert bullet.state == "draft"
    assert bullet.source_sessions == ["/sessions/1.jsonl"]
    assert playbook.metadata.total_reflections == 1
    assert playbook.metadata.last_reflection == NOW

    phases = [d.phase for d in ctx.decision_log.read()]
    assert phases.count("add") == 2  # gate decision + curation decision


def test_reflect_session_rejected_by_gate(make_ctx):
    failures = [
        HistoryHit(source_path=f"/s/{i}.jsonl", snippet=f"seeding failed to help, run {i}")
        for i in range(5)
    ]
    ctx = make_ctx([_delta_response(RULE)], search=StaticSearch(SearchResult(status="ok",
                                                                              hits=failures)))
    diary = SessionDiary(session_path="/sessions/2.jsonl", content="...")

    result = Pipeline(ctx).reflect_session(diary, now=NOW)

    assert result.rejected == 1
    assert result.curation.applied == 0
    assert ctx.store.load().bullets == []
    rejected = [d for d in ctx.decision_log.read() if d.action == "rejected"]
    assert len(rejected) == 1


def test_reflect_session_dry_run_writes_nothing(make_ctx):
    ctx = make_ctx([_delta_response(RULE)])
    diary = SessionDiary(session_path="/sessions/3.jsonl", content="...")

    result = Pipeline(ctx).reflect_session(diary, apply=False, now=NOW)

    assert result.curation is None
    assert len(result.reflection.deltas) == 1
    assert not ctx.store.exists()


def test_reflect_with_gate_disabled(make_ctx, tmp_config):
    tmp_config.gate.enabled = False
    ctx = make_ctx([_delta_response("Short")])
    result = Pipeline(ctx).reflect_session(SessionDiary("/s/4.jsonl", "..."), now=NOW)
    assert result.gate_decisions == []
    assert result.curation.applied == 1


def test_mark_promotes_after_three_helpful(make_ctx):
    ctx = make_ctx()
    pipeline = Pipeline(ctx)
    pipeline.curate([{"type": "add", "bullet": {"content": RULE, "id": "b-seed"}}], now=NOW)

    for session in ("a", "b", "c"):
        result = pipeline.mark("b-seed", helpful=True, session=session, now=NOW)

    assert result.promotions[0].to_maturity == "established"
    assert ctx.store.load().get("b-seed").maturity == "established"


def test_invert_writes_both_bullets(make_ctx):
    ctx = make_ctx()
    ctx.store.save(Playbook(bullets=[Bullet(id="b-1", content="Always mock the database")]))

    result = Pipeline(ctx).invert("b-1", "mocks hid a bug", now=NOW)

    stored = ctx.store.load()
    new_id = result.inversions[0].new_id
    assert stored.get("b-1").replaced_by == new_id
    assert stored.get(new_id).is_negative
    assert ctx.decision_log.read()[0].phase == "invert"


def test_invert_unknown_writes_nothing(make_ctx):
    ctx = make_ctx()
    ctx.store.save(Playbook())
    before = ctx.store.path.read_text()
    with pytest.raises(BulletNotFoundError):
        Pipeline(ctx).invert("ghost", "x", now=NOW)
    assert ctx.store.path.read_text() == before


def test_forget_records_blocked_entry(make_ctx):
    ctx = make_ctx()
    ctx.store.save(Playbook(bullets=[Bullet(id="b-1", content="Leaky rule")]))

    entry = Pipeline(ctx).forget("b-1", "contains a token", now=NOW)

    assert entry.id == "b-1"
    assert not ctx.store.load().get("b-1").is_live
    assert [e.id for e in ctx.blocked_log.read()] == ["b-1"]
    assert ctx.decision_log.read()[-1].phase == "forget"


def test_curate_fails_cleanly_when_lock_is_held(make_ctx):
    ctx = make_ctx()
    ctx.store.save(Playbook())
    with open(lock_path_for(ctx.store.path), "a+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        with pytest.raises(LockTimeoutError):
            Pipeline(ctx).curate([HelpfulDelta(bullet_id="b-1")], now=NOW)
        fcntl.flock(holder.fileno(), fcntl.LOCK_UN)
    assert ctx.decision_log.read() == []


def test_embeddings_cached_between_runs(make_ctx, tmp_config):
    embedder = FakeEmbedder([[RULE, "Seed the RNG in unstable tests"]])
    ctx = make_ctx(embedder=embedder)
    pipeline = Pipeline(ctx)
    pipeline.curate([{"type": "add", "bullet": {"content": RULE}}], now=NOW)

    result = pipeline.curate(
        [{"type": "add", "bullet": {"content": "Seed the RNG in unstable tests"}}], now=NOW
    )

    assert result.skipped == 1
    assert result.conflicts[0].kind == "duplicate"
    cache = json.loads(open(tmp_config.storage.embedding_cache_path).read())
    assert cache["model"] == "fake-embedder"
    assert len(cache["entries"]) == 1
