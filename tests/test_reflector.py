# tests/test_reflector.py
import itertools

import pytest

from rulebook.core.config import ReflectorConfig
from rulebook.core.errors import DeltaParseError
from rulebook.core.schema import (
    AddDelta,
    HelpfulDelta,
    MergeDelta,
    NewBullet,
    Playbook,
    ReplaceDelta,
)
from rulebook.curator.semantic_matcher import SimilarityService
from rulebook.llm import MockLLMClient
from rulebook.reflector import (
    DeltaGenerator,
    LLMDeltaGenerator,
    ReflectionLoop,
    SessionDiary,
    deduplicate_deltas,
    hash_delta,
    parse_deltas,
    strip_fences,
)

from conftest import make_bullet

DIARY = SessionDiary(session_path="/sessions/42.jsonl", content="Fixed flaky tests by pinning seeds")


def _add(content: str) -> AddDelta:
    return AddDelta(bullet=NewBullet(content=content))


class ScriptedGenerator(DeltaGenerator):
    """Returns one scripted batch per iteration, then nothing."""

    def __init__(self, batches):
        self.batches = list(batches)
        self.seen_previous: list[int] = []

    def generate(self, diary, playbook, previous, iteration=0):
        self.seen_previous.append(len(previous))
        if iteration < len(self.batches):
            batch = self.batches[iteration]
            if isinstance(batch, Exception):
                raise batch
            return batch
        return []


def test_parse_deltas_valid():
    text = '{"deltas": [{"type": "add", "bullet": {"content": "Pin random seeds"}}]}'
    deltas = parse_deltas(text)
    assert len(deltas) == 1
    assert isinstance(deltas[0], AddDelta)


def test_parse_deltas_with_fences_and_bare_list():
    text = '```json\n[{"type": "helpful", "bullet_id": "b-1"}]\n```'
    deltas = parse_deltas(text)
    assert isinstance(deltas[0], HelpfulDelta)


def test_parse_deltas_drops_invalid_items():
    text = '{"deltas": [{"type": "helpful", "bullet_id": "b-1"}, {"type": "nonsense"}]}'
    assert len(parse_deltas(text)) == 1


def test_parse_deltas_invalid_json():
    with pytest.raises(DeltaParseError):
        parse_deltas("not json at all")


def test_parse_deltas_non_list():
    with pytest.raises(DeltaParseError):
        parse_deltas('{"deltas": "oops"}')


def test_strip_fences_passthrough():
    assert strip_fences('  {"a": 1} ') == '{"a": 1}'


def test_hash_delta_add_ignores_case_and_whitespace():
    assert hash_delta(_add("Pin random seeds")) == hash_delta(_add("  pin RANDOM seeds"))


def test_hash_delta_merge_is_order_independent():
    a = MergeDelta(bullet_ids=["x", "y", "z"], merged_content="one")
    b = MergeDelta(bullet_ids=["z", "x", "y"], merged_content="two")
    assert hash_delta(a) == hash_delta(b)


def test_hash_delta_distinguishes_types():
    assert hash_delta(HelpfulDelta(bullet_id="b-1")) != hash_delta(
        ReplaceDelta(bullet_id="b-1", new_content="x")
    )


def test_deduplicate_deltas_keeps_first():
    deltas = [_add("A rule"), _add("B rule"), _add("a RULE")]
    unique = deduplicate_deltas(deltas)
    assert [d.bullet.content for d in unique] == ["A rule", "B rule"]


@pytest.mark.parametrize("order", list(itertools.permutations(["x", "y", "z"])))
def test_deduplicate_merge_permutations(order):
    first = MergeDelta(bullet_ids=["x", "y", "z"], merged_content="m")
    unique = deduplicate_deltas([first, MergeDelta(bullet_ids=list(order), merged_content="m")])
    assert len(unique) == 1


class TestReflectionLoop:
    def test_accumulates_unique_deltas_across_iterations(self):
        delta_a, delta_b = _add("Pin random seeds in tests"), _add("Run flaky tests three times")
        generator = ScriptedGenerator([[delta_a], [delta_b], [_add("pin random seeds in tests")]])
        loop = ReflectionLoop(generator, ReflectorConfig(max_iterations=3))

        result = loop.reflect(DIARY, Playbook())

        assert [d.bullet.content for d in result.deltas] == [
            "Pin random seeds in tests",
            "Run flaky tests three times",
        ]
        assert result.iterations == 3
        assert result.dropped_duplicates == 1
        assert result.exit_reason == "no_new_deltas"
        # previous deltas are fed back to the generator
        assert generator.seen_previous == [0, 1, 2]

    def test_stops_when_nothing_new(self):
        generator = ScriptedGenerator([[_add("Pin random seeds in tests")]])
        result = ReflectionLoop(generator, ReflectorConfig(max_iterations=5)).reflect(
            DIARY, Playbook()
        )
        assert result.iterations == 2
        assert result.exit_reason == "no_new_deltas"

    def test_stops_at_max_iterations(self):
        generator = ScriptedGenerator([[_add(f"Rule number {i}")] for i in range(10)])
        result = ReflectionLoop(generator, ReflectorConfig(max_iterations=2)).reflect(
            DIARY, Playbook()
        )
        assert result.iterations == 2
        assert len(result.deltas) == 2
        assert result.exit_reason == "max_iterations"

    def test_caps_total_deltas(self):
        generator = ScriptedGenerator([[_add(f"Rule number {i}") for i in range(10)]])
        result = ReflectionLoop(generator, ReflectorConfig(max_deltas=4)).reflect(
            DIARY, Playbook()
        )
        assert len(result.deltas) == 4
        assert result.exit_reason == "max_deltas"

    def test_time_budget(self):
        ticks = iter([0.0, 0.0, 500.0, 500.0])
        generator = ScriptedGenerator([[_add("Rule one")], [_add("Rule two")]])
        loop = ReflectionLoop(generator, ReflectorConfig(time_budget_seconds=10.0),
                              clock=lambda: next(ticks))
        result = loop.reflect(DIARY, Playbook())
        assert result.exit_reason == "time_budget"
        assert len(result.deltas) == 1

    def test_generator_error_keeps_earlier_deltas(self):
        generator = ScriptedGenerator([[_add("Rule one")], RuntimeError("llm down")])
        result = ReflectionLoop(generator, ReflectorConfig()).reflect(DIARY, Playbook())
        assert result.exit_reason == "generator_error"
        assert len(result.deltas) == 1

    def test_attaches_session_provenance(self):
        generator = ScriptedGenerator([[_add("Rule one"), HelpfulDelta(bullet_id="b-1")]])
        result = ReflectionLoop(generator, ReflectorConfig()).reflect(DIARY, Playbook())
        assert all(d.source_session == DIARY.session_path for d in result.deltas)

    def test_drops_adds_duplicating_the_playbook(self):
        playbook = Playbook(bullets=[make_bullet("b-1", "Pin random seeds in tests")])
        generator = ScriptedGenerator([[_add("pin random seeds in tests"), _add("New rule")]])
        loop = ReflectionLoop(generator, ReflectorConfig(), similarity=SimilarityService())
        result = loop.reflect(DIARY, playbook)
        assert [d.bullet.content for d in result.deltas] == ["New rule"]
        assert result.dropped_duplicates == 1


class TestLLMDeltaGenerator:
    def test_generates_from_llm_output(self):
        client = MockLLMClient(['{"deltas": [{"type": "add", "bullet": {"content": "Pin seeds"}}]}'])
        deltas = LLMDeltaGenerator(client).generate(DIARY, Playbook(), [])
        assert deltas[0].bullet.content == "Pin seeds"
        system, user = client.calls[0][0], client.calls[0][1]
        assert system.role == "system"
        assert DIARY.content in user.content

    def test_retries_on_parse_failure(self):
        client = MockLLMClient(["garbage", '{"deltas": []}'])
        deltas = LLMDeltaGenerator(client, max_retries=3).generate(DIARY, Playbook(), [])
        assert deltas == []
        assert len(client.calls) == 2
        assert "Previous attempt failed" in client.calls[1][-1].content

    def test_raises_after_max_retries(self):
        client = MockLLMClient(["garbage"] * 3)
        with pytest.raises(DeltaParseError):
            LLMDeltaGenerator(client, max_retries=3).generate(DIARY, Playbook(), [])
