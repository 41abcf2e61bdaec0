import fcntl
import json

import pytest

from rulebook.core.errors import LockTimeoutError, StoreError
from rulebook.core.schema import BlockedEntry, Bullet, DecisionLogEntry, Playbook
from rulebook.core.storage.jsonl_log import JsonlLog
from rulebook.core.storage.lock import atomic_write_text, file_lock, lock_path_for
from rulebook.core.storage.playbook_store import PlaybookStore, dump_playbook

from conftest import NOW


def test_load_missing_file_returns_empty_playbook(tmp_path):
    store = PlaybookStore(tmp_path / "playbook.json")
    playbook = store.load()
    assert playbook.bullets == []
    assert not store.exists()


def test_save_and_load_roundtrip(tmp_path):
    store = PlaybookStore(tmp_path / "playbook.json")
    store.save(Playbook(name="proj", bullets=[Bullet(id="b-1", content="Run tests")]))

    loaded = store.load()
    assert loaded.name == "proj"
    assert loaded.get("b-1").content == "Run tests"


def test_saved_file_uses_camel_case_patterns_key(tmp_path):
    store = PlaybookStore(tmp_path / "playbook.json")
    store.save(Playbook())
    raw = json.loads((tmp_path / "playbook.json").read_text())
    assert "deprecatedPatterns" in raw


def test_init_refuses_to_overwrite(tmp_path):
    store = PlaybookStore(tmp_path / "playbook.json")
    store.init(name="proj")
    with pytest.raises(StoreError):
        store.init(name="proj")


def test_update_persists_mutation(tmp_path):
    store = PlaybookStore(tmp_path / "playbook.json")
    store.init()

    def add_bullet(playbook):
        playbook.bullets.append(Bullet(id="b-1", content="Run tests"))
        return playbook, "done"

    assert store.update(add_bullet) == "done"
    assert store.load().get("b-1") is not None


def test_update_writes_nothing_when_mutator_raises(tmp_path):
    store = PlaybookStore(tmp_path / "playbook.json")
    store.save(Playbook(bullets=[Bullet(id="b-1", content="Run tests")]))
    before = (tmp_path / "playbook.json").read_text()

    def explode(playbook):
        playbook.bullets.clear()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.update(explode)
    assert (tmp_path / "playbook.json").read_text() == before


def test_corrupt_file_is_backed_up(tmp_path):
    path = tmp_path / "playbook.json"
    path.write_text("{not json")
    playbook = PlaybookStore(path).load()

    assert playbook.bullets == []
    backups = list(tmp_path.glob("playbook.json.backup.*"))
    assert len(backups) == 1
    assert backups[0].read_text() == "{not json"


def test_invalid_bullets_are_skipped(tmp_path):
    path = tmp_path / "playbook.json"
    path.write_text(
        json.dumps(
            {
                "bullets": [
                    {"id": "good", "content": "Run tests"},
                    {"id": "bad", "content": ""},
                    {"id": "good", "content": "Duplicate id"},
                    "not-a-dict",
                ]
            }
        )
    )
    playbook = PlaybookStore(path).load()
    assert [b.id for b in playbook.bullets] == ["good"]
    assert playbook.bullets[0].content == "Run tests"
    assert list(tmp_path.glob("playbook.json.backup.*")) == []


def test_update_backs_up_file_before_dropping_invalid_bullets(tmp_path):
    path = tmp_path / "playbook.json"
    original = json.dumps(
        {
            "bullets": [
                {"id": "b-ok", "content": "Run tests"},
                {
                    "id": "b-bad",
                    "content": "Hand edited",
                    "feedback_events": [
                        {"type": "harmful", "timestamp": "2025-01-01T00:00:00Z", "reason": "flaky"}
                    ],
                },
            ]
        }
    )
    path.write_text(original)

    PlaybookStore(path).update(lambda pb: (pb, None))

    assert [b["id"] for b in json.loads(path.read_text())["bullets"]] == ["b-ok"]
    backups = list(tmp_path.glob("playbook.json.backup.*"))
    assert len(backups) == 1
    assert backups[0].read_text() == original


def test_update_of_clean_file_makes_no_backup(tmp_path):
    store = PlaybookStore(tmp_path / "playbook.json")
    store.save(Playbook(bullets=[Bullet(id="b-1", content="Run tests")]))
    store.update(lambda pb: (pb, None))
    assert list(tmp_path.glob("playbook.json.backup.*")) == []


def test_dangling_replaced_by_still_loads(tmp_path, caplog):
    path = tmp_path / "playbook.json"
    path.write_text(json.dumps({"bullets": [{"id": "a", "content": "x", "replaced_by": "ghost"}]}))
    playbook = PlaybookStore(path).load()
    assert playbook.get("a").replaced_by == "ghost"
    assert "missing bullet" in caplog.text


def test_lock_timeout(tmp_path):
    path = tmp_path / "playbook.json"
    path.parent.mkdir(exist_ok=True)
    with open(lock_path_for(path), "a+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        with pytest.raises(LockTimeoutError) as exc_info:
            with file_lock(path, retries=2, backoff=0.01):
                pass
        fcntl.flock(holder.fileno(), fcntl.LOCK_UN)
    assert exc_info.value.attempts == 2


def test_lock_is_released_after_block(tmp_path):
    path = tmp_path / "data.json"
    with file_lock(path, retries=1):
        pass
    with file_lock(path, retries=1):
        pass


def test_atomic_write_leaves_no_temp_files(tmp_path):
    path = tmp_path / "out.json"
    atomic_write_text(path, "one")
    atomic_write_text(path, "two")
    assert path.read_text() == "two"
    assert [p.name for p in tmp_path.iterdir()] == ["out.json"]


def test_dump_playbook_is_stable():
    playbook = Playbook(bullets=[Bullet(id="b-1", content="x", created_at=NOW, updated_at=NOW)])
    playbook.metadata.created_at = NOW
    assert dump_playbook(playbook) == dump_playbook(playbook.model_copy(deep=True))


class TestJsonlLog:
    def test_append_and_read(self, tmp_path):
        log = JsonlLog(tmp_path / "blocked.jsonl", BlockedEntry)
        assert log.append([BlockedEntry(id="a", content="x", reason="r", forgotten_at=NOW)]) == 1
        assert log.append([]) == 0
        entries = log.read()
        assert len(entries) == 1
        assert entries[0].id == "a"

    def test_read_missing_file(self, tmp_path):
        assert JsonlLog(tmp_path / "none.jsonl", BlockedEntry).read() == []

    def test_corrupt_lines_are_skipped(self, tmp_path):
        path = tmp_path / "decisions.jsonl"
        log = JsonlLog(path, DecisionLogEntry)
        entry = DecisionLogEntry(timestamp=NOW, phase="add", action="accepted", reason="ok")
        log.append([entry])
        with open(path, "a") as f:
            f.write("{truncated\n")
            f.write('{"phase": "add"}\n')
        log.append([entry])
        assert len(log.read()) == 2
