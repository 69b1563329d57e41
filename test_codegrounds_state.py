"""
Tests for the project state store.
"""

import json
import logging

from codegrounds_models import FileStatus, FileTask, PhasePlan
from codegrounds_state import MAX_EVENTS, MAX_MESSAGES, STATE_FILENAME, ProjectStateStore


def test_missing_state_is_created(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()

    data = json.loads((tmp_path / STATE_FILENAME).read_text())
    assert data["project"]["goals"] == []
    assert data["checkpoint"] is None


def test_corrupt_state_is_reset(tmp_path, caplog):
    (tmp_path / STATE_FILENAME).write_text("{not json")

    with caplog.at_level(logging.WARNING):
        store = ProjectStateStore(tmp_path)
        store.load()

    assert store.goals == []
    assert "resetting" in caplog.text
    assert json.loads((tmp_path / STATE_FILENAME).read_text())["files"] == {}


def test_state_persists_across_instances(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()
    store.set_goals(["A todo app"])
    store.set_file_status("app.js", FileStatus.PERFECTED, "PASS: fine")
    store.set_checkpoint(1, "app.js")

    reloaded = ProjectStateStore(tmp_path)
    reloaded.load()

    assert reloaded.goals == ["A todo app"]
    assert reloaded.get_file_status("app.js") is FileStatus.PERFECTED
    assert reloaded.get_file_record("app.js").last_audit == "PASS: fine"
    assert reloaded.checkpoint.last_phase_index == 1
    assert reloaded.checkpoint.last_file_path == "app.js"


def test_architecture_round_trip(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()
    plan = PhasePlan(phases=[[FileTask("a.js", "entry")]], stack="node", run_command="node a.js")

    store.set_architecture(plan)

    assert store.get_architecture() == plan


def test_invalid_stored_architecture_is_ignored(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()
    store.state["architecture"] = {"phases": []}

    assert store.get_architecture() is None


def test_mark_stale_only_touches_built_or_perfected(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()
    store.set_file_status("a.js", FileStatus.PERFECTED)
    store.set_file_status("b.js", FileStatus.BUILT)
    store.set_file_status("c.js", FileStatus.STALE)

    changed = store.mark_stale(["a.js", "b.js", "c.js", "untracked.js"])

    assert changed == ["a.js", "b.js"]
    assert store.get_file_status("a.js") is FileStatus.STALE
    assert store.get_file_status("untracked.js") is None


def test_clear_checkpoint(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()
    store.set_checkpoint(2, "x.js")
    store.clear_checkpoint()

    assert store.checkpoint is None


def test_event_history_is_bounded(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()
    for i in range(MAX_EVENTS + 15):
        store.record_event("TEST", f"event {i}")
    store.save()

    history = store.state["history"]
    assert len(history) == MAX_EVENTS
    assert history[0]["message"] == "event 15"
    assert history[-1]["message"] == f"event {MAX_EVENTS + 14}"


def test_message_log_is_bounded(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()
    for i in range(MAX_MESSAGES + 5):
        store.add_message("Coder", "All", f"msg {i}")

    messages = store.state["messages"]
    assert len(messages) == MAX_MESSAGES
    assert messages[0]["content"] == "msg 5"


def test_bugs_log_and_resolve(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()

    first = store.log_bug("app.js", "crashes on start")
    second = store.log_bug("db.js", "wrong port")

    assert first != second
    assert store.resolve_bug(first)
    assert not store.resolve_bug("missing")
    assert [b["file"] for b in store.open_bugs()] == ["db.js"]


def test_update_project_records_event(tmp_path):
    store = ProjectStateStore(tmp_path)
    store.load()

    store.update_project(description="Build a blog")

    assert store.state["project"]["description"] == "Build a blog"
    assert store.state["history"][-1]["type"] == "PROJECT_UPDATE"
    assert json.loads(store.snapshot())["project"]["description"] == "Build a blog"
