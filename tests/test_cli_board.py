import json
import shutil
from pathlib import Path

import pytest
from typer.testing import CliRunner

from planner_taskgraph.cli import app
from planner_taskgraph.core.io.workspace import load_workspace

runner = CliRunner()

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


@pytest.fixture
def ws(tmp_path, monkeypatch):
    for var in ("PLANNER_ACTOR", "PLANNER_PROJECT", "PLANNER_CONFIG", "PLANNER_WORKSPACE"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "workspace.yaml"
    shutil.copy(EXAMPLES / "workspace.yaml", path)
    return str(path)


def _as(ws, actor, *args):
    return runner.invoke(app, ["-w", ws, "--actor", actor, *args])


def test_board_text_lists_tasks(ws):
    r = _as(ws, "bob", "board")
    assert r.exit_code == 0, r.output
    assert "Design event schema" in r.stdout
    assert "Event list screen" in r.stdout


def test_board_json_with_filters(ws):
    r = _as(ws, "bob", "board", "--hide-completed", "--format", "json")
    assert r.exit_code == 0, r.output
    payload = json.loads(r.stdout)
    assert payload["tool"] == "planner"
    assert payload["command"] == "board"
    assert payload["ok"] is True
    assert [t["id"] for t in payload["result"]] == ["task-api", "task-ui"]

    r = _as(ws, "bob", "board", "--mine", "--format", "json")
    assert [t["id"] for t in json.loads(r.stdout)["result"]] == ["task-schema", "task-api"]


def test_milestones_listing(ws):
    r = _as(ws, "alice", "milestones", "--format", "json")
    assert r.exit_code == 0, r.output
    result = json.loads(r.stdout)["result"]
    assert [(m["title"], m["tasks_count"], m["done_tasks_count"]) for m in result] == [
        ("Foundation", 1, 1),
        ("MVP", 2, 0),
    ]


def test_task_add_is_saved(ws):
    r = _as(ws, "alice", "task", "add", "Write README", "--type", "Docs", "--subtask", "Intro", "--format", "json")
    assert r.exit_code == 0, r.output
    created = json.loads(r.stdout)["result"]
    assert created["order_index"] == 3
    assert [s["title"] for s in created["subtasks"]] == ["Intro"]

    reloaded = load_workspace(ws)
    assert reloaded.store.get_task("proj-demo", created["id"]).title == "Write README"


def test_member_cannot_add_tasks(ws):
    r = _as(ws, "bob", "task", "add", "Sneaky")
    assert r.exit_code == 3
    assert "E_NOT_ALLOWED" in r.stderr


def test_status_change_respects_dependencies(ws):
    r = _as(ws, "bob", "task", "status", "task-ui", "Done")
    assert r.exit_code == 2
    assert "E_DEPENDENCIES_NOT_DONE" in r.stderr

    r = _as(ws, "bob", "task", "status", "task-ui", "InProgress")
    assert r.exit_code == 0, r.output
    assert "Todo -> InProgress" in r.stdout


def test_ids_resolve_by_unique_prefix(ws):
    r = _as(ws, "bob", "task", "show", "task-a")
    assert r.exit_code == 0, r.output
    assert "Build events API (task-api)" in r.stdout

    r = _as(ws, "bob", "task", "show", "task-")
    assert r.exit_code == 2
    assert "E_AMBIGUOUS_ID" in r.stderr

    r = _as(ws, "bob", "task", "show", "nope")
    assert r.exit_code == 1
    assert "E_TASK_NOT_FOUND" in r.stderr


def test_cycle_is_refused_and_file_untouched(ws):
    before = Path(ws).read_text(encoding="utf-8")
    r = _as(ws, "alice", "dep", "add", "task-schema", "task-ui")
    assert r.exit_code == 2
    assert "E_CYCLE_DETECTED" in r.stderr
    assert Path(ws).read_text(encoding="utf-8") == before


def test_subtask_toggle_and_reference_listing(ws):
    r = _as(ws, "bob", "subtask", "toggle", "task-api", "sub-api-l")
    assert r.exit_code == 0, r.output
    assert "done" in r.stdout
    sub = load_workspace(ws).store.snapshot("proj-demo").subtasks["sub-api-list"]
    assert sub.is_done and sub.completed_at is not None

    r = _as(ws, "bob", "ref", "list", "task-schema")
    assert r.exit_code == 0, r.output
    assert "https://example.com/docs/schema" in r.stdout


def test_milestone_delete_detaches_tasks(ws):
    r = _as(ws, "alice", "milestone", "delete", "ms-mvp", "--format", "json")
    assert r.exit_code == 0, r.output
    assert json.loads(r.stdout)["result"]["detached_task_ids"] == ["task-api", "task-ui"]


def test_unknown_format(ws):
    r = _as(ws, "bob", "board", "--format", "xml")
    assert r.exit_code == 2
    assert "E_UNKNOWN_FORMAT" in r.stderr


def test_actor_is_required(ws):
    r = runner.invoke(app, ["-w", ws, "board"])
    assert r.exit_code == 2
    assert "E_ACTOR_REQUIRED" in r.stderr


def test_missing_workspace(tmp_path, monkeypatch):
    monkeypatch.delenv("PLANNER_CONFIG", raising=False)
    r = runner.invoke(app, ["-w", str(tmp_path / "none.yaml"), "--actor", "bob", "board"])
    assert r.exit_code == 1
    assert "E_FILE_NOT_FOUND" in r.stderr


def test_init_then_add(tmp_path, monkeypatch):
    monkeypatch.delenv("PLANNER_CONFIG", raising=False)
    monkeypatch.delenv("PLANNER_PROJECT", raising=False)
    path = str(tmp_path / "new.yaml")
    r = runner.invoke(app, ["-w", path, "init", "--project-id", "demo", "--name", "Demo", "--admin", "zoe"])
    assert r.exit_code == 0, r.output

    r = runner.invoke(app, ["-w", path, "--actor", "zoe", "task", "add", "First"])
    assert r.exit_code == 0, r.output
    assert [t.title for t in load_workspace(path).store.list_board("demo")] == ["First"]

    r = runner.invoke(app, ["-w", path, "init", "--project-id", "demo", "--name", "Demo", "--admin", "zoe"])
    assert r.exit_code == 2
    assert "E_WORKSPACE_EXISTS" in r.stderr
