import json
import shutil
from pathlib import Path

import pytest
import yaml
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


def test_check_example_workspace(ws):
    r = runner.invoke(app, ["-w", ws, "check"])
    assert r.exit_code == 0, r.output
    assert "OK:" in r.stdout


def test_check_reports_board_issues(ws, tmp_path):
    data = yaml.safe_load(Path(ws).read_text(encoding="utf-8"))
    data["projects"][0]["tasks"][0]["depends_on"] = ["task-ui"]
    data["projects"][0]["tasks"][2]["order_index"] = 1
    broken = tmp_path / "broken.yaml"
    broken.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")

    r = runner.invoke(app, ["-w", str(broken), "check"])
    assert r.exit_code == 2
    assert "E_CYCLE_DETECTED" in r.stderr
    assert "E_DUPLICATE_ORDER_INDEX" in r.stderr

    r = runner.invoke(app, ["-w", str(broken), "check", "--format", "json"])
    assert r.exit_code == 2
    payload = json.loads(r.stdout)
    assert payload["ok"] is False
    assert payload["error_count"] == len(payload["errors"]) == 2
    assert {e["code"] for e in payload["errors"]} == {"E_CYCLE_DETECTED", "E_DUPLICATE_ORDER_INDEX"}


def test_plan_apply_roadmap_file(ws):
    r = runner.invoke(app, ["-w", ws, "--actor", "alice", "plan", "apply", str(EXAMPLES / "roadmap.json")])
    assert r.exit_code == 0, r.output
    assert "OK: 2 milestone(s), 3 task(s)" in r.stdout
    assert "Keep the beta to a single campus." in r.stdout

    board = load_workspace(ws).store.list_board("proj-demo")
    by_title = {t.title: t for t in board}
    assert by_title["Interview ten students"].assigned_user_id == "alice"
    assert by_title["Interview ten students"].milestone_title == "Discovery"
    assert by_title["Set up push notifications"].assigned_user_id == "bob"
    assert by_title["Beta feedback form"].milestone_id is None
    assert [t.order_index for t in board] == [0, 1, 2, 3, 4, 5]


def test_plan_apply_needs_planner(ws):
    r = runner.invoke(app, ["-w", ws, "--actor", "bob", "plan", "apply", str(EXAMPLES / "roadmap.json")])
    assert r.exit_code == 3
    assert "E_NOT_ALLOWED" in r.stderr


def test_plan_apply_rejects_bad_roadmap(ws, tmp_path):
    bad = tmp_path / "roadmap.json"
    bad.write_text(json.dumps({"milestones": [{"description": "untitled"}], "tasks": []}), encoding="utf-8")
    r = runner.invoke(app, ["-w", ws, "--actor", "alice", "plan", "apply", str(bad)])
    assert r.exit_code == 2
    assert "E_ROADMAP_INVALID" in r.stderr


def test_plan_generate_requires_api_key(ws, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    r = runner.invoke(app, ["-w", ws, "--actor", "alice", "plan", "generate", "--goal", "MVP"])
    assert r.exit_code == 2
    assert "E_NO_API_KEY" in r.stderr


def test_plan_elaborate_requires_api_key(ws, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    r = runner.invoke(app, ["-w", ws, "--actor", "bob", "plan", "elaborate", "task-api", "--format", "json"])
    assert r.exit_code == 2
    payload = json.loads(r.stdout)
    assert payload["ok"] is False
    assert payload["error"]["code"] == "E_NO_API_KEY"
