from datetime import datetime, timezone

from planner_taskgraph.core.model import Milestone, Project, Subtask, Task
from planner_taskgraph.core.store.arena import ProjectGraph
from planner_taskgraph.core.validate.validate_board import validate_board

NOW = datetime(2026, 1, 5, tzinfo=timezone.utc)


def _graph():
    return ProjectGraph(Project(id="p", name="P", created_at=NOW))


def _task(tid, order_index, **kw):
    return Task(id=tid, project_id="p", title=tid, created_by_user_id="u", created_at=NOW, order_index=order_index, **kw)


def _codes(issues):
    return [(e.code, e.entity) for e in issues]


def test_sound_graph_has_no_issues():
    g = _graph()
    g.milestones["m"] = Milestone(id="m", project_id="p", title="M", created_by_user_id="u", created_at=NOW, order_index=0)
    g.tasks["a"] = _task("a", 0, milestone_id="m", status="Done")
    g.tasks["b"] = _task("b", 1, assigned_user_id="u1")
    g.deps.load_edge("b", "a")
    assert validate_board(g, member_ids={"u1"}) == []


def test_duplicate_order_indices_per_scope():
    g = _graph()
    g.tasks["a"] = _task("a", 0)
    g.tasks["b"] = _task("b", 0)
    g.subtasks["s1"] = Subtask(id="s1", task_id="a", title="x", created_by_user_id="u", order_index=0)
    g.subtasks["s2"] = Subtask(id="s2", task_id="a", title="y", created_by_user_id="u", order_index=0)
    # same index under another task is fine
    g.subtasks["s3"] = Subtask(id="s3", task_id="b", title="z", created_by_user_id="u", order_index=0)
    assert _codes(validate_board(g)) == [
        ("E_DUPLICATE_ORDER_INDEX", "subtask:s2"),
        ("E_DUPLICATE_ORDER_INDEX", "task:b"),
    ]


def test_dangling_references():
    g = _graph()
    g.tasks["a"] = _task("a", 0, milestone_id="gone", assigned_user_id="ghost")
    g.subtasks["s"] = Subtask(id="s", task_id="missing", title="x", created_by_user_id="u", order_index=0)
    g.deps.load_edge("a", "zzz")
    codes = _codes(validate_board(g, member_ids={"u1"}))
    assert ("E_UNKNOWN_MILESTONE", "task:a") in codes
    assert ("E_UNKNOWN_ASSIGNEE", "task:a") in codes
    assert ("E_UNKNOWN_TASK", "subtask:s") in codes
    assert ("E_UNKNOWN_TASK", "task:a") in codes


def test_assignees_are_not_checked_without_roster():
    g = _graph()
    g.tasks["a"] = _task("a", 0, assigned_user_id="ghost")
    assert validate_board(g) == []


def test_cycles_and_self_loops():
    g = _graph()
    for i, tid in enumerate("abc"):
        g.tasks[tid] = _task(tid, i)
    g.deps.load_edge("a", "b")
    g.deps.load_edge("b", "a")
    g.deps.load_edge("c", "c")
    issues = validate_board(g)
    codes = [e.code for e in issues]
    assert codes.count("E_CYCLE_DETECTED") == 1
    assert codes.count("E_SELF_DEPENDENCY") == 1
    cycle = next(e for e in issues if e.code == "E_CYCLE_DETECTED")
    assert "a -> b -> a" in cycle.message


def test_blocked_flag_without_reason():
    g = _graph()
    g.tasks["dep"] = _task("dep", 0, status="InProgress")
    g.tasks["waiting"] = _task("waiting", 1, is_blocked=True)
    g.tasks["stale"] = _task("stale", 2, is_blocked=True)
    g.tasks["parked"] = _task("parked", 3, status="Blocked", is_blocked=True)
    g.deps.load_edge("waiting", "dep")
    assert _codes(validate_board(g)) == [("E_BLOCKED_FLAG", "task:stale")]


def test_issue_rendering_matches_error_envelope():
    g = _graph()
    g.tasks["a"] = _task("a", 0, milestone_id="gone")
    (issue,) = validate_board(g)
    assert str(issue) == "project:p/task:a: E_UNKNOWN_MILESTONE: unknown milestone: gone"
    assert issue.to_dict()["kind"] == "BoardValidationError"
