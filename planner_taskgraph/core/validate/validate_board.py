from __future__ import annotations

from collections import Counter, defaultdict
from typing import Collection, Iterable, Optional

from planner_taskgraph.core.errors import BoardValidationError
from planner_taskgraph.core.store.arena import ProjectGraph


def validate_board(
    graph: ProjectGraph,
    member_ids: Optional[Collection[str]] = None,
) -> list[BoardValidationError]:
    """Check a project graph against the board invariants.

    Works on graphs that did not come through the store's mutations (loaded
    workspaces, working copies about to be committed), so nothing is assumed.
    When `member_ids` is given, every assignee must be one of them.

    Returns issues sorted by (entity, code); an empty list means the graph is sound.
    """
    pid = graph.project_id
    issues: list[BoardValidationError] = []

    def issue(code: str, message: str, entity: str) -> None:
        issues.append(BoardValidationError(code=code, message=message, project_id=pid, entity=entity))

    # Rule: order indices unique per scope
    _duplicates(
        ((m.id, m.order_index) for m in graph.milestones.values()),
        "milestone",
        issue,
    )
    _duplicates(((t.id, t.order_index) for t in graph.tasks.values()), "task", issue)
    by_task: dict[str, list[tuple[str, int]]] = defaultdict(list)
    for s in graph.subtasks.values():
        by_task[s.task_id].append((s.id, s.order_index))
    for items in by_task.values():
        _duplicates(items, "subtask", issue)

    # Rule: everything belongs to this project and points at things that exist
    for t in graph.tasks.values():
        if t.project_id != pid:
            issue("E_PROJECT_MISMATCH", f"task belongs to project {t.project_id}", f"task:{t.id}")
        if t.milestone_id is not None and t.milestone_id not in graph.milestones:
            issue("E_UNKNOWN_MILESTONE", f"unknown milestone: {t.milestone_id}", f"task:{t.id}")
        if member_ids is not None and t.assigned_user_id and t.assigned_user_id not in member_ids:
            issue(
                "E_UNKNOWN_ASSIGNEE",
                f"assignee is not a project member: {t.assigned_user_id}",
                f"task:{t.id}",
            )
    for m in graph.milestones.values():
        if m.project_id != pid:
            issue("E_PROJECT_MISMATCH", f"milestone belongs to project {m.project_id}", f"milestone:{m.id}")
    for s in graph.subtasks.values():
        if s.task_id not in graph.tasks:
            issue("E_UNKNOWN_TASK", f"subtask of unknown task: {s.task_id}", f"subtask:{s.id}")
    for r in graph.references.values():
        if r.task_id not in graph.tasks:
            issue("E_UNKNOWN_TASK", f"reference of unknown task: {r.task_id}", f"reference:{r.id}")

    # Rule: dependency edges
    for task_id, dep_id in graph.deps.edges():
        if task_id == dep_id:
            issue("E_SELF_DEPENDENCY", "task depends on itself", f"task:{task_id}")
            continue
        for end in (task_id, dep_id):
            if end not in graph.tasks:
                issue("E_UNKNOWN_TASK", f"dependency references unknown task: {end}", f"task:{task_id}")
    for task_id, msg in graph.deps.find_cycles():
        if msg.endswith(f"{task_id} -> {task_id}") and graph.deps.has_edge(task_id, task_id):
            continue
        issue("E_CYCLE_DETECTED", msg, f"task:{task_id}")

    # Rule: a blocked flag needs a reason
    for t in graph.tasks.values():
        if not t.is_blocked or t.status == "Blocked":
            continue
        deps = graph.deps.depends_on(t.id)
        if all(d in graph.tasks and graph.tasks[d].status == "Done" for d in deps):
            issue(
                "E_BLOCKED_FLAG",
                f"is_blocked is set but status is {t.status} and every dependency is Done",
                f"task:{t.id}",
            )

    return _sorted(issues)


def _duplicates(items: Iterable[tuple[str, int]], kind: str, issue) -> None:
    items = list(items)
    counts = Counter(idx for _, idx in items)
    seen: set[int] = set()
    for entity_id, idx in sorted(items, key=lambda x: (x[1], x[0])):
        if counts[idx] < 2:
            continue
        if idx not in seen:
            seen.add(idx)
            continue
        issue(
            "E_DUPLICATE_ORDER_INDEX",
            f"duplicate {kind} order index: {idx} (count={counts[idx]})",
            f"{kind}:{entity_id}",
        )


def _sorted(issues: list[BoardValidationError]) -> list[BoardValidationError]:
    return sorted(issues, key=lambda e: (e.entity or "", e.code, e.message))
