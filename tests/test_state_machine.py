from datetime import datetime, timezone

import pytest

from planner_taskgraph.core.errors import InvalidState, NotFound
from planner_taskgraph.core.graph.state_machine import next_order_index, reorder, transition
from planner_taskgraph.core.model import Task

CREATED_AT = datetime(2026, 1, 5, tzinfo=timezone.utc)


def _tasks(n):
    return [
        Task(id=f"t{i}", project_id="p", title=f"T{i}", created_by_user_id="u", created_at=CREATED_AT, order_index=i)
        for i in range(n)
    ]


@pytest.mark.parametrize(
    "current,target",
    [
        ("Todo", "InProgress"),
        ("Todo", "Done"),
        ("InProgress", "Done"),
        ("InProgress", "Todo"),
        ("Done", "Todo"),
        ("Todo", "Blocked"),
        ("Done", "Blocked"),
    ],
)
def test_legal_transitions(current, target):
    tr = transition(current, target, is_blocked=False, dependencies_satisfied=True)
    assert tr.new_status == target
    assert tr.changed


@pytest.mark.parametrize("current,target", [("Blocked", "Done"), ("Done", "InProgress")])
def test_illegal_transitions(current, target):
    with pytest.raises(InvalidState) as ei:
        transition(current, target, is_blocked=current == "Blocked", dependencies_satisfied=True, task_id="x")
    assert ei.value.code == "E_ILLEGAL_TRANSITION"
    assert ei.value.entity == "task:x"


def test_unknown_status_rejected():
    with pytest.raises(InvalidState) as ei:
        transition("Todo", "Archived", is_blocked=False, dependencies_satisfied=True)
    assert ei.value.code == "E_INVALID_STATUS"


def test_done_requires_satisfied_dependencies():
    with pytest.raises(InvalidState) as ei:
        transition("InProgress", "Done", is_blocked=False, dependencies_satisfied=False)
    assert ei.value.code == "E_DEPENDENCIES_NOT_DONE"


def test_same_status_is_noop_without_events():
    tr = transition("Blocked", "Blocked", is_blocked=True, dependencies_satisfied=False)
    assert not tr.changed
    assert not tr.became_done
    assert not tr.became_unblocked
    assert tr.is_blocked


def test_blocking_sets_flag_and_leaving_blocked_clears_it():
    blocked = transition("InProgress", "Blocked", is_blocked=False, dependencies_satisfied=True)
    assert blocked.is_blocked

    # No dependency re-check when unblocking.
    freed = transition("Blocked", "Todo", is_blocked=True, dependencies_satisfied=False)
    assert not freed.is_blocked
    assert freed.became_unblocked
    assert not freed.became_done


def test_became_done_only_on_entering_done():
    assert transition("Todo", "Done", is_blocked=False, dependencies_satisfied=True).became_done
    assert not transition("Done", "Done", is_blocked=False, dependencies_satisfied=True).became_done


def test_next_order_index():
    assert next_order_index([]) == 0
    assert next_order_index([0, 4, 2]) == 5


def test_reorder_moves_down_and_shifts_window():
    items = _tasks(10)
    reorder(items, "t5", 2)
    by_id = {t.id: t.order_index for t in items}
    assert by_id["t5"] == 2
    assert [by_id["t2"], by_id["t3"], by_id["t4"]] == [3, 4, 5]
    assert by_id["t0"] == 0 and by_id["t1"] == 1
    assert all(by_id[f"t{i}"] == i for i in range(6, 10))
    assert sorted(by_id.values()) == list(range(10))


def test_reorder_moves_up():
    items = _tasks(5)
    reorder(items, "t1", 3)
    assert [t.order_index for t in items] == [0, 3, 1, 2, 4]


def test_reorder_rejects_negative_and_unknown():
    items = _tasks(3)
    with pytest.raises(InvalidState) as ei:
        reorder(items, "t1", -1)
    assert ei.value.code == "E_NEGATIVE_ORDER_INDEX"
    with pytest.raises(NotFound):
        reorder(items, "nope", 0)
