import pytest

from planner_taskgraph.core.errors import Forbidden, InvalidState, NotFound, Unauthorized
from planner_taskgraph.core.model import (
    MilestoneInput,
    MilestoneUpdate,
    ReferenceInput,
    SubtaskInput,
    SubtaskUpdate,
    TaskInput,
    TaskUpdate,
)
from planner_taskgraph.core.service import BoardService

P = "p1"


def test_admin_creates_and_member_cannot(board):
    view = board.create_task(P, TaskInput(title="A"), "alice")
    assert view.created_by_user_id == "alice"

    with pytest.raises(Forbidden) as ei:
        board.create_task(P, TaskInput(title="B"), "bob")
    assert ei.value.code == "E_NOT_ALLOWED"
    assert ei.value.http_status == 403


def test_non_members_and_former_members_are_unauthorized(board):
    for actor in ("stranger", "carol"):
        with pytest.raises(Unauthorized) as ei:
            board.list_board(P, actor)
        assert type(ei.value) is Unauthorized
        assert ei.value.code == "E_NOT_A_MEMBER"
        assert ei.value.http_status == 401


def test_unknown_project_is_not_found_before_authorization(board):
    with pytest.raises(NotFound) as ei:
        board.create_task("nope", TaskInput(title="A"), "stranger")
    assert ei.value.code == "E_PROJECT_NOT_FOUND"


def test_platform_mentor_can_plan_without_a_seat(board):
    m = board.create_milestone(P, MilestoneInput(title="MVP"), "mentor")
    t = board.create_task(P, TaskInput(title="A", milestone_id=m.id), "mentor")
    assert board.get_task(P, t.id, "mentor").milestone_title == "MVP"


def test_members_move_status_and_toggle_subtasks(board):
    t = board.create_task(P, TaskInput(title="A", subtasks=[SubtaskInput(title="s")]), "alice")
    change = board.change_task_status(P, t.id, "InProgress", "bob")
    assert change.new_status == "InProgress"
    sub = board.toggle_subtask(P, t.id, t.subtasks[0].id, True, "bob")
    assert sub.is_done

    with pytest.raises(Forbidden):
        board.update_task(P, t.id, TaskUpdate(title="renamed"), "bob")
    with pytest.raises(Forbidden):
        board.add_dependency(P, t.id, t.id, "bob")
    with pytest.raises(Unauthorized):
        board.change_task_status(P, t.id, "Done", "carol")


def test_dependent_task_completes_only_after_all_dependencies(board):
    a = board.create_task(P, TaskInput(title="A"), "alice")
    b = board.create_task(P, TaskInput(title="B"), "alice")
    c = board.create_task(P, TaskInput(title="C"), "alice")
    board.add_dependency(P, c.id, a.id, "alice")
    board.add_dependency(P, c.id, b.id, "alice")

    board.change_task_status(P, a.id, "Done", "bob")
    with pytest.raises(InvalidState) as ei:
        board.change_task_status(P, c.id, "Done", "bob")
    assert ei.value.code == "E_DEPENDENCIES_NOT_DONE"
    assert board.get_task(P, c.id, "bob").status == "Todo"

    board.change_task_status(P, b.id, "Done", "bob")
    done = board.change_task_status(P, c.id, "Done", "bob")
    assert done.became_done
    assert done.task.dependencies_satisfied


def test_notifications_follow_status_changes(board, sink):
    t = board.create_task(P, TaskInput(title="A", assigned_user_id="bob"), "alice")
    assert sink.kinds() == ["task_created"]
    assert sink.events[0][1].assigned_user_id == "bob"

    board.change_task_status(P, t.id, "Blocked", "bob")
    board.change_task_status(P, t.id, "Todo", "bob")
    board.change_task_status(P, t.id, "Done", "bob")
    board.change_task_status(P, t.id, "Done", "bob")
    assert sink.kinds() == ["task_created", "task_unblocked", "task_completed"]
    assert sink.events[-1][1].actor_id == "bob"


def test_milestone_completed_fires_once(board, sink):
    m = board.create_milestone(P, MilestoneInput(title="MVP"), "alice")
    first = board.update_milestone(P, m.id, MilestoneUpdate(status="Completed"), "alice")
    second = board.update_milestone(P, m.id, MilestoneUpdate(status="Completed"), "alice")
    assert first.became_completed and not second.became_completed
    assert sink.kinds() == ["milestone_completed"]


def test_failing_sink_does_not_undo_the_mutation(store, membership):
    class BrokenSink:
        def task_created(self, event):
            raise RuntimeError("mail server down")

    board = BoardService(store, membership, BrokenSink())
    view = board.create_task(P, TaskInput(title="A"), "alice")
    assert [t.id for t in board.list_board(P, "alice")] == [view.id]


def test_list_my_tasks_hides_completed_by_default(board):
    a = board.create_task(P, TaskInput(title="A", assigned_user_id="bob"), "alice")
    b = board.create_task(P, TaskInput(title="B", assigned_user_id="bob"), "alice")
    board.create_task(P, TaskInput(title="C", assigned_user_id="dana"), "alice")
    board.change_task_status(P, b.id, "Done", "bob")

    assert [t.id for t in board.list_my_tasks(P, "bob")] == [a.id]
    assert [t.id for t in board.list_my_tasks(P, "bob", include_completed=True)] == [a.id, b.id]


def test_structural_edits_round_out_the_board(board):
    m1 = board.create_milestone(P, MilestoneInput(title="Alpha"), "alice")
    m2 = board.create_milestone(P, MilestoneInput(title="Beta"), "alice")
    moved = board.reorder_milestone(P, m2.id, 0, "alice")
    assert moved.order_index == 0
    assert [m.title for m in board.list_milestones(P, "bob")] == ["Beta", "Alpha"]
    assert board.get_milestone(P, m1.id, "bob").order_index == 1

    t = board.create_task(
        P, TaskInput(title="A", subtasks=[SubtaskInput(title="one"), SubtaskInput(title="two")]), "alice"
    )
    first, second = t.subtasks
    renamed = board.update_subtask(P, t.id, first.id, SubtaskUpdate(title="first"), "alice")
    assert renamed.title == "first"
    board.reorder_subtask(P, t.id, second.id, 0, "alice")
    assert [s.title for s in board.get_task(P, t.id, "bob").subtasks] == ["two", "first"]

    dep = board.create_task(P, TaskInput(title="B"), "alice")
    board.add_dependency(P, t.id, dep.id, "alice")
    assert [d.depends_on_task_id for d in board.list_dependencies(P, t.id, "bob")] == [dep.id]
    board.remove_dependency(P, t.id, dep.id, "alice")
    assert board.list_dependencies(P, t.id, "bob") == []

    ref = board.add_reference(P, t.id, ReferenceInput(url="https://example.com/pr/1", type="PullRequest"), "alice")
    assert [r.id for r in board.list_references(P, t.id, "bob")] == [ref.id]
    with pytest.raises(Forbidden):
        board.remove_reference(P, t.id, ref.id, "bob")
    board.remove_reference(P, t.id, ref.id, "alice")
    assert board.list_references(P, t.id, "bob") == []

    board.delete_subtask(P, t.id, second.id, "alice")
    board.delete_task(P, dep.id, "alice")
    assert [x.id for x in board.list_board(P, "bob")] == [t.id]
    assert board.get_task(P, t.id, "bob").subtask_count == 1
