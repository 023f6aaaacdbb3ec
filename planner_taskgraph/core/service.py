from __future__ import annotations

from typing import Callable, Optional, TypeVar

import structlog

from planner_taskgraph.core.collaborators import (
    MembershipProvider,
    MilestoneCompleted,
    NotificationSink,
    NullNotificationSink,
    TaskCompleted,
    TaskCreated,
    TaskUnblocked,
)
from planner_taskgraph.core.errors import Forbidden, Unauthorized
from planner_taskgraph.core.model import (
    BoardQuery,
    DependencyView,
    MilestoneChange,
    MilestoneInput,
    MilestoneUpdate,
    MilestoneView,
    ProjectMember,
    ReferenceInput,
    ReferenceView,
    StatusChange,
    SubtaskInput,
    SubtaskUpdate,
    SubtaskView,
    TaskInput,
    TaskUpdate,
    TaskView,
)
from planner_taskgraph.core.store.graph_store import DeleteMilestoneResult, GraphStore

logger = structlog.get_logger()

E = TypeVar("E")


class Access:
    """Authorization rules shared by the board service and the planner.

    Order of checks: the project must exist (NotFound), then the actor must be
    an active member or a platform mentor (Unauthorized), then, for structural
    changes, a project admin or platform mentor (Forbidden).
    """

    def __init__(self, store: GraphStore, membership: MembershipProvider) -> None:
        self._store = store
        self._membership = membership

    def member(self, project_id: str, actor_id: str) -> Optional[ProjectMember]:
        self._store.project(project_id)
        for m in self._membership.get_active_members(project_id):
            if m.user_id == actor_id:
                return m
        if self._membership.is_platform_mentor(actor_id):
            return None
        raise Unauthorized(
            code="E_NOT_A_MEMBER",
            message=f"user {actor_id} is not an active member of the project",
            project_id=project_id,
        )

    def planner(self, project_id: str, actor_id: str) -> None:
        m = self.member(project_id, actor_id)
        # None: a platform mentor without a seat on the project.
        if m is None or m.is_admin or self._membership.is_platform_mentor(actor_id):
            return
        raise Forbidden(
            code="E_NOT_ALLOWED",
            message="only project admins and platform mentors can change the plan",
            project_id=project_id,
        )


class BoardService:
    """Authorized CRUD over the task board with notifications after commit."""

    def __init__(
        self,
        store: GraphStore,
        membership: MembershipProvider,
        sink: Optional[NotificationSink] = None,
    ) -> None:
        self.store = store
        self.membership = membership
        self.sink: NotificationSink = sink or NullNotificationSink()
        self.access = Access(store, membership)

    # ---- milestones --------------------------------------------------------

    def create_milestone(self, project_id: str, inp: MilestoneInput, actor_id: str) -> MilestoneView:
        self.access.planner(project_id, actor_id)
        return self.store.create_milestone(project_id, inp, actor_id)

    def update_milestone(
        self, project_id: str, milestone_id: str, upd: MilestoneUpdate, actor_id: str
    ) -> MilestoneChange:
        self.access.planner(project_id, actor_id)
        change = self.store.update_milestone(project_id, milestone_id, upd)
        if change.became_completed:
            self._notify(
                self.sink.milestone_completed,
                MilestoneCompleted(
                    project_id=project_id,
                    milestone_id=milestone_id,
                    title=change.milestone.title,
                    actor_id=actor_id,
                ),
            )
        return change

    def delete_milestone(self, project_id: str, milestone_id: str, actor_id: str) -> DeleteMilestoneResult:
        self.access.planner(project_id, actor_id)
        return self.store.delete_milestone(project_id, milestone_id)

    def reorder_milestone(
        self, project_id: str, milestone_id: str, new_index: int, actor_id: str
    ) -> MilestoneView:
        self.access.planner(project_id, actor_id)
        return self.store.reorder_milestone(project_id, milestone_id, new_index)

    def get_milestone(self, project_id: str, milestone_id: str, actor_id: str) -> MilestoneView:
        self.access.member(project_id, actor_id)
        return self.store.get_milestone(project_id, milestone_id)

    def list_milestones(self, project_id: str, actor_id: str) -> list[MilestoneView]:
        self.access.member(project_id, actor_id)
        return self.store.list_milestones(project_id)

    # ---- tasks -------------------------------------------------------------

    def create_task(self, project_id: str, inp: TaskInput, actor_id: str) -> TaskView:
        self.access.planner(project_id, actor_id)
        view = self.store.create_task(project_id, inp, actor_id)
        self.notify_task_created(view, actor_id)
        return view

    def update_task(self, project_id: str, task_id: str, upd: TaskUpdate, actor_id: str) -> TaskView:
        self.access.planner(project_id, actor_id)
        return self.store.update_task(project_id, task_id, upd)

    def delete_task(self, project_id: str, task_id: str, actor_id: str) -> None:
        self.access.planner(project_id, actor_id)
        self.store.delete_task(project_id, task_id)

    def reorder_task(self, project_id: str, task_id: str, new_index: int, actor_id: str) -> TaskView:
        self.access.planner(project_id, actor_id)
        return self.store.reorder_task(project_id, task_id, new_index)

    def change_task_status(
        self, project_id: str, task_id: str, new_status: str, actor_id: str
    ) -> StatusChange:
        self.access.member(project_id, actor_id)
        change = self.store.change_task_status(project_id, task_id, new_status)
        if change.became_done:
            self._notify(
                self.sink.task_completed,
                TaskCompleted(project_id=project_id, task_id=task_id, title=change.task.title, actor_id=actor_id),
            )
        if change.became_unblocked:
            self._notify(
                self.sink.task_unblocked,
                TaskUnblocked(project_id=project_id, task_id=task_id, title=change.task.title, actor_id=actor_id),
            )
        return change

    def get_task(self, project_id: str, task_id: str, actor_id: str) -> TaskView:
        self.access.member(project_id, actor_id)
        return self.store.get_task(project_id, task_id)

    def list_board(self, project_id: str, actor_id: str, query: Optional[BoardQuery] = None) -> list[TaskView]:
        self.access.member(project_id, actor_id)
        return self.store.list_board(project_id, query)

    def list_my_tasks(self, project_id: str, actor_id: str, include_completed: bool = False) -> list[TaskView]:
        self.access.member(project_id, actor_id)
        query = BoardQuery(assigned_user_id=actor_id, include_completed=include_completed)
        return self.store.list_board(project_id, query)

    # ---- subtasks ----------------------------------------------------------

    def add_subtask(self, project_id: str, task_id: str, inp: SubtaskInput, actor_id: str) -> SubtaskView:
        self.access.planner(project_id, actor_id)
        return self.store.add_subtask(project_id, task_id, inp, actor_id)

    def update_subtask(
        self, project_id: str, task_id: str, subtask_id: str, upd: SubtaskUpdate, actor_id: str
    ) -> SubtaskView:
        self.access.planner(project_id, actor_id)
        return self.store.update_subtask(project_id, task_id, subtask_id, upd)

    def delete_subtask(self, project_id: str, task_id: str, subtask_id: str, actor_id: str) -> None:
        self.access.planner(project_id, actor_id)
        self.store.delete_subtask(project_id, task_id, subtask_id)

    def toggle_subtask(
        self, project_id: str, task_id: str, subtask_id: str, is_done: bool, actor_id: str
    ) -> SubtaskView:
        self.access.member(project_id, actor_id)
        return self.store.toggle_subtask(project_id, task_id, subtask_id, is_done)

    def reorder_subtask(
        self, project_id: str, task_id: str, subtask_id: str, new_index: int, actor_id: str
    ) -> SubtaskView:
        self.access.planner(project_id, actor_id)
        return self.store.reorder_subtask(project_id, task_id, subtask_id, new_index)

    # ---- references --------------------------------------------------------

    def add_reference(self, project_id: str, task_id: str, inp: ReferenceInput, actor_id: str) -> ReferenceView:
        self.access.planner(project_id, actor_id)
        return self.store.add_reference(project_id, task_id, inp)

    def remove_reference(self, project_id: str, task_id: str, reference_id: str, actor_id: str) -> None:
        self.access.planner(project_id, actor_id)
        self.store.remove_reference(project_id, task_id, reference_id)

    def list_references(self, project_id: str, task_id: str, actor_id: str) -> list[ReferenceView]:
        self.access.member(project_id, actor_id)
        return self.store.list_references(project_id, task_id)

    # ---- dependencies ------------------------------------------------------

    def add_dependency(self, project_id: str, task_id: str, depends_on_task_id: str, actor_id: str) -> TaskView:
        self.access.planner(project_id, actor_id)
        return self.store.add_dependency(project_id, task_id, depends_on_task_id)

    def remove_dependency(
        self, project_id: str, task_id: str, depends_on_task_id: str, actor_id: str
    ) -> TaskView:
        self.access.planner(project_id, actor_id)
        return self.store.remove_dependency(project_id, task_id, depends_on_task_id)

    def list_dependencies(self, project_id: str, task_id: str, actor_id: str) -> list[DependencyView]:
        self.access.member(project_id, actor_id)
        return self.store.list_dependencies(project_id, task_id)

    # ---- notifications -----------------------------------------------------

    def notify_task_created(self, view: TaskView, actor_id: str) -> None:
        self._notify(
            self.sink.task_created,
            TaskCreated(
                project_id=view.project_id,
                task_id=view.id,
                title=view.title,
                actor_id=actor_id,
                assigned_user_id=view.assigned_user_id,
            ),
        )

    def _notify(self, send: Callable[[E], None], event: E) -> None:
        # The mutation is already committed; a failing sink must not undo it.
        try:
            send(event)
        except Exception:
            logger.exception(
                "notification_failed",
                kind=type(event).__name__,
                project_id=getattr(event, "project_id", None),
            )
