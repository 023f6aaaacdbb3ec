from __future__ import annotations

import threading
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass
from typing import Iterator, Optional

import structlog

from planner_taskgraph.core.collaborators import MembershipProvider
from planner_taskgraph.core.errors import NotFound
from planner_taskgraph.core.model import (
    BoardQuery,
    DependencyView,
    MilestoneChange,
    MilestoneInput,
    MilestoneUpdate,
    MilestoneView,
    Project,
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
from planner_taskgraph.core.store.arena import ProjectGraph, reference_view, subtask_view

logger = structlog.get_logger()


@dataclass(frozen=True)
class DeleteMilestoneResult:
    milestone_id: str
    detached_task_ids: list[str]


class GraphStore:
    """Project-scoped store of milestones, tasks, subtasks, references and edges.

    Every mutation is a unit of work: a deep copy of the project's graph is
    mutated and swapped in only if the whole operation succeeds. One
    re-entrant lock per project serialises mutations, so the cycle check in
    `add_dependency` and the edge insert it guards are atomic.

    The store reports what happened (created ids, became_done, ...) but never
    notifies anyone itself.
    """

    def __init__(self, membership: MembershipProvider) -> None:
        self._membership = membership
        self._graphs: dict[str, ProjectGraph] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._local = threading.local()

    # ---- registry ----------------------------------------------------------

    def add_project(self, project: Project) -> None:
        self.put_graph(ProjectGraph(project))

    def put_graph(self, graph: ProjectGraph) -> None:
        with self._registry_lock:
            self._graphs[graph.project_id] = graph
            self._locks.setdefault(graph.project_id, threading.RLock())

    def project_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._graphs)

    def project(self, project_id: str) -> Project:
        with self.read(project_id) as g:
            return deepcopy(g.project)

    def snapshot(self, project_id: str) -> ProjectGraph:
        with self.read(project_id) as g:
            return deepcopy(g)

    def active_member_roles(self, project_id: str) -> dict[str, str]:
        return {m.user_id: m.role for m in self._membership.get_active_members(project_id)}

    # ---- transactions ------------------------------------------------------

    @contextmanager
    def read(self, project_id: str) -> Iterator[ProjectGraph]:
        lock = self._lock_for(project_id)
        with lock:
            yield self._active().get(project_id) or self._graph(project_id)

    @contextmanager
    def unit_of_work(self, project_id: str) -> Iterator[ProjectGraph]:
        """Yield a working copy of the project graph; commit it if the block succeeds.

        Nested units of work for the same project on the same thread join the
        outer one, so only the outermost block commits.
        """
        lock = self._lock_for(project_id)
        active = self._active()
        with lock:
            if project_id in active:
                yield active[project_id]
                return
            working = deepcopy(self._graph(project_id))
            active[project_id] = working
            try:
                yield working
            finally:
                del active[project_id]
            self._graphs[project_id] = working

    # ---- milestones --------------------------------------------------------

    def create_milestone(self, project_id: str, inp: MilestoneInput, actor_id: str) -> MilestoneView:
        with self.unit_of_work(project_id) as g:
            m = g.create_milestone(inp, actor_id)
            view = g.milestone_view(m.id)
        logger.info("milestone_created", project_id=project_id, milestone_id=view.id)
        return view

    def update_milestone(
        self, project_id: str, milestone_id: str, upd: MilestoneUpdate
    ) -> MilestoneChange:
        with self.unit_of_work(project_id) as g:
            _, old_status = g.update_milestone(milestone_id, upd)
            view = g.milestone_view(milestone_id)
        return MilestoneChange(
            milestone=view,
            old_status=old_status,
            became_completed=old_status != "Completed" and view.status == "Completed",
        )

    def delete_milestone(self, project_id: str, milestone_id: str) -> DeleteMilestoneResult:
        with self.unit_of_work(project_id) as g:
            detached = g.delete_milestone(milestone_id)
        logger.info(
            "milestone_deleted",
            project_id=project_id,
            milestone_id=milestone_id,
            detached_tasks=len(detached),
        )
        return DeleteMilestoneResult(milestone_id=milestone_id, detached_task_ids=detached)

    def reorder_milestone(self, project_id: str, milestone_id: str, new_index: int) -> MilestoneView:
        with self.unit_of_work(project_id) as g:
            g.reorder_milestone(milestone_id, new_index)
            return g.milestone_view(milestone_id)

    def get_milestone(self, project_id: str, milestone_id: str) -> MilestoneView:
        with self.read(project_id) as g:
            return g.milestone_view(milestone_id)

    def list_milestones(self, project_id: str) -> list[MilestoneView]:
        with self.read(project_id) as g:
            return g.list_milestones()

    # ---- tasks -------------------------------------------------------------

    def create_task(self, project_id: str, inp: TaskInput, actor_id: str) -> TaskView:
        roles = self.active_member_roles(project_id) if inp.assigned_user_id else {}
        with self.unit_of_work(project_id) as g:
            t = g.create_task(inp, actor_id, roles)
            view = g.task_view(t.id)
        logger.info(
            "task_created",
            project_id=project_id,
            task_id=view.id,
            order_index=view.order_index,
            subtasks=view.subtask_count,
        )
        return view

    def update_task(self, project_id: str, task_id: str, upd: TaskUpdate) -> TaskView:
        needs_roles = upd.assigned_user_id is not None or upd.assigned_role is not None
        roles = self.active_member_roles(project_id) if needs_roles else {}
        with self.unit_of_work(project_id) as g:
            g.update_task(task_id, upd, roles)
            return g.task_view(task_id)

    def delete_task(self, project_id: str, task_id: str) -> None:
        with self.unit_of_work(project_id) as g:
            g.delete_task(task_id)
        logger.info("task_deleted", project_id=project_id, task_id=task_id)

    def reorder_task(self, project_id: str, task_id: str, new_index: int) -> TaskView:
        with self.unit_of_work(project_id) as g:
            g.reorder_task(task_id, new_index)
            return g.task_view(task_id)

    def change_task_status(self, project_id: str, task_id: str, new_status: str) -> StatusChange:
        with self.unit_of_work(project_id) as g:
            tr = g.change_task_status(task_id, new_status)
            view = g.task_view(task_id)
        if tr.changed:
            logger.info(
                "task_status_changed",
                project_id=project_id,
                task_id=task_id,
                old_status=tr.old_status,
                new_status=tr.new_status,
            )
        return StatusChange(
            task=view,
            old_status=tr.old_status,
            new_status=tr.new_status,
            became_done=tr.became_done,
            became_unblocked=tr.became_unblocked,
        )

    def get_task(self, project_id: str, task_id: str) -> TaskView:
        with self.read(project_id) as g:
            return g.task_view(task_id)

    def list_board(self, project_id: str, query: Optional[BoardQuery] = None) -> list[TaskView]:
        with self.read(project_id) as g:
            return g.list_board(query)

    # ---- subtasks ----------------------------------------------------------

    def add_subtask(self, project_id: str, task_id: str, inp: SubtaskInput, actor_id: str) -> SubtaskView:
        with self.unit_of_work(project_id) as g:
            return subtask_view(g.add_subtask(task_id, inp, actor_id))

    def update_subtask(
        self, project_id: str, task_id: str, subtask_id: str, upd: SubtaskUpdate
    ) -> SubtaskView:
        with self.unit_of_work(project_id) as g:
            return subtask_view(g.update_subtask(task_id, subtask_id, upd))

    def delete_subtask(self, project_id: str, task_id: str, subtask_id: str) -> None:
        with self.unit_of_work(project_id) as g:
            g.delete_subtask(task_id, subtask_id)

    def toggle_subtask(self, project_id: str, task_id: str, subtask_id: str, is_done: bool) -> SubtaskView:
        with self.unit_of_work(project_id) as g:
            return subtask_view(g.toggle_subtask(task_id, subtask_id, is_done))

    def reorder_subtask(
        self, project_id: str, task_id: str, subtask_id: str, new_index: int
    ) -> SubtaskView:
        with self.unit_of_work(project_id) as g:
            return subtask_view(g.reorder_subtask(task_id, subtask_id, new_index))

    # ---- references --------------------------------------------------------

    def add_reference(self, project_id: str, task_id: str, inp: ReferenceInput) -> ReferenceView:
        with self.unit_of_work(project_id) as g:
            return reference_view(g.add_reference(task_id, inp))

    def remove_reference(self, project_id: str, task_id: str, reference_id: str) -> None:
        with self.unit_of_work(project_id) as g:
            g.remove_reference(task_id, reference_id)

    def list_references(self, project_id: str, task_id: str) -> list[ReferenceView]:
        with self.read(project_id) as g:
            g.task(task_id)
            return [reference_view(r) for r in g.references_of(task_id)]

    # ---- dependencies ------------------------------------------------------

    def add_dependency(self, project_id: str, task_id: str, depends_on_task_id: str) -> TaskView:
        with self.unit_of_work(project_id) as g:
            g.add_dependency(task_id, depends_on_task_id)
            view = g.task_view(task_id)
        logger.info(
            "dependency_added",
            project_id=project_id,
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
        )
        return view

    def remove_dependency(self, project_id: str, task_id: str, depends_on_task_id: str) -> TaskView:
        with self.unit_of_work(project_id) as g:
            g.remove_dependency(task_id, depends_on_task_id)
            return g.task_view(task_id)

    def list_dependencies(self, project_id: str, task_id: str) -> list[DependencyView]:
        with self.read(project_id) as g:
            return g.task_view(task_id).dependencies

    # ---- internals ---------------------------------------------------------

    def _graph(self, project_id: str) -> ProjectGraph:
        g = self._graphs.get(project_id)
        if g is None:
            raise NotFound(
                code="E_PROJECT_NOT_FOUND",
                message=f"project not found: {project_id}",
                project_id=project_id,
            )
        return g

    def _lock_for(self, project_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(project_id)
        if lock is None:
            raise NotFound(
                code="E_PROJECT_NOT_FOUND",
                message=f"project not found: {project_id}",
                project_id=project_id,
            )
        return lock

    def _active(self) -> dict[str, ProjectGraph]:
        active = getattr(self._local, "active", None)
        if active is None:
            active = {}
            self._local.active = active
        return active
