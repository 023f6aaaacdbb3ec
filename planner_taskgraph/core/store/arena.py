from __future__ import annotations

import uuid
from typing import Iterable, Mapping, Optional

from planner_taskgraph.core.errors import Conflict, InvalidState, NotFound
from planner_taskgraph.core.graph.dependency_graph import DependencyGraph
from planner_taskgraph.core.graph.state_machine import (
    Transition,
    next_order_index,
    reorder,
    transition,
)
from planner_taskgraph.core.model import (
    MILESTONE_STATUSES,
    PRIORITY_RANK,
    REFERENCE_TYPES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    TASK_TYPES,
    BoardQuery,
    DependencyView,
    Milestone,
    MilestoneInput,
    MilestoneUpdate,
    MilestoneView,
    Project,
    Reference,
    ReferenceInput,
    ReferenceView,
    Subtask,
    SubtaskInput,
    SubtaskUpdate,
    SubtaskView,
    Task,
    TaskInput,
    TaskUpdate,
    TaskView,
    as_utc,
    utcnow,
)


SORT_KEYS: tuple[str, ...] = ("order_index", "created_at", "due_at", "priority")


def new_id() -> str:
    return str(uuid.uuid4())


class ProjectGraph:
    """All planning state of one project, addressed by id.

    Instances are plain data plus the mutations that keep the graph
    invariants. Atomicity and locking are the store's job: it hands a deep
    copy of this object to a unit of work and swaps it in on success.
    """

    def __init__(self, project: Project) -> None:
        self.project = project
        self.milestones: dict[str, Milestone] = {}
        self.tasks: dict[str, Task] = {}
        self.subtasks: dict[str, Subtask] = {}
        self.references: dict[str, Reference] = {}
        self.deps = DependencyGraph()

    @property
    def project_id(self) -> str:
        return self.project.id

    # ---- lookups -----------------------------------------------------------

    def milestone(self, milestone_id: str) -> Milestone:
        m = self.milestones.get(milestone_id)
        if m is None:
            raise self._not_found("milestone", milestone_id)
        return m

    def task(self, task_id: str) -> Task:
        t = self.tasks.get(task_id)
        if t is None:
            raise self._not_found("task", task_id)
        return t

    def subtask(self, task_id: str, subtask_id: str) -> Subtask:
        s = self.subtasks.get(subtask_id)
        if s is None or s.task_id != task_id:
            raise self._not_found("subtask", subtask_id)
        return s

    def reference(self, task_id: str, reference_id: str) -> Reference:
        r = self.references.get(reference_id)
        if r is None or r.task_id != task_id:
            raise self._not_found("reference", reference_id)
        return r

    def subtasks_of(self, task_id: str) -> list[Subtask]:
        return sorted(
            (s for s in self.subtasks.values() if s.task_id == task_id),
            key=lambda s: (s.order_index, s.id),
        )

    def references_of(self, task_id: str) -> list[Reference]:
        return sorted(
            (r for r in self.references.values() if r.task_id == task_id),
            key=lambda r: (r.created_at, r.id),
        )

    def tasks_in_milestone(self, milestone_id: str) -> list[Task]:
        return [t for t in self.tasks.values() if t.milestone_id == milestone_id]

    def status_of(self, task_id: str) -> str:
        return self.task(task_id).status

    def dependencies_satisfied(self, task_id: str) -> bool:
        return self.deps.is_satisfied(task_id, self.status_of)

    # ---- milestones --------------------------------------------------------

    def create_milestone(self, inp: MilestoneInput, actor_id: str) -> Milestone:
        _require_text(inp.title, "title")
        _require_choice(inp.status, MILESTONE_STATUSES, "status")
        scope = list(self.milestones.values())
        order_index = self._allocate_index(scope, inp.order_index, "milestone")
        m = Milestone(
            id=new_id(),
            project_id=self.project_id,
            title=inp.title.strip(),
            description=inp.description,
            status=inp.status,  # type: ignore[arg-type]
            order_index=order_index,
            target_date=as_utc(inp.target_date),
            created_at=utcnow(),
            created_by_user_id=actor_id,
        )
        self.milestones[m.id] = m
        return m

    def update_milestone(self, milestone_id: str, upd: MilestoneUpdate) -> tuple[Milestone, str]:
        m = self.milestone(milestone_id)
        old_status = m.status
        if upd.title is not None:
            _require_text(upd.title, "title")
            m.title = upd.title.strip()
        if upd.description is not None:
            m.description = upd.description
        if upd.status is not None:
            _require_choice(upd.status, MILESTONE_STATUSES, "status")
            m.status = upd.status  # type: ignore[assignment]
        if upd.target_date is not None:
            m.target_date = as_utc(upd.target_date)
        return m, old_status

    def delete_milestone(self, milestone_id: str) -> list[str]:
        """Remove a milestone; its tasks stay on the board without one."""
        self.milestone(milestone_id)
        detached: list[str] = []
        for t in self.tasks.values():
            if t.milestone_id == milestone_id:
                t.milestone_id = None
                detached.append(t.id)
        del self.milestones[milestone_id]
        return sorted(detached)

    def reorder_milestone(self, milestone_id: str, new_index: int) -> Milestone:
        self.milestone(milestone_id)
        reorder(list(self.milestones.values()), milestone_id, new_index)
        return self.milestones[milestone_id]

    # ---- tasks -------------------------------------------------------------

    def create_task(
        self,
        inp: TaskInput,
        actor_id: str,
        member_roles: Optional[Mapping[str, str]] = None,
    ) -> Task:
        _require_text(inp.title, "title")
        _require_choice(inp.type, TASK_TYPES, "type")
        _require_choice(inp.priority, TASK_PRIORITIES, "priority")
        if inp.milestone_id is not None:
            self.milestone(inp.milestone_id)
        if inp.assigned_user_id is not None:
            self._require_assignable(inp.assigned_user_id, inp.assigned_role, member_roles or {})

        order_index = self._allocate_index(list(self.tasks.values()), inp.order_index, "task")
        t = Task(
            id=new_id(),
            project_id=self.project_id,
            title=inp.title.strip(),
            description=inp.description,
            type=inp.type,  # type: ignore[arg-type]
            priority=inp.priority,  # type: ignore[arg-type]
            order_index=order_index,
            due_at=as_utc(inp.due_at),
            milestone_id=inp.milestone_id,
            assigned_role=inp.assigned_role,
            assigned_user_id=inp.assigned_user_id,
            created_at=utcnow(),
            created_by_user_id=actor_id,
        )
        self.tasks[t.id] = t
        for sub in inp.subtasks:
            self.add_subtask(t.id, sub, actor_id)
        return t

    def update_task(
        self,
        task_id: str,
        upd: TaskUpdate,
        member_roles: Optional[Mapping[str, str]] = None,
    ) -> Task:
        t = self.task(task_id)
        if upd.title is not None:
            _require_text(upd.title, "title")
            t.title = upd.title.strip()
        if upd.description is not None:
            t.description = upd.description
        if upd.type is not None:
            _require_choice(upd.type, TASK_TYPES, "type")
            t.type = upd.type  # type: ignore[assignment]
        if upd.priority is not None:
            _require_choice(upd.priority, TASK_PRIORITIES, "priority")
            t.priority = upd.priority  # type: ignore[assignment]
        if upd.due_at is not None:
            t.due_at = as_utc(upd.due_at)
        if upd.milestone_id is not None:
            self.milestone(upd.milestone_id)
            t.milestone_id = upd.milestone_id
        roles = member_roles or {}
        if upd.assigned_user_id is not None:
            role = upd.assigned_role if upd.assigned_role is not None else t.assigned_role
            self._require_assignable(upd.assigned_user_id, role, roles)
        elif upd.assigned_role is not None and t.assigned_user_id in roles:
            self._require_assignable(t.assigned_user_id, upd.assigned_role, roles)
        if upd.assigned_role is not None:
            t.assigned_role = upd.assigned_role
        if upd.assigned_user_id is not None:
            t.assigned_user_id = upd.assigned_user_id
        return t

    def delete_task(self, task_id: str) -> None:
        """Delete a task with its subtasks, references and every edge touching it."""
        self.task(task_id)
        for sid in [s.id for s in self.subtasks.values() if s.task_id == task_id]:
            del self.subtasks[sid]
        for rid in [r.id for r in self.references.values() if r.task_id == task_id]:
            del self.references[rid]
        self.deps.remove_node(task_id)
        del self.tasks[task_id]

    def reorder_task(self, task_id: str, new_index: int) -> Task:
        self.task(task_id)
        reorder(list(self.tasks.values()), task_id, new_index)
        return self.tasks[task_id]

    def change_task_status(self, task_id: str, new_status: str) -> Transition:
        t = self.task(task_id)
        tr = transition(
            t.status,
            new_status,
            is_blocked=t.is_blocked,
            dependencies_satisfied=self.dependencies_satisfied(task_id),
            task_id=task_id,
        )
        t.status = tr.new_status  # type: ignore[assignment]
        t.is_blocked = tr.is_blocked
        return tr

    # ---- subtasks ----------------------------------------------------------

    def add_subtask(self, task_id: str, inp: SubtaskInput, actor_id: str) -> Subtask:
        self.task(task_id)
        _require_text(inp.title, "title")
        order_index = self._allocate_index(self.subtasks_of(task_id), inp.order_index, "subtask")
        s = Subtask(
            id=new_id(),
            task_id=task_id,
            title=inp.title.strip(),
            description=inp.description,
            order_index=order_index,
            created_by_user_id=actor_id,
        )
        self.subtasks[s.id] = s
        return s

    def update_subtask(self, task_id: str, subtask_id: str, upd: SubtaskUpdate) -> Subtask:
        s = self.subtask(task_id, subtask_id)
        if upd.title is not None:
            _require_text(upd.title, "title")
            s.title = upd.title.strip()
        if upd.description is not None:
            s.description = upd.description
        return s

    def delete_subtask(self, task_id: str, subtask_id: str) -> None:
        self.subtask(task_id, subtask_id)
        del self.subtasks[subtask_id]

    def toggle_subtask(self, task_id: str, subtask_id: str, is_done: bool) -> Subtask:
        s = self.subtask(task_id, subtask_id)
        if is_done and not s.is_done:
            s.completed_at = utcnow()
        elif not is_done:
            s.completed_at = None
        s.is_done = is_done
        return s

    def reorder_subtask(self, task_id: str, subtask_id: str, new_index: int) -> Subtask:
        self.subtask(task_id, subtask_id)
        reorder(self.subtasks_of(task_id), subtask_id, new_index)
        return self.subtasks[subtask_id]

    # ---- references --------------------------------------------------------

    def add_reference(self, task_id: str, inp: ReferenceInput) -> Reference:
        self.task(task_id)
        _require_text(inp.url, "url")
        _require_choice(inp.type, REFERENCE_TYPES, "type")
        r = Reference(
            id=new_id(),
            task_id=task_id,
            type=inp.type,  # type: ignore[arg-type]
            url=inp.url.strip(),
            title=inp.title,
            created_at=utcnow(),
        )
        self.references[r.id] = r
        return r

    def remove_reference(self, task_id: str, reference_id: str) -> None:
        self.reference(task_id, reference_id)
        del self.references[reference_id]

    # ---- dependencies ------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on_task_id: str) -> None:
        self.task(task_id)
        self.task(depends_on_task_id)
        try:
            self.deps.add_edge(task_id, depends_on_task_id)
        except (Conflict, InvalidState) as e:
            e.project_id = self.project_id
            raise

    def remove_dependency(self, task_id: str, depends_on_task_id: str) -> None:
        self.task(task_id)
        try:
            self.deps.remove_edge(task_id, depends_on_task_id)
        except NotFound as e:
            e.project_id = self.project_id
            raise

    # ---- views -------------------------------------------------------------

    def task_view(self, task_id: str) -> TaskView:
        t = self.task(task_id)
        milestone = self.milestones.get(t.milestone_id) if t.milestone_id else None
        deps: list[DependencyView] = []
        for dep_id in self.deps.depends_on(task_id):
            target = self.tasks.get(dep_id)
            deps.append(
                DependencyView(
                    task_id=task_id,
                    depends_on_task_id=dep_id,
                    depends_on_title=target.title if target else "",
                    depends_on_status=target.status if target else "",
                )
            )
        return TaskView(
            id=t.id,
            project_id=t.project_id,
            title=t.title,
            description=t.description,
            type=t.type,
            status=t.status,
            priority=t.priority,
            is_blocked=t.is_blocked,
            order_index=t.order_index,
            created_at=t.created_at,
            created_by_user_id=t.created_by_user_id,
            due_at=t.due_at,
            milestone_id=t.milestone_id,
            milestone_title=milestone.title if milestone else None,
            assigned_role=t.assigned_role,
            assigned_user_id=t.assigned_user_id,
            subtasks=[subtask_view(s) for s in self.subtasks_of(task_id)],
            references=[reference_view(r) for r in self.references_of(task_id)],
            dependencies=deps,
            dependencies_satisfied=all(d.depends_on_status == "Done" for d in deps),
        )

    def milestone_view(self, milestone_id: str) -> MilestoneView:
        m = self.milestone(milestone_id)
        tasks = self.tasks_in_milestone(milestone_id)
        return MilestoneView(
            id=m.id,
            project_id=m.project_id,
            title=m.title,
            description=m.description,
            status=m.status,
            order_index=m.order_index,
            target_date=m.target_date,
            created_at=m.created_at,
            tasks_count=len(tasks),
            done_tasks_count=sum(1 for t in tasks if t.status == "Done"),
        )

    def list_milestones(self) -> list[MilestoneView]:
        ordered = sorted(self.milestones.values(), key=lambda m: (m.order_index, m.id))
        return [self.milestone_view(m.id) for m in ordered]

    def list_board(self, query: Optional[BoardQuery] = None) -> list[TaskView]:
        q = query or BoardQuery()
        if q.sort_by not in SORT_KEYS:
            raise InvalidState(
                code="E_INVALID_SORT",
                message=f"unknown sort key: {q.sort_by!r} (allowed: {', '.join(SORT_KEYS)})",
                project_id=self.project_id,
            )
        if q.status is not None:
            _require_choice(q.status, TASK_STATUSES, "status")

        selected = [t for t in self.tasks.values() if _matches(t, q)]
        return [self.task_view(t.id) for t in _sort_tasks(selected, q.sort_by, q.descending)]

    # ---- helpers -----------------------------------------------------------

    def _allocate_index(self, scope: Iterable, requested: Optional[int], kind: str) -> int:
        scope = list(scope)
        if requested is None:
            return next_order_index(it.order_index for it in scope)
        if requested < 0:
            raise InvalidState(
                code="E_NEGATIVE_ORDER_INDEX",
                message=f"{kind} order index must be >= 0, got {requested}",
                project_id=self.project_id,
            )
        if any(it.order_index == requested for it in scope):
            raise Conflict(
                code="E_DUPLICATE_ORDER_INDEX",
                message=f"{kind} order index {requested} is already taken",
                project_id=self.project_id,
            )
        return requested

    def _require_assignable(self, user_id: str, role: Optional[str], member_roles: Mapping[str, str]) -> None:
        if user_id not in member_roles:
            raise InvalidState(
                code="E_INACTIVE_ASSIGNEE",
                message=f"user {user_id} is not an active member of the project",
                project_id=self.project_id,
            )
        if role is not None and member_roles[user_id] != role:
            raise InvalidState(
                code="E_ROLE_MISMATCH",
                message=f"user {user_id} holds role {member_roles[user_id]!r}, not {role!r}",
                project_id=self.project_id,
            )

    def _not_found(self, kind: str, entity_id: str) -> NotFound:
        return NotFound(
            code=f"E_{kind.upper()}_NOT_FOUND",
            message=f"{kind} not found: {entity_id}",
            project_id=self.project_id,
            entity=f"{kind}:{entity_id}",
        )


def _require_text(value: Optional[str], field: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidState(code="E_REQUIRED_FIELD", message=f"{field} must be a non-empty string")


def _require_choice(value: str, allowed: tuple[str, ...], field: str) -> None:
    if value not in allowed:
        raise InvalidState(
            code="E_INVALID_ENUM",
            message=f"invalid {field}: {value!r} (allowed: {', '.join(allowed)})",
        )


def _matches(t: Task, q: BoardQuery) -> bool:
    if q.type is not None and t.type != q.type:
        return False
    if q.priority is not None and t.priority != q.priority:
        return False
    if q.status is not None and t.status != q.status:
        return False
    if q.milestone_id is not None and t.milestone_id != q.milestone_id:
        return False
    if q.assigned_role is not None and t.assigned_role != q.assigned_role:
        return False
    if q.assigned_user_id is not None and t.assigned_user_id != q.assigned_user_id:
        return False
    if q.is_blocked is not None and t.is_blocked != q.is_blocked:
        return False
    if not q.include_completed and t.status == "Done":
        return False
    if q.search:
        term = q.search.strip().lower()
        haystack = f"{t.title}\n{t.description or ''}".lower()
        if term not in haystack:
            return False
    return True


def _sort_tasks(tasks: list[Task], sort_by: str, descending: bool) -> list[Task]:
    # Tasks without a due date always go last, whatever the direction.
    if sort_by == "due_at":
        dated = [t for t in tasks if t.due_at is not None]
        undated = [t for t in tasks if t.due_at is None]
        dated.sort(key=lambda t: (t.due_at, t.order_index), reverse=descending)
        undated.sort(key=lambda t: t.order_index)
        return dated + undated
    if sort_by == "priority":
        key = lambda t: (PRIORITY_RANK[t.priority], t.order_index)  # noqa: E731
    elif sort_by == "created_at":
        key = lambda t: (t.created_at, t.order_index)  # noqa: E731
    else:
        key = lambda t: (t.order_index, t.id)  # noqa: E731
    return sorted(tasks, key=key, reverse=descending)


def subtask_view(s: Subtask) -> SubtaskView:
    return SubtaskView(
        id=s.id,
        task_id=s.task_id,
        title=s.title,
        description=s.description,
        is_done=s.is_done,
        order_index=s.order_index,
        completed_at=s.completed_at,
    )


def reference_view(r: Reference) -> ReferenceView:
    return ReferenceView(
        id=r.id,
        task_id=r.task_id,
        type=r.type,
        url=r.url,
        title=r.title,
        created_at=r.created_at,
    )
