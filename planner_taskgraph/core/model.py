from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Literal, Optional


TaskType = Literal["Feature", "Research", "Infra", "Docs", "Refactor"]
TaskStatus = Literal["Todo", "InProgress", "Blocked", "Done"]
TaskPriority = Literal["Low", "Medium", "High", "Critical"]
MilestoneStatus = Literal["Planned", "InProgress", "Completed", "Cancelled"]
ReferenceType = Literal["Link", "Document", "PullRequest", "Other"]

TASK_TYPES: tuple[str, ...] = ("Feature", "Research", "Infra", "Docs", "Refactor")
TASK_STATUSES: tuple[str, ...] = ("Todo", "InProgress", "Blocked", "Done")
TASK_PRIORITIES: tuple[str, ...] = ("Low", "Medium", "High", "Critical")
MILESTONE_STATUSES: tuple[str, ...] = ("Planned", "InProgress", "Completed", "Cancelled")
REFERENCE_TYPES: tuple[str, ...] = ("Link", "Document", "PullRequest", "Other")

PRIORITY_RANK: dict[str, int] = {p: i for i, p in enumerate(TASK_PRIORITIES)}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


# Records owned outside the engine (identity/project management).


@dataclass
class Project:
    id: str
    name: str
    created_at: datetime
    description: str = ""
    goals: list[str] = field(default_factory=list)
    technologies: list[str] = field(default_factory=list)
    difficulty: Optional[str] = None
    duration_days: Optional[int] = None


@dataclass(frozen=True)
class ProjectMember:
    user_id: str
    role: str
    is_admin: bool = False
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.left_at is None


# Persisted graph entities.


@dataclass
class Milestone:
    id: str
    project_id: str
    title: str
    created_by_user_id: str
    created_at: datetime
    order_index: int
    description: Optional[str] = None
    status: MilestoneStatus = "Planned"
    target_date: Optional[datetime] = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    created_by_user_id: str
    created_at: datetime
    order_index: int
    description: Optional[str] = None
    type: TaskType = "Feature"
    status: TaskStatus = "Todo"
    priority: TaskPriority = "Medium"
    is_blocked: bool = False
    due_at: Optional[datetime] = None
    milestone_id: Optional[str] = None
    assigned_role: Optional[str] = None
    assigned_user_id: Optional[str] = None


@dataclass
class Subtask:
    id: str
    task_id: str
    title: str
    created_by_user_id: str
    order_index: int
    description: Optional[str] = None
    is_done: bool = False
    completed_at: Optional[datetime] = None


@dataclass
class Reference:
    id: str
    task_id: str
    url: str
    created_at: datetime
    type: ReferenceType = "Link"
    title: Optional[str] = None


# Inputs. For updates, None means "leave unchanged".


@dataclass(frozen=True)
class SubtaskInput:
    title: str
    description: Optional[str] = None
    order_index: Optional[int] = None


@dataclass(frozen=True)
class SubtaskUpdate:
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class TaskInput:
    title: str
    description: Optional[str] = None
    type: str = "Feature"
    priority: str = "Medium"
    due_at: Optional[datetime] = None
    milestone_id: Optional[str] = None
    assigned_role: Optional[str] = None
    assigned_user_id: Optional[str] = None
    order_index: Optional[int] = None
    subtasks: list[SubtaskInput] = field(default_factory=list)


@dataclass(frozen=True)
class TaskUpdate:
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = None
    due_at: Optional[datetime] = None
    milestone_id: Optional[str] = None
    assigned_role: Optional[str] = None
    assigned_user_id: Optional[str] = None


@dataclass(frozen=True)
class MilestoneInput:
    title: str
    description: Optional[str] = None
    status: str = "Planned"
    order_index: Optional[int] = None
    target_date: Optional[datetime] = None


@dataclass(frozen=True)
class MilestoneUpdate:
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    target_date: Optional[datetime] = None


@dataclass(frozen=True)
class ReferenceInput:
    url: str
    type: str = "Link"
    title: Optional[str] = None


@dataclass(frozen=True)
class BoardQuery:
    type: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    milestone_id: Optional[str] = None
    assigned_role: Optional[str] = None
    assigned_user_id: Optional[str] = None
    is_blocked: Optional[bool] = None
    search: Optional[str] = None
    include_completed: bool = True
    sort_by: str = "order_index"
    descending: bool = False


# Hydrated read models.


@dataclass(frozen=True)
class SubtaskView:
    id: str
    task_id: str
    title: str
    description: Optional[str]
    is_done: bool
    order_index: int
    completed_at: Optional[datetime]


@dataclass(frozen=True)
class ReferenceView:
    id: str
    task_id: str
    type: str
    url: str
    title: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class DependencyView:
    task_id: str
    depends_on_task_id: str
    depends_on_title: str
    depends_on_status: str


@dataclass(frozen=True)
class TaskView:
    id: str
    project_id: str
    title: str
    description: Optional[str]
    type: str
    status: str
    priority: str
    is_blocked: bool
    order_index: int
    created_at: datetime
    created_by_user_id: str
    due_at: Optional[datetime]
    milestone_id: Optional[str]
    milestone_title: Optional[str]
    assigned_role: Optional[str]
    assigned_user_id: Optional[str]
    subtasks: list[SubtaskView]
    references: list[ReferenceView]
    dependencies: list[DependencyView]
    dependencies_satisfied: bool

    @property
    def subtask_count(self) -> int:
        return len(self.subtasks)

    @property
    def completed_subtask_count(self) -> int:
        return sum(1 for s in self.subtasks if s.is_done)


@dataclass(frozen=True)
class MilestoneView:
    id: str
    project_id: str
    title: str
    description: Optional[str]
    status: str
    order_index: int
    target_date: Optional[datetime]
    created_at: datetime
    tasks_count: int
    done_tasks_count: int


# Mutation outcomes carrying what a caller needs to decide on notifications.


@dataclass(frozen=True)
class StatusChange:
    task: TaskView
    old_status: str
    new_status: str
    became_done: bool
    became_unblocked: bool


@dataclass(frozen=True)
class MilestoneChange:
    milestone: MilestoneView
    old_status: str
    became_completed: bool


def as_dict(obj: Any) -> Any:
    """Dataclass → JSON/YAML friendly structure (datetimes as ISO strings)."""
    if hasattr(obj, "__dataclass_fields__"):
        return as_dict(asdict(obj))
    if isinstance(obj, dict):
        return {k: as_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [as_dict(v) for v in obj]
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return obj
