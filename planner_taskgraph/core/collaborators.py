from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import structlog

from planner_taskgraph.core.model import ProjectMember

logger = structlog.get_logger()


class ExternalRoadmapGenerator(Protocol):
    def generate(self, context_text: str) -> str: ...

    def elaborate(self, context_text: str) -> str: ...


class MembershipProvider(Protocol):
    def get_active_members(self, project_id: str) -> list[ProjectMember]: ...

    def is_platform_mentor(self, user_id: str) -> bool: ...


@dataclass(frozen=True)
class TaskCreated:
    project_id: str
    task_id: str
    title: str
    actor_id: str
    assigned_user_id: Optional[str] = None


@dataclass(frozen=True)
class TaskCompleted:
    project_id: str
    task_id: str
    title: str
    actor_id: str


@dataclass(frozen=True)
class TaskUnblocked:
    project_id: str
    task_id: str
    title: str
    actor_id: str


@dataclass(frozen=True)
class MilestoneCompleted:
    project_id: str
    milestone_id: str
    title: str
    actor_id: str


class NotificationSink(Protocol):
    def task_created(self, event: TaskCreated) -> None: ...

    def task_completed(self, event: TaskCompleted) -> None: ...

    def task_unblocked(self, event: TaskUnblocked) -> None: ...

    def milestone_completed(self, event: MilestoneCompleted) -> None: ...


class StaticMembership:
    """In-memory MembershipProvider backed by a fixed roster (workspace files, tests)."""

    def __init__(
        self,
        members: Optional[dict[str, list[ProjectMember]]] = None,
        mentors: Iterable[str] = (),
    ) -> None:
        self._members: dict[str, list[ProjectMember]] = {
            pid: list(ms) for pid, ms in (members or {}).items()
        }
        self._mentors: set[str] = set(mentors)

    def set_members(self, project_id: str, members: Iterable[ProjectMember]) -> None:
        self._members[project_id] = list(members)

    def all_members(self, project_id: str) -> list[ProjectMember]:
        return list(self._members.get(project_id, []))

    def get_active_members(self, project_id: str) -> list[ProjectMember]:
        return [m for m in self._members.get(project_id, []) if m.is_active]

    def is_platform_mentor(self, user_id: str) -> bool:
        return user_id in self._mentors

    @property
    def mentors(self) -> list[str]:
        return sorted(self._mentors)


class LoggingNotificationSink:
    """Writes every notification as a structured log event."""

    def task_created(self, event: TaskCreated) -> None:
        logger.info("notify_task_created", **_fields(event))

    def task_completed(self, event: TaskCompleted) -> None:
        logger.info("notify_task_completed", **_fields(event))

    def task_unblocked(self, event: TaskUnblocked) -> None:
        logger.info("notify_task_unblocked", **_fields(event))

    def milestone_completed(self, event: MilestoneCompleted) -> None:
        logger.info("notify_milestone_completed", **_fields(event))


class NullNotificationSink:
    def task_created(self, event: TaskCreated) -> None:
        pass

    def task_completed(self, event: TaskCompleted) -> None:
        pass

    def task_unblocked(self, event: TaskUnblocked) -> None:
        pass

    def milestone_completed(self, event: MilestoneCompleted) -> None:
        pass


def _fields(event: object) -> dict:
    return dict(vars(event))
