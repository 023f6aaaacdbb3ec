from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

import structlog

from planner_taskgraph.core.errors import InvalidState
from planner_taskgraph.core.graph.state_machine import next_order_index
from planner_taskgraph.core.model import (
    MilestoneInput,
    MilestoneView,
    ProjectMember,
    SubtaskInput,
    TaskInput,
    TaskView,
)
from planner_taskgraph.core.planning.contracts import Roadmap, RoadmapTask
from planner_taskgraph.core.store.graph_store import GraphStore
from planner_taskgraph.core.validate.validate_board import validate_board

logger = structlog.get_logger()


@dataclass(frozen=True)
class ApplyRoadmapResult:
    milestones: list[MilestoneView]
    tasks: list[TaskView]
    notes: list[str]


def apply_roadmap(
    store: GraphStore,
    project_id: str,
    roadmap: Roadmap,
    *,
    actor_id: str,
    active_members: Sequence[ProjectMember],
) -> ApplyRoadmapResult:
    """Materialise a roadmap into the project's graph, all or nothing.

    - Milestones are created in array order; target dates are anchored on the
      project's creation time.
    - Tasks point at milestones by array position; a position outside the
      milestone list drops the task with a note.
    - `assigned_role` resolves to the first active member holding exactly that
      role; with no match the label is kept and no user is assigned.
    - New board and milestone order indices start after the project's current
      maximum, ranked by the roadmap's own order_index (ties keep array order).
    """
    notes: list[str] = list(roadmap.diagnostics)
    for line in roadmap.diagnostics:
        logger.warning("roadmap_task_skipped", project_id=project_id, reason=line)

    role_to_user: dict[str, str] = {}
    for m in active_members:
        role_to_user.setdefault(m.role, m.user_id)
    member_roles = {m.user_id: m.role for m in active_members}

    kept: list[RoadmapTask] = []
    for i, t in enumerate(roadmap.tasks):
        if t.milestone_index is not None and not 0 <= t.milestone_index < len(roadmap.milestones):
            line = (
                f"skipped task {t.title!r}: milestone index {t.milestone_index} is out of range "
                f"(roadmap has {len(roadmap.milestones)} milestones)"
            )
            notes.append(line)
            logger.warning("roadmap_task_skipped", project_id=project_id, task_index=i, reason=line)
            continue
        kept.append(t)

    with store.unit_of_work(project_id) as g:
        anchor = g.project.created_at

        m_base = next_order_index(m.order_index for m in g.milestones.values())
        m_rank = _ranks([m.order_index for m in roadmap.milestones])
        milestone_ids: list[str] = []
        for i, rm in enumerate(roadmap.milestones):
            created = g.create_milestone(
                MilestoneInput(
                    title=rm.title,
                    description=rm.description,
                    order_index=m_base + m_rank[i],
                    target_date=_offset(anchor, rm.days_from_start),
                ),
                actor_id,
            )
            milestone_ids.append(created.id)

        t_base = next_order_index(t.order_index for t in g.tasks.values())
        t_rank = _ranks([t.order_index for t in kept])
        task_ids: list[str] = []
        for i, rt in enumerate(kept):
            s_rank = _ranks([s.order_index for s in rt.subtasks])
            assigned_user = role_to_user.get(rt.assigned_role) if rt.assigned_role else None
            created_task = g.create_task(
                TaskInput(
                    title=rt.title,
                    description=rt.description,
                    type=rt.type,
                    priority=rt.priority,
                    due_at=_offset(anchor, rt.days_from_start),
                    milestone_id=(
                        milestone_ids[rt.milestone_index] if rt.milestone_index is not None else None
                    ),
                    assigned_role=rt.assigned_role,
                    assigned_user_id=assigned_user,
                    order_index=t_base + t_rank[i],
                    subtasks=[
                        SubtaskInput(title=s.title, description=s.description, order_index=s_rank[j])
                        for j, s in enumerate(rt.subtasks)
                    ],
                ),
                actor_id,
                member_roles,
            )
            task_ids.append(created_task.id)

        issues = validate_board(g)
        if issues:
            raise InvalidState(
                code="E_ROADMAP_INCONSISTENT",
                message="roadmap would break board invariants: " + "; ".join(str(e) for e in issues[:5]),
                project_id=project_id,
            )

        milestone_views = [g.milestone_view(mid) for mid in milestone_ids]
        task_views = [g.task_view(tid) for tid in task_ids]

    logger.info(
        "roadmap_applied",
        project_id=project_id,
        milestones=len(milestone_views),
        tasks=len(task_views),
        skipped=len(roadmap.tasks) - len(kept) + len(roadmap.diagnostics),
    )
    return ApplyRoadmapResult(milestones=milestone_views, tasks=task_views, notes=notes)


def _ranks(order_indices: list[int]) -> list[int]:
    """0-based position of each item once sorted; ties keep their array order."""
    ordered = sorted(range(len(order_indices)), key=lambda i: (order_indices[i], i))
    ranks = [0] * len(order_indices)
    for rank, i in enumerate(ordered):
        ranks[i] = rank
    return ranks


def _offset(anchor: datetime, days: Optional[int]) -> Optional[datetime]:
    if days is None:
        return None
    return anchor + timedelta(days=days)
