from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional, Sequence

from planner_taskgraph.core.model import (
    TASK_PRIORITIES,
    TASK_TYPES,
    Project,
    ProjectMember,
    TaskView,
)


@dataclass(frozen=True)
class PlanRequest:
    goal: Optional[str] = None
    constraints: list[str] = field(default_factory=list)
    preferred_technologies: list[str] = field(default_factory=list)
    start_date: Optional[date] = None
    target_due_date: Optional[date] = None


@dataclass(frozen=True)
class ElaborationRequest:
    question: Optional[str] = None
    extra_context: Optional[str] = None


ROADMAP_SYSTEM_PROMPT = f"""You are the planning assistant of a project team workspace.

Produce a delivery roadmap for the project described in CONTEXT_JSON.

You MUST output a JSON object with fields:
- milestones: [{{"title", "description", "order_index", "days_from_start"}}]
- tasks: [{{"title", "description", "type", "priority", "milestone_index",
           "assigned_role", "order_index", "days_from_start",
           "subtasks": [{{"title", "description", "order_index"}}]}}]
- notes: ["..."]

Return ONLY the JSON roadmap (no markdown, no extra text).

Rules:
- milestone_index is the 0-based position of the task's milestone in the milestones array.
- type is one of: {", ".join(TASK_TYPES)}.
- priority is one of: {", ".join(TASK_PRIORITIES)}.
- assigned_role must be one of the team roles listed in the context, or null.
- days_from_start counts days from the project start; keep it within the project duration.
- Prefer small, concrete tasks with 1-5 subtasks each.
"""


ELABORATE_SYSTEM_PROMPT = """You are the planning assistant of a project team workspace.

A team member asks for guidance on one task described in CONTEXT_JSON.
Answer with practical, concise guidance: approach, steps, pitfalls, resources.
Plain text, one idea per line. Do not restate the context.
"""


def team_roster(members: Sequence[ProjectMember]) -> list[dict[str, Any]]:
    return [
        {"user_id": m.user_id, "role": m.role, "is_admin": m.is_admin}
        for m in sorted(members, key=lambda m: (m.role, m.user_id))
    ]


def build_roadmap_context(
    project: Project,
    members: Sequence[ProjectMember],
    request: PlanRequest,
) -> dict[str, Any]:
    technologies = list(dict.fromkeys([*project.technologies, *request.preferred_technologies]))
    return {
        "project": {
            "name": project.name,
            "description": project.description,
            "goals": list(project.goals),
            "difficulty": project.difficulty,
            "duration_days": project.duration_days,
            "created_at": project.created_at.isoformat(),
        },
        "request": {
            "goal": request.goal,
            "constraints": list(request.constraints),
            "technologies": technologies,
            "start_date": request.start_date.isoformat() if request.start_date else None,
            "target_due_date": request.target_due_date.isoformat() if request.target_due_date else None,
        },
        "team": team_roster(members),
        "roles": sorted({m.role for m in members}),
    }


def build_elaboration_context(
    project: Project,
    task: TaskView,
    members: Sequence[ProjectMember],
    request: ElaborationRequest,
) -> dict[str, Any]:
    return {
        "project": {
            "name": project.name,
            "description": project.description,
            "goals": list(project.goals),
            "technologies": list(project.technologies),
        },
        "task": {
            "title": task.title,
            "description": task.description,
            "type": task.type,
            "status": task.status,
            "priority": task.priority,
            "milestone": task.milestone_title,
            "assigned_role": task.assigned_role,
            "subtasks": [{"title": s.title, "is_done": s.is_done} for s in task.subtasks],
            "depends_on": [d.depends_on_title for d in task.dependencies],
        },
        "team": team_roster(members),
        "question": request.question,
        "extra_context": request.extra_context,
    }


def render_context(context: dict[str, Any]) -> str:
    """Context text handed to an ExternalRoadmapGenerator; the generator owns its instructions."""
    return "CONTEXT_JSON:\n" + json.dumps(context, indent=2, sort_keys=True) + "\n"


def split_notes(text: str) -> list[str]:
    """Free-form guidance → note lines (blank lines and list bullets dropped)."""
    out: list[str] = []
    for line in text.splitlines():
        s = line.strip()
        if not s:
            continue
        s = s.lstrip("-*• ").strip()
        if s:
            out.append(s)
    return out
