from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from planner_taskgraph.core.errors import GenerationFailed
from planner_taskgraph.core.model import TASK_PRIORITIES, TASK_TYPES

# Ten years; offsets are anchored on the project's creation time.
MAX_DAYS_FROM_START = 3650


@dataclass(frozen=True)
class RoadmapMilestone:
    title: str
    description: Optional[str] = None
    order_index: int = 0
    days_from_start: Optional[int] = None


@dataclass(frozen=True)
class RoadmapSubtask:
    title: str
    description: Optional[str] = None
    order_index: int = 0


@dataclass(frozen=True)
class RoadmapTask:
    title: str
    description: Optional[str] = None
    type: str = "Feature"
    priority: str = "Medium"
    milestone_index: Optional[int] = None
    assigned_role: Optional[str] = None
    order_index: int = 0
    days_from_start: Optional[int] = None
    subtasks: list[RoadmapSubtask] = field(default_factory=list)


@dataclass(frozen=True)
class Roadmap:
    milestones: list[RoadmapMilestone]
    tasks: list[RoadmapTask]
    notes: list[str] = field(default_factory=list)
    # Tasks dropped while parsing, one human-readable line each.
    diagnostics: list[str] = field(default_factory=list)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` / ```json fence if the model added one."""
    s = text.strip()
    if not s.startswith("```"):
        return s
    first_nl = s.find("\n")
    s = s[first_nl + 1 :] if first_nl != -1 else s[3:]
    if s.rstrip().endswith("```"):
        s = s.rstrip()[:-3]
    return s.strip()


def parse_roadmap(obj: dict[str, Any]) -> Roadmap:
    """Build a Roadmap from decoded JSON.

    Keys are matched case-insensitively and with or without underscores, so
    `order_index`, `orderIndex` and `OrderIndex` are the same field.

    A malformed milestone makes the whole roadmap unusable (ValueError); a
    malformed task is dropped and reported in `diagnostics`. Day offsets must
    lie in 0..MAX_DAYS_FROM_START.
    """
    if not isinstance(obj, dict):
        raise ValueError("roadmap must be an object")

    milestones_raw = _get(obj, "milestones", default=[])
    tasks_raw = _get(obj, "tasks", default=[])
    notes_raw = _get(obj, "notes", default=[])

    if not isinstance(milestones_raw, list):
        raise ValueError("milestones must be a list")
    if not isinstance(tasks_raw, list):
        raise ValueError("tasks must be a list")
    if notes_raw is None:
        notes_raw = []
    if not isinstance(notes_raw, list) or any(not isinstance(x, str) for x in notes_raw):
        raise ValueError("notes must be a list[str]")

    milestones: list[RoadmapMilestone] = []
    for i, raw in enumerate(milestones_raw):
        if not isinstance(raw, dict):
            raise ValueError(f"milestones[{i}] must be an object")
        title = _get(raw, "title")
        if not isinstance(title, str) or not title.strip():
            raise ValueError(f"milestones[{i}].title must be a non-empty string")
        milestones.append(
            RoadmapMilestone(
                title=title.strip(),
                description=_opt_str(_get(raw, "description")),
                order_index=_int(_get(raw, "order_index"), default=i, where=f"milestones[{i}].order_index"),
                days_from_start=_days(_get(raw, "days_from_start"), where=f"milestones[{i}].days_from_start"),
            )
        )

    tasks: list[RoadmapTask] = []
    diagnostics: list[str] = []
    for i, raw in enumerate(tasks_raw):
        try:
            tasks.append(_parse_task(raw, i))
        except ValueError as e:
            diagnostics.append(f"skipped tasks[{i}]: {e}")

    return Roadmap(milestones=milestones, tasks=tasks, notes=list(notes_raw), diagnostics=diagnostics)


def load_roadmap(text: str) -> Roadmap:
    """Decode generator output (optionally fenced JSON) into a Roadmap."""
    body = strip_code_fences(text)
    try:
        obj = json.loads(body)
    except json.JSONDecodeError as e:
        raise GenerationFailed(
            code="E_ROADMAP_PARSE",
            message=f"roadmap is not valid JSON ({e.msg}). First 200 chars: {body[:200]}",
        ) from e
    try:
        return parse_roadmap(obj)
    except ValueError as e:
        raise GenerationFailed(code="E_ROADMAP_INVALID", message=str(e)) from e


def _parse_task(raw: Any, i: int) -> RoadmapTask:
    if not isinstance(raw, dict):
        raise ValueError("task must be an object")
    title = _get(raw, "title")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("title must be a non-empty string")

    ttype = _choice(_get(raw, "type"), TASK_TYPES, "Feature", "type")
    priority = _choice(_get(raw, "priority"), TASK_PRIORITIES, "Medium", "priority")

    subtasks_raw = _get(raw, "subtasks", default=[]) or []
    if not isinstance(subtasks_raw, list):
        raise ValueError("subtasks must be a list")
    subtasks: list[RoadmapSubtask] = []
    for j, sraw in enumerate(subtasks_raw):
        if not isinstance(sraw, dict):
            raise ValueError(f"subtasks[{j}] must be an object")
        stitle = _get(sraw, "title")
        if not isinstance(stitle, str) or not stitle.strip():
            raise ValueError(f"subtasks[{j}].title must be a non-empty string")
        subtasks.append(
            RoadmapSubtask(
                title=stitle.strip(),
                description=_opt_str(_get(sraw, "description")),
                order_index=_int(_get(sraw, "order_index"), default=j, where=f"subtasks[{j}].order_index"),
            )
        )

    milestone_index = _get(raw, "milestone_index")
    if milestone_index is None:
        # Some generators name the array position "milestoneId".
        milestone_index = _get(raw, "milestone_id")

    role = _opt_str(_get(raw, "assigned_role"))
    return RoadmapTask(
        title=title.strip(),
        description=_opt_str(_get(raw, "description")),
        type=ttype,
        priority=priority,
        milestone_index=_opt_int(milestone_index, where="milestone_index"),
        assigned_role=role.strip() if role and role.strip() else None,
        order_index=_int(_get(raw, "order_index"), default=i, where="order_index"),
        days_from_start=_days(_get(raw, "days_from_start"), where="days_from_start"),
        subtasks=subtasks,
    )


def _norm(key: str) -> str:
    return key.replace("_", "").lower()


def _get(obj: dict[str, Any], name: str, default: Any = None) -> Any:
    want = _norm(name)
    for k, v in obj.items():
        if isinstance(k, str) and _norm(k) == want:
            return v
    return default


def _choice(value: Any, allowed: tuple[str, ...], default: str, name: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    by_lower = {a.lower(): a for a in allowed}
    hit = by_lower.get(value.strip().lower())
    if hit is None:
        raise ValueError(f"unknown {name}: {value!r} (allowed: {', '.join(allowed)})")
    return hit


def _opt_str(v: Any) -> Optional[str]:
    return v if isinstance(v, str) else None


def _opt_int(v: Any, *, where: str) -> Optional[int]:
    if v is None:
        return None
    # bool is an int subclass; true/false is never a valid index.
    if isinstance(v, bool):
        raise ValueError(f"{where} must be an integer")
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    raise ValueError(f"{where} must be an integer")


def _int(v: Any, *, default: int, where: str) -> int:
    out = _opt_int(v, where=where)
    return default if out is None else out


def _days(v: Any, *, where: str) -> Optional[int]:
    out = _opt_int(v, where=where)
    if out is not None and not 0 <= out <= MAX_DAYS_FROM_START:
        raise ValueError(f"{where} must be between 0 and {MAX_DAYS_FROM_START}, got {out}")
    return out
