from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from planner_taskgraph.core.collaborators import StaticMembership
from planner_taskgraph.core.errors import WorkspaceLoadError
from planner_taskgraph.core.model import (
    MILESTONE_STATUSES,
    REFERENCE_TYPES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    TASK_TYPES,
    Milestone,
    Project,
    ProjectMember,
    Reference,
    Subtask,
    Task,
)
from planner_taskgraph.core.store.arena import ProjectGraph
from planner_taskgraph.core.store.graph_store import GraphStore
from planner_taskgraph.core.validate.validate_board import validate_board


SCHEMA_VERSION = "0.1"


@dataclass
class Workspace:
    store: GraphStore
    membership: StaticMembership
    path: Optional[str] = None

    def save(self, path: Optional[str] = None) -> None:
        target = path or self.path
        if not target:
            raise WorkspaceLoadError(code="E_NO_PATH", message="workspace has no file to save to")
        save_workspace(self, target)


def empty_workspace(mentors: list[str] | None = None) -> Workspace:
    membership = StaticMembership(mentors=mentors or [])
    return Workspace(store=GraphStore(membership), membership=membership)


def read_document(path: str) -> dict[str, Any]:
    """Load a YAML/JSON file into a mapping (suffix decides the format)."""
    p = Path(path)
    if not p.exists():
        raise WorkspaceLoadError(code="E_FILE_NOT_FOUND", message="file does not exist", entity=str(p))

    suffix = p.suffix.lower()
    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:  # pragma: no cover
        raise WorkspaceLoadError(code="E_FILE_READ", message=str(e), entity=str(p)) from e

    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(raw_text)
        elif suffix == ".json":
            data = json.loads(raw_text)
        else:
            raise WorkspaceLoadError(
                code="E_UNSUPPORTED_FORMAT",
                message="supported formats are .yaml/.yml and .json",
                entity=str(p),
            )
    except WorkspaceLoadError:
        raise
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        code = "E_YAML_PARSE" if suffix in {".yaml", ".yml"} else "E_JSON_PARSE"
        raise WorkspaceLoadError(code=code, message=str(e), entity=str(p)) from e

    if not isinstance(data, dict):
        raise WorkspaceLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be a mapping/object",
            entity=str(p),
        )
    return data


def load_workspace(path: str, *, validate: bool = True) -> Workspace:
    """Load a workspace file; by default every project's board invariants are checked."""
    data = read_document(path)
    ws = workspace_from_dict(data, file=str(path), validate=validate)
    ws.path = str(path)
    return ws


def workspace_from_dict(
    data: dict[str, Any],
    file: str = "<workspace>",
    *,
    validate: bool = True,
) -> Workspace:
    r = _Reader(file)
    mentors = r.str_list(data.get("mentors", []), "mentors")
    ws = empty_workspace(mentors)

    projects_raw = data.get("projects", [])
    if not isinstance(projects_raw, list):
        raise r.error("projects", "projects must be a list")

    seen: set[str] = set()
    for i, praw in enumerate(projects_raw):
        path = f"projects[{i}]"
        graph, members = _read_project(r, praw, path)
        if graph.project_id in seen:
            raise r.error(f"{path}.id", f"duplicate project id: {graph.project_id}")
        seen.add(graph.project_id)

        issues = validate_board(graph, member_ids={m.user_id for m in members}) if validate else []
        if issues:
            shown = "; ".join(str(e) for e in issues[:5])
            more = f" (+{len(issues) - 5} more)" if len(issues) > 5 else ""
            raise WorkspaceLoadError(
                code="E_INVARIANT_VIOLATION",
                message=f"{len(issues)} board issue(s): {shown}{more}",
                project_id=graph.project_id,
                entity=file,
            )
        ws.membership.set_members(graph.project_id, members)
        ws.store.put_graph(graph)
    return ws


def workspace_to_dict(ws: Workspace) -> dict[str, Any]:
    projects: list[dict[str, Any]] = []
    for pid in ws.store.project_ids():
        g = ws.store.snapshot(pid)
        p = g.project
        tasks_out: list[dict[str, Any]] = []
        for t in sorted(g.tasks.values(), key=lambda t: (t.order_index, t.id)):
            tasks_out.append(
                {
                    "id": t.id,
                    "title": t.title,
                    "description": t.description,
                    "type": t.type,
                    "status": t.status,
                    "priority": t.priority,
                    "is_blocked": t.is_blocked,
                    "order_index": t.order_index,
                    "created_at": _iso(t.created_at),
                    "created_by_user_id": t.created_by_user_id,
                    "due_at": _iso(t.due_at),
                    "milestone_id": t.milestone_id,
                    "assigned_role": t.assigned_role,
                    "assigned_user_id": t.assigned_user_id,
                    "depends_on": g.deps.depends_on(t.id),
                    "subtasks": [
                        {
                            "id": s.id,
                            "title": s.title,
                            "description": s.description,
                            "is_done": s.is_done,
                            "order_index": s.order_index,
                            "completed_at": _iso(s.completed_at),
                            "created_by_user_id": s.created_by_user_id,
                        }
                        for s in g.subtasks_of(t.id)
                    ],
                    "references": [
                        {
                            "id": ref.id,
                            "type": ref.type,
                            "url": ref.url,
                            "title": ref.title,
                            "created_at": _iso(ref.created_at),
                        }
                        for ref in g.references_of(t.id)
                    ],
                }
            )
        projects.append(
            {
                "id": p.id,
                "name": p.name,
                "description": p.description,
                "goals": list(p.goals),
                "technologies": list(p.technologies),
                "difficulty": p.difficulty,
                "duration_days": p.duration_days,
                "created_at": _iso(p.created_at),
                "members": [
                    {
                        "user_id": m.user_id,
                        "role": m.role,
                        "is_admin": m.is_admin,
                        "joined_at": _iso(m.joined_at),
                        "left_at": _iso(m.left_at),
                    }
                    for m in ws.membership.all_members(pid)
                ],
                "milestones": [
                    {
                        "id": m.id,
                        "title": m.title,
                        "description": m.description,
                        "status": m.status,
                        "order_index": m.order_index,
                        "target_date": _iso(m.target_date),
                        "created_at": _iso(m.created_at),
                        "created_by_user_id": m.created_by_user_id,
                    }
                    for m in sorted(g.milestones.values(), key=lambda m: (m.order_index, m.id))
                ],
                "tasks": tasks_out,
            }
        )
    return {"schema_version": SCHEMA_VERSION, "mentors": ws.membership.mentors, "projects": projects}


def save_workspace(ws: Workspace, path: str) -> None:
    data = workspace_to_dict(ws)
    p = Path(path)
    if p.suffix.lower() == ".json":
        p.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        return
    with open(p, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False, allow_unicode=True)


def _read_project(r: "_Reader", raw: Any, path: str) -> tuple[ProjectGraph, list[ProjectMember]]:
    raw = r.mapping(raw, path)
    project = Project(
        id=r.text(raw, "id", path),
        name=r.text(raw, "name", path),
        description=r.opt_str(raw, "description", path) or "",
        goals=r.str_list(raw.get("goals", []), f"{path}.goals"),
        technologies=r.str_list(raw.get("technologies", []), f"{path}.technologies"),
        difficulty=r.opt_str(raw, "difficulty", path),
        duration_days=r.opt_int(raw, "duration_days", path),
        created_at=r.dt(raw, "created_at", path, required=True),
    )
    graph = ProjectGraph(project)

    members: list[ProjectMember] = []
    for i, mraw in enumerate(r.items(raw, "members", path)):
        mp = f"{path}.members[{i}]"
        mraw = r.mapping(mraw, mp)
        members.append(
            ProjectMember(
                user_id=r.text(mraw, "user_id", mp),
                role=r.text(mraw, "role", mp),
                is_admin=r.flag(mraw, "is_admin", mp),
                joined_at=r.dt(mraw, "joined_at", mp),
                left_at=r.dt(mraw, "left_at", mp),
            )
        )

    for i, mraw in enumerate(r.items(raw, "milestones", path)):
        mp = f"{path}.milestones[{i}]"
        mraw = r.mapping(mraw, mp)
        m = Milestone(
            id=r.text(mraw, "id", mp),
            project_id=project.id,
            title=r.text(mraw, "title", mp),
            description=r.opt_str(mraw, "description", mp),
            status=r.text(mraw, "status", mp, default="Planned"),  # type: ignore[arg-type]
            order_index=r.integer(mraw, "order_index", mp),
            target_date=r.dt(mraw, "target_date", mp),
            created_at=r.dt(mraw, "created_at", mp, required=True),
            created_by_user_id=r.text(mraw, "created_by_user_id", mp),
        )
        r.choice("status", m.status, MILESTONE_STATUSES, mp)
        r.unique(graph.milestones, m.id, f"{mp}.id")
        graph.milestones[m.id] = m

    pending_edges: list[tuple[str, str]] = []
    for i, traw in enumerate(r.items(raw, "tasks", path)):
        tp = f"{path}.tasks[{i}]"
        traw = r.mapping(traw, tp)
        t = Task(
            id=r.text(traw, "id", tp),
            project_id=project.id,
            title=r.text(traw, "title", tp),
            description=r.opt_str(traw, "description", tp),
            type=r.text(traw, "type", tp, default="Feature"),  # type: ignore[arg-type]
            status=r.text(traw, "status", tp, default="Todo"),  # type: ignore[arg-type]
            priority=r.text(traw, "priority", tp, default="Medium"),  # type: ignore[arg-type]
            is_blocked=r.flag(traw, "is_blocked", tp),
            order_index=r.integer(traw, "order_index", tp),
            created_at=r.dt(traw, "created_at", tp, required=True),
            created_by_user_id=r.text(traw, "created_by_user_id", tp),
            due_at=r.dt(traw, "due_at", tp),
            milestone_id=r.opt_str(traw, "milestone_id", tp),
            assigned_role=r.opt_str(traw, "assigned_role", tp),
            assigned_user_id=r.opt_str(traw, "assigned_user_id", tp),
        )
        r.choice("type", t.type, TASK_TYPES, tp)
        r.choice("status", t.status, TASK_STATUSES, tp)
        r.choice("priority", t.priority, TASK_PRIORITIES, tp)
        r.unique(graph.tasks, t.id, f"{tp}.id")
        graph.tasks[t.id] = t

        for dep in r.str_list(traw.get("depends_on", []), f"{tp}.depends_on"):
            pending_edges.append((t.id, dep))

        for j, sraw in enumerate(r.items(traw, "subtasks", tp)):
            sp = f"{tp}.subtasks[{j}]"
            sraw = r.mapping(sraw, sp)
            s = Subtask(
                id=r.text(sraw, "id", sp),
                task_id=t.id,
                title=r.text(sraw, "title", sp),
                description=r.opt_str(sraw, "description", sp),
                is_done=r.flag(sraw, "is_done", sp),
                order_index=r.integer(sraw, "order_index", sp),
                completed_at=r.dt(sraw, "completed_at", sp),
                created_by_user_id=r.text(sraw, "created_by_user_id", sp),
            )
            r.unique(graph.subtasks, s.id, f"{sp}.id")
            graph.subtasks[s.id] = s

        for j, rraw in enumerate(r.items(traw, "references", tp)):
            rp = f"{tp}.references[{j}]"
            rraw = r.mapping(rraw, rp)
            ref = Reference(
                id=r.text(rraw, "id", rp),
                task_id=t.id,
                type=r.text(rraw, "type", rp, default="Link"),  # type: ignore[arg-type]
                url=r.text(rraw, "url", rp),
                title=r.opt_str(rraw, "title", rp),
                created_at=r.dt(rraw, "created_at", rp, required=True),
            )
            r.choice("type", ref.type, REFERENCE_TYPES, rp)
            r.unique(graph.references, ref.id, f"{rp}.id")
            graph.references[ref.id] = ref

    for task_id, dep in pending_edges:
        graph.deps.load_edge(task_id, dep)

    return graph, members


class _Reader:
    """Field accessors that turn shape problems into WorkspaceLoadError with a path."""

    def __init__(self, file: str) -> None:
        self.file = file

    def error(self, path: str, message: str) -> WorkspaceLoadError:
        return WorkspaceLoadError(code="E_INVALID_FIELD", message=message, entity=f"{self.file}:{path}")

    def mapping(self, v: Any, path: str) -> dict[str, Any]:
        if not isinstance(v, dict):
            raise self.error(path, "must be a mapping/object")
        return v

    def items(self, raw: dict[str, Any], key: str, path: str) -> list[Any]:
        v = raw.get(key, [])
        if v is None:
            return []
        if not isinstance(v, list):
            raise self.error(f"{path}.{key}", "must be a list")
        return v

    def text(self, raw: dict[str, Any], key: str, path: str, default: Optional[str] = None) -> str:
        v = raw.get(key, default)
        if not isinstance(v, str) or not v.strip():
            raise self.error(f"{path}.{key}", "is required and must be a non-empty string")
        return v

    def opt_str(self, raw: dict[str, Any], key: str, path: str) -> Optional[str]:
        v = raw.get(key)
        if v is None:
            return None
        if not isinstance(v, str):
            raise self.error(f"{path}.{key}", "must be a string")
        return v

    def integer(self, raw: dict[str, Any], key: str, path: str) -> int:
        v = raw.get(key)
        if not isinstance(v, int) or isinstance(v, bool):
            raise self.error(f"{path}.{key}", "is required and must be an integer")
        return v

    def opt_int(self, raw: dict[str, Any], key: str, path: str) -> Optional[int]:
        if raw.get(key) is None:
            return None
        return self.integer(raw, key, path)

    def flag(self, raw: dict[str, Any], key: str, path: str) -> bool:
        v = raw.get(key, False)
        if not isinstance(v, bool):
            raise self.error(f"{path}.{key}", "must be a boolean")
        return v

    def str_list(self, v: Any, path: str) -> list[str]:
        if v is None:
            return []
        if not isinstance(v, list) or any(not isinstance(x, str) for x in v):
            raise self.error(path, "must be a list of strings")
        return list(v)

    def dt(self, raw: dict[str, Any], key: str, path: str, required: bool = False) -> Optional[datetime]:
        v = raw.get(key)
        if v is None:
            if required:
                raise self.error(f"{path}.{key}", "is required")
            return None
        if isinstance(v, datetime):
            out = v
        elif isinstance(v, date):
            out = datetime(v.year, v.month, v.day)
        elif isinstance(v, str):
            try:
                out = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
            except ValueError as e:
                raise self.error(f"{path}.{key}", f"invalid ISO timestamp: {v!r}") from e
        else:
            raise self.error(f"{path}.{key}", "must be an ISO timestamp")
        return out if out.tzinfo else out.replace(tzinfo=timezone.utc)

    def unique(self, existing: dict[str, Any], entity_id: str, path: str) -> None:
        if entity_id in existing:
            raise self.error(path, f"duplicate id: {entity_id}")

    def choice(self, name: str, value: str, allowed: tuple[str, ...], path: str) -> None:
        if value not in allowed:
            raise self.error(f"{path}.{name}", f"invalid {name}: {value!r} (allowed: {', '.join(allowed)})")


def _iso(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v is not None else None
