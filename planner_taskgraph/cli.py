from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from planner_taskgraph.core.collaborators import LoggingNotificationSink
from planner_taskgraph.core.config import PlannerSettings, load_settings
from planner_taskgraph.core.errors import ConfigError, InvalidState, NotFound, PlannerError
from planner_taskgraph.core.io.workspace import (
    Workspace,
    empty_workspace,
    load_workspace,
    read_document,
)
from planner_taskgraph.core.log import configure_logging
from planner_taskgraph.core.model import (
    BoardQuery,
    MilestoneInput,
    MilestoneUpdate,
    MilestoneView,
    Project,
    ProjectMember,
    ReferenceInput,
    SubtaskInput,
    TaskInput,
    TaskUpdate,
    TaskView,
    as_dict,
    utcnow,
)
from planner_taskgraph.core.planning.contracts import parse_roadmap
from planner_taskgraph.core.planning.openai_client import OpenAIRoadmapGenerator
from planner_taskgraph.core.planning.orchestrator import PlanningOrchestrator
from planner_taskgraph.core.planning.prompts import ElaborationRequest, PlanRequest
from planner_taskgraph.core.service import BoardService
from planner_taskgraph.core.validate.validate_board import validate_board

app = typer.Typer(add_completion=False, no_args_is_help=True)
task_app = typer.Typer(no_args_is_help=True, help="Create, edit and move tasks.")
milestone_app = typer.Typer(no_args_is_help=True, help="Create, edit and move milestones.")
dep_app = typer.Typer(no_args_is_help=True, help="Task dependencies.")
subtask_app = typer.Typer(no_args_is_help=True, help="Subtasks of a task.")
ref_app = typer.Typer(no_args_is_help=True, help="Links and documents attached to a task.")
plan_app = typer.Typer(no_args_is_help=True, help="Roadmap generation and task elaboration.")
app.add_typer(task_app, name="task")
app.add_typer(milestone_app, name="milestone")
app.add_typer(dep_app, name="dep")
app.add_typer(subtask_app, name="subtask")
app.add_typer(ref_app, name="ref")
app.add_typer(plan_app, name="plan")

FORMATS = ("text", "json")


@dataclass
class CliState:
    workspace: str
    actor: Optional[str]
    project: Optional[str]
    config: Optional[str]


@dataclass
class Session:
    ws: Workspace
    board: BoardService
    project_id: str
    actor_id: str
    settings: PlannerSettings


@app.callback()
def _callback(
    ctx: typer.Context,
    workspace: str = typer.Option(
        "planner.yaml", "--workspace", "-w", envvar="PLANNER_WORKSPACE", help="Workspace file (.yaml/.yml/.json)"
    ),
    actor: Optional[str] = typer.Option(None, "--actor", envvar="PLANNER_ACTOR", help="Acting user id"),
    project: Optional[str] = typer.Option(
        None, "--project", "-p", envvar="PLANNER_PROJECT", help="Project id (default: the only project)"
    ),
    config: Optional[str] = typer.Option(None, "--config", envvar="PLANNER_CONFIG", help="Settings YAML file"),
) -> None:
    """Planner CLI: project milestones, task board and dependency graph."""
    ctx.obj = CliState(workspace=workspace, actor=actor, project=project, config=config)


# ---- workspace / overview --------------------------------------------------


@app.command("init")
def init(
    ctx: typer.Context,
    project_id: str = typer.Option(..., "--project-id", help="New project id"),
    name: str = typer.Option(..., "--name", help="Project name"),
    admin: str = typer.Option(..., "--admin", help="User id of the first (admin) member"),
    role: str = typer.Option("Lead", "--role", help="Role of the admin member"),
    description: str = typer.Option("", "--description"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing workspace file"),
) -> None:
    """Create a workspace file with one project and its admin."""
    state: CliState = ctx.obj
    if Path(state.workspace).exists() and not force:
        _fail(
            "init",
            ConfigError(code="E_WORKSPACE_EXISTS", message=f"{state.workspace} exists (use --force)"),
            "text",
        )
    ws = empty_workspace()
    now = utcnow()
    ws.store.add_project(Project(id=project_id, name=name, description=description, created_at=now))
    ws.membership.set_members(project_id, [ProjectMember(user_id=admin, role=role, is_admin=True, joined_at=now)])
    ws.save(state.workspace)
    typer.echo(f"OK: wrote workspace {state.workspace} (project {project_id})")


@app.command("check")
def check(
    ctx: typer.Context,
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Check the workspace file against the board invariants."""
    _check_format("check", format)
    state: CliState = ctx.obj
    try:
        _configure(state)
        ws = load_workspace(state.workspace, validate=False)
    except PlannerError as e:
        _fail("check", e, format)

    issues = []
    for pid in ws.store.project_ids():
        member_ids = {m.user_id for m in ws.membership.all_members(pid)}
        issues.extend(validate_board(ws.store.snapshot(pid), member_ids=member_ids))

    if format == "json":
        payload = {
            "tool": "planner",
            "command": "check",
            "ok": not issues,
            "project_count": len(ws.store.project_ids()),
            "error_count": len(issues),
            "errors": [e.to_dict() for e in issues],
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        raise typer.Exit(code=2 if issues else 0)

    if issues:
        for e in issues:
            typer.echo(str(e), err=True)
        raise typer.Exit(code=2)
    typer.echo(f"OK: {len(ws.store.project_ids())} project(s) pass board checks")


@app.command("board")
def board(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status"),
    type: Optional[str] = typer.Option(None, "--type"),
    priority: Optional[str] = typer.Option(None, "--priority"),
    milestone: Optional[str] = typer.Option(None, "--milestone", help="Milestone id or unique prefix"),
    role: Optional[str] = typer.Option(None, "--role"),
    assignee: Optional[str] = typer.Option(None, "--assignee"),
    blocked: Optional[bool] = typer.Option(None, "--blocked/--not-blocked"),
    search: Optional[str] = typer.Option(None, "--search", help="Case-insensitive title/description match"),
    hide_completed: bool = typer.Option(False, "--hide-completed"),
    mine: bool = typer.Option(False, "--mine", help="Only tasks assigned to the acting user"),
    sort: str = typer.Option("order_index", "--sort", help="order_index|created_at|due_at|priority"),
    desc: bool = typer.Option(False, "--desc"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """List the task board."""

    def run(s: Session) -> list[TaskView]:
        query = BoardQuery(
            type=type,
            priority=priority,
            status=status,
            milestone_id=_resolve(s, "milestone", milestone) if milestone else None,
            assigned_role=role,
            assigned_user_id=s.actor_id if mine else assignee,
            is_blocked=blocked,
            search=search,
            include_completed=not hide_completed,
            sort_by=sort,
            descending=desc,
        )
        return s.board.list_board(s.project_id, s.actor_id, query)

    tasks = _run(ctx, "board", format, run)
    if format == "json":
        _emit_json("board", [as_dict(t) for t in tasks])
    _print_board(tasks)


@app.command("milestones")
def milestones(
    ctx: typer.Context,
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """List milestones with task counts."""
    views = _run(ctx, "milestones", format, lambda s: s.board.list_milestones(s.project_id, s.actor_id))
    if format == "json":
        _emit_json("milestones", [as_dict(m) for m in views])
    _print_milestones(views)


# ---- tasks -----------------------------------------------------------------


@task_app.command("add")
def task_add(
    ctx: typer.Context,
    title: str = typer.Argument(...),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    type: str = typer.Option("Feature", "--type"),
    priority: str = typer.Option("Medium", "--priority"),
    milestone: Optional[str] = typer.Option(None, "--milestone"),
    role: Optional[str] = typer.Option(None, "--role"),
    assignee: Optional[str] = typer.Option(None, "--assignee"),
    order: Optional[int] = typer.Option(None, "--order", help="Board position (default: last)"),
    due: Optional[str] = typer.Option(None, "--due", help="ISO date or timestamp"),
    subtask: list[str] = typer.Option([], "--subtask", help="Inline subtask title (repeatable)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Create a task (with optional inline subtasks)."""

    def run(s: Session) -> TaskView:
        inp = TaskInput(
            title=title,
            description=description,
            type=type,
            priority=priority,
            milestone_id=_resolve(s, "milestone", milestone) if milestone else None,
            assigned_role=role,
            assigned_user_id=assignee,
            order_index=order,
            due_at=_parse_dt(due, "due"),
            subtasks=[SubtaskInput(title=t) for t in subtask],
        )
        return s.board.create_task(s.project_id, inp, s.actor_id)

    view = _run(ctx, "task add", format, run, save=True)
    _done("task add", format, as_dict(view), f"created task {view.id} #{view.order_index}: {view.title}")


@task_app.command("update")
def task_update(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    title: Optional[str] = typer.Option(None, "--title"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    type: Optional[str] = typer.Option(None, "--type"),
    priority: Optional[str] = typer.Option(None, "--priority"),
    milestone: Optional[str] = typer.Option(None, "--milestone"),
    role: Optional[str] = typer.Option(None, "--role"),
    assignee: Optional[str] = typer.Option(None, "--assignee"),
    due: Optional[str] = typer.Option(None, "--due"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Edit task fields (only the given options change)."""

    def run(s: Session) -> TaskView:
        upd = TaskUpdate(
            title=title,
            description=description,
            type=type,
            priority=priority,
            milestone_id=_resolve(s, "milestone", milestone) if milestone else None,
            assigned_role=role,
            assigned_user_id=assignee,
            due_at=_parse_dt(due, "due"),
        )
        return s.board.update_task(s.project_id, _resolve(s, "task", task), upd, s.actor_id)

    view = _run(ctx, "task update", format, run, save=True)
    _done("task update", format, as_dict(view), f"updated task {view.id}: {view.title}")


@task_app.command("status")
def task_status(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    status: str = typer.Argument(..., help="Todo|InProgress|Blocked|Done"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Move a task through its lifecycle."""

    def run(s: Session):
        return s.board.change_task_status(s.project_id, _resolve(s, "task", task), status, s.actor_id)

    change = _run(ctx, "task status", format, run, save=True)
    text = (
        f"task {change.task.id}: {change.old_status} -> {change.new_status}"
        if change.old_status != change.new_status
        else f"task {change.task.id} already {change.new_status}"
    )
    _done("task status", format, as_dict(change), text)


@task_app.command("move")
def task_move(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    index: int = typer.Argument(..., help="New board position"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Reorder a task on the board."""
    view = _run(
        ctx,
        "task move",
        format,
        lambda s: s.board.reorder_task(s.project_id, _resolve(s, "task", task), index, s.actor_id),
        save=True,
    )
    _done("task move", format, as_dict(view), f"task {view.id} now at #{view.order_index}")


@task_app.command("delete")
def task_delete(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Delete a task with its subtasks, references and dependency edges."""

    def run(s: Session) -> str:
        task_id = _resolve(s, "task", task)
        s.board.delete_task(s.project_id, task_id, s.actor_id)
        return task_id

    task_id = _run(ctx, "task delete", format, run, save=True)
    _done("task delete", format, {"task_id": task_id}, f"deleted task {task_id}")


@task_app.command("show")
def task_show(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Show one task with subtasks, dependencies and references."""
    view = _run(
        ctx,
        "task show",
        format,
        lambda s: s.board.get_task(s.project_id, _resolve(s, "task", task), s.actor_id),
    )
    if format == "json":
        _emit_json("task show", as_dict(view))
    _print_task(view)


# ---- milestones ------------------------------------------------------------


@milestone_app.command("add")
def milestone_add(
    ctx: typer.Context,
    title: str = typer.Argument(...),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    status: str = typer.Option("Planned", "--status"),
    order: Optional[int] = typer.Option(None, "--order"),
    target: Optional[str] = typer.Option(None, "--target", help="ISO date or timestamp"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Create a milestone."""

    def run(s: Session) -> MilestoneView:
        inp = MilestoneInput(
            title=title,
            description=description,
            status=status,
            order_index=order,
            target_date=_parse_dt(target, "target"),
        )
        return s.board.create_milestone(s.project_id, inp, s.actor_id)

    view = _run(ctx, "milestone add", format, run, save=True)
    _done("milestone add", format, as_dict(view), f"created milestone {view.id} #{view.order_index}: {view.title}")


@milestone_app.command("update")
def milestone_update(
    ctx: typer.Context,
    milestone: str = typer.Argument(..., help="Milestone id or unique prefix"),
    title: Optional[str] = typer.Option(None, "--title"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    status: Optional[str] = typer.Option(None, "--status"),
    target: Optional[str] = typer.Option(None, "--target"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Edit a milestone (only the given options change)."""

    def run(s: Session):
        upd = MilestoneUpdate(
            title=title,
            description=description,
            status=status,
            target_date=_parse_dt(target, "target"),
        )
        return s.board.update_milestone(s.project_id, _resolve(s, "milestone", milestone), upd, s.actor_id)

    change = _run(ctx, "milestone update", format, run, save=True)
    _done(
        "milestone update",
        format,
        as_dict(change),
        f"updated milestone {change.milestone.id}: {change.milestone.title} [{change.milestone.status}]",
    )


@milestone_app.command("move")
def milestone_move(
    ctx: typer.Context,
    milestone: str = typer.Argument(..., help="Milestone id or unique prefix"),
    index: int = typer.Argument(..., help="New position"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Reorder a milestone."""
    view = _run(
        ctx,
        "milestone move",
        format,
        lambda s: s.board.reorder_milestone(s.project_id, _resolve(s, "milestone", milestone), index, s.actor_id),
        save=True,
    )
    _done("milestone move", format, as_dict(view), f"milestone {view.id} now at #{view.order_index}")


@milestone_app.command("delete")
def milestone_delete(
    ctx: typer.Context,
    milestone: str = typer.Argument(..., help="Milestone id or unique prefix"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Delete a milestone; its tasks stay on the board."""
    res = _run(
        ctx,
        "milestone delete",
        format,
        lambda s: s.board.delete_milestone(s.project_id, _resolve(s, "milestone", milestone), s.actor_id),
        save=True,
    )
    _done(
        "milestone delete",
        format,
        as_dict(res),
        f"deleted milestone {res.milestone_id} ({len(res.detached_task_ids)} task(s) detached)",
    )


# ---- dependencies ----------------------------------------------------------


@dep_app.command("add")
def dep_add(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Dependent task"),
    depends_on: str = typer.Argument(..., help="Task it depends on"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Make TASK depend on DEPENDS_ON."""
    view = _run(
        ctx,
        "dep add",
        format,
        lambda s: s.board.add_dependency(
            s.project_id, _resolve(s, "task", task), _resolve(s, "task", depends_on), s.actor_id
        ),
        save=True,
    )
    _done("dep add", format, as_dict(view), f"task {view.id} depends on {len(view.dependencies)} task(s)")


@dep_app.command("rm")
def dep_rm(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Dependent task"),
    depends_on: str = typer.Argument(..., help="Task it depends on"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Remove the dependency TASK -> DEPENDS_ON."""
    view = _run(
        ctx,
        "dep rm",
        format,
        lambda s: s.board.remove_dependency(
            s.project_id, _resolve(s, "task", task), _resolve(s, "task", depends_on), s.actor_id
        ),
        save=True,
    )
    _done("dep rm", format, as_dict(view), f"task {view.id} depends on {len(view.dependencies)} task(s)")


# ---- subtasks --------------------------------------------------------------


@subtask_app.command("add")
def subtask_add(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    title: str = typer.Argument(...),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    order: Optional[int] = typer.Option(None, "--order"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Add a subtask."""
    view = _run(
        ctx,
        "subtask add",
        format,
        lambda s: s.board.add_subtask(
            s.project_id,
            _resolve(s, "task", task),
            SubtaskInput(title=title, description=description, order_index=order),
            s.actor_id,
        ),
        save=True,
    )
    _done("subtask add", format, as_dict(view), f"created subtask {view.id} #{view.order_index}: {view.title}")


@subtask_app.command("toggle")
def subtask_toggle(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    subtask: str = typer.Argument(..., help="Subtask id or unique prefix"),
    done: bool = typer.Option(True, "--done/--undone"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Mark a subtask done (or not done)."""

    def run(s: Session):
        task_id = _resolve(s, "task", task)
        return s.board.toggle_subtask(
            s.project_id, task_id, _resolve(s, "subtask", subtask, task_id=task_id), done, s.actor_id
        )

    view = _run(ctx, "subtask toggle", format, run, save=True)
    _done("subtask toggle", format, as_dict(view), f"subtask {view.id}: {'done' if view.is_done else 'open'}")


@subtask_app.command("rm")
def subtask_rm(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    subtask: str = typer.Argument(..., help="Subtask id or unique prefix"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Delete a subtask."""

    def run(s: Session) -> str:
        task_id = _resolve(s, "task", task)
        subtask_id = _resolve(s, "subtask", subtask, task_id=task_id)
        s.board.delete_subtask(s.project_id, task_id, subtask_id, s.actor_id)
        return subtask_id

    subtask_id = _run(ctx, "subtask rm", format, run, save=True)
    _done("subtask rm", format, {"subtask_id": subtask_id}, f"deleted subtask {subtask_id}")


# ---- references ------------------------------------------------------------


@ref_app.command("add")
def ref_add(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    url: str = typer.Argument(...),
    type: str = typer.Option("Link", "--type", help="Link|Document|PullRequest|Other"),
    title: Optional[str] = typer.Option(None, "--title"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Attach a reference to a task."""
    view = _run(
        ctx,
        "ref add",
        format,
        lambda s: s.board.add_reference(
            s.project_id, _resolve(s, "task", task), ReferenceInput(url=url, type=type, title=title), s.actor_id
        ),
        save=True,
    )
    _done("ref add", format, as_dict(view), f"added {view.type} {view.id}: {view.url}")


@ref_app.command("rm")
def ref_rm(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    reference: str = typer.Argument(..., help="Reference id or unique prefix"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Remove a reference."""

    def run(s: Session) -> str:
        task_id = _resolve(s, "task", task)
        reference_id = _resolve(s, "reference", reference, task_id=task_id)
        s.board.remove_reference(s.project_id, task_id, reference_id, s.actor_id)
        return reference_id

    reference_id = _run(ctx, "ref rm", format, run, save=True)
    _done("ref rm", format, {"reference_id": reference_id}, f"removed reference {reference_id}")


@ref_app.command("list")
def ref_list(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """List the references of a task."""
    refs = _run(
        ctx,
        "ref list",
        format,
        lambda s: s.board.list_references(s.project_id, _resolve(s, "task", task), s.actor_id),
    )
    if format == "json":
        _emit_json("ref list", [as_dict(r) for r in refs])
    if not refs:
        typer.echo("(no references)")
    for r in refs:
        typer.echo(f"- [{r.type}] {r.title or r.url} <{r.url}> ({r.id})")


# ---- planning --------------------------------------------------------------


@plan_app.command("apply")
def plan_apply(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Roadmap file (.json/.yaml/.yml)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Apply a roadmap file to the project, all or nothing."""

    def run(s: Session):
        doc = read_document(path)
        try:
            roadmap = parse_roadmap(doc)
        except ValueError as e:
            raise InvalidState(code="E_ROADMAP_INVALID", message=str(e), entity=path) from e
        planner = PlanningOrchestrator(s.board, _FileOnlyGenerator(), timeout_s=s.settings.generator_timeout_s)
        return planner.apply(s.project_id, roadmap, s.actor_id)

    result = _run(ctx, "plan apply", format, run, save=True)
    _emit_roadmap("plan apply", format, result)


@plan_app.command("generate")
def plan_generate(
    ctx: typer.Context,
    goal: Optional[str] = typer.Option(None, "--goal"),
    constraint: list[str] = typer.Option([], "--constraint", help="Repeatable"),
    tech: list[str] = typer.Option([], "--tech", help="Preferred technology (repeatable)"),
    start: Optional[str] = typer.Option(None, "--start", help="ISO date"),
    due: Optional[str] = typer.Option(None, "--due", help="Target ISO date"),
    model: Optional[str] = typer.Option(None, "--model", help="Override the roadmap model"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Generate a roadmap with OpenAI and apply it."""

    def run(s: Session):
        planner = PlanningOrchestrator(
            s.board,
            _openai_generator(s.settings, model),
            timeout_s=s.settings.generator_timeout_s,
        )
        request = PlanRequest(
            goal=goal,
            constraints=list(constraint),
            preferred_technologies=list(tech),
            start_date=_parse_date(start, "start"),
            target_due_date=_parse_date(due, "due"),
        )
        return planner.generate_roadmap(s.project_id, request, s.actor_id)

    result = _run(ctx, "plan generate", format, run, save=True)
    _emit_roadmap("plan generate", format, result)


@plan_app.command("elaborate")
def plan_elaborate(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task id or unique prefix"),
    question: Optional[str] = typer.Option(None, "--question", "-q"),
    context: Optional[str] = typer.Option(None, "--context", help="Extra context for the assistant"),
    model: Optional[str] = typer.Option(None, "--model", help="Override the elaborate model"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Ask for guidance on one task (nothing is saved)."""

    def run(s: Session):
        planner = PlanningOrchestrator(
            s.board,
            _openai_generator(s.settings, model, role="elaborate"),
            timeout_s=s.settings.generator_timeout_s,
        )
        return planner.elaborate_task(
            s.project_id,
            _resolve(s, "task", task),
            ElaborationRequest(question=question, extra_context=context),
            s.actor_id,
        )

    result = _run(ctx, "plan elaborate", format, run)
    if format == "json":
        _emit_json("plan elaborate", as_dict(result))
    for line in result.notes:
        typer.echo(f"- {line}")


def main() -> None:
    app()


# ---- plumbing --------------------------------------------------------------


def _configure(state: CliState) -> PlannerSettings:
    settings = load_settings(state.config)
    configure_logging(settings.log_level, settings.log_format)
    return settings


def _open(state: CliState) -> Session:
    settings = _configure(state)
    ws = load_workspace(state.workspace)

    project_ids = ws.store.project_ids()
    if state.project:
        project_id = state.project
    elif len(project_ids) == 1:
        project_id = project_ids[0]
    else:
        raise ConfigError(
            code="E_PROJECT_REQUIRED",
            message=f"workspace has {len(project_ids)} projects; pass --project (one of: {', '.join(project_ids)})",
        )
    if not state.actor:
        raise ConfigError(code="E_ACTOR_REQUIRED", message="pass --actor or set PLANNER_ACTOR")

    board = BoardService(ws.store, ws.membership, LoggingNotificationSink())
    return Session(ws=ws, board=board, project_id=project_id, actor_id=state.actor, settings=settings)


def _run(ctx: typer.Context, command: str, fmt: str, fn: Callable[[Session], Any], save: bool = False) -> Any:
    _check_format(command, fmt)
    try:
        s = _open(ctx.obj)
        out = fn(s)
        if save:
            s.ws.save()
        return out
    except PlannerError as e:
        _fail(command, e, fmt)


def _check_format(command: str, fmt: str) -> None:
    if fmt not in FORMATS:
        _fail(
            command,
            ConfigError(
                code="E_UNKNOWN_FORMAT",
                message=f"unknown format: {fmt} (choose one of: {', '.join(FORMATS)})",
            ),
            "text",
        )


def _fail(command: str, e: PlannerError, fmt: str) -> NoReturn:
    if fmt == "json":
        payload = {"tool": "planner", "command": command, "ok": False, "error": e.to_dict()}
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
    else:
        typer.echo(str(e), err=True)
    raise typer.Exit(code=e.exit_code)


def _emit_json(command: str, result: Any) -> NoReturn:
    payload = {"tool": "planner", "command": command, "ok": True, "result": result}
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))
    raise typer.Exit(code=0)


def _done(command: str, fmt: str, result: Any, text: str) -> None:
    if fmt == "json":
        _emit_json(command, result)
    typer.echo(f"OK: {text}")


def _emit_roadmap(command: str, fmt: str, result: Any) -> None:
    if fmt == "json":
        _emit_json(command, as_dict(result))
    typer.echo(f"OK: {len(result.milestones)} milestone(s), {len(result.tasks)} task(s)")
    for line in result.notes:
        typer.echo(f"- {line}")


def _resolve(s: Session, kind: str, ref: str, task_id: Optional[str] = None) -> str:
    """Exact id, or a unique id prefix, of a milestone/task/subtask/reference."""
    g = s.ws.store.snapshot(s.project_id)
    if kind == "milestone":
        ids = list(g.milestones)
    elif kind == "task":
        ids = list(g.tasks)
    elif kind == "subtask":
        ids = [sid for sid, st in g.subtasks.items() if st.task_id == task_id]
    else:
        ids = [rid for rid, r in g.references.items() if r.task_id == task_id]

    if ref in ids:
        return ref
    hits = [i for i in ids if i.startswith(ref)]
    if len(hits) == 1:
        return hits[0]
    if not hits:
        raise NotFound(
            code=f"E_{kind.upper()}_NOT_FOUND",
            message=f"{kind} not found: {ref}",
            project_id=s.project_id,
        )
    raise InvalidState(
        code="E_AMBIGUOUS_ID",
        message=f"{kind} prefix {ref!r} matches {len(hits)} ids",
        project_id=s.project_id,
    )


def _parse_dt(value: Optional[str], name: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        out = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidState(code="E_INVALID_DATE", message=f"--{name}: not an ISO date: {value!r}") from e
    return out if out.tzinfo else out.replace(tzinfo=timezone.utc)


def _parse_date(value: Optional[str], name: str):
    dt = _parse_dt(value, name)
    return dt.date() if dt else None


def _openai_generator(settings: PlannerSettings, model: Optional[str], role: str = "roadmap") -> OpenAIRoadmapGenerator:
    if not os.getenv("OPENAI_API_KEY"):
        raise ConfigError(code="E_NO_API_KEY", message="OPENAI_API_KEY is not set")
    if role == "elaborate":
        return OpenAIRoadmapGenerator(
            roadmap_model=settings.model_for("roadmap"),
            elaborate_model=model or settings.model_for("elaborate"),
            base_url=settings.base_url,
        )
    return OpenAIRoadmapGenerator(
        roadmap_model=model or settings.model_for("roadmap"),
        elaborate_model=settings.model_for("elaborate"),
        base_url=settings.base_url,
    )


class _FileOnlyGenerator:
    """Stands in for the generator when a roadmap comes from a file."""

    def generate(self, context_text: str) -> str:
        raise RuntimeError("no roadmap generator configured")

    def elaborate(self, context_text: str) -> str:
        raise RuntimeError("no roadmap generator configured")


def _print_board(tasks: list[TaskView]) -> None:
    if not tasks:
        typer.echo("(no tasks)")
        return
    table = Table(title="board")
    for col in ("#", "id", "title", "status", "priority", "type", "milestone", "assignee", "subtasks", "deps"):
        table.add_column(col)
    for t in tasks:
        table.add_row(
            str(t.order_index),
            t.id[:8],
            t.title,
            t.status + (" (blocked)" if t.is_blocked and t.status != "Blocked" else ""),
            t.priority,
            t.type,
            t.milestone_title or "-",
            t.assigned_user_id or (f"[{t.assigned_role}]" if t.assigned_role else "-"),
            f"{t.completed_subtask_count}/{t.subtask_count}",
            ("ok" if t.dependencies_satisfied else "waiting") if t.dependencies else "-",
        )
    Console(width=160).print(table)


def _print_milestones(views: list[MilestoneView]) -> None:
    if not views:
        typer.echo("(no milestones)")
        return
    table = Table(title="milestones")
    for col in ("#", "id", "title", "status", "target", "done/tasks"):
        table.add_column(col)
    for m in views:
        table.add_row(
            str(m.order_index),
            m.id[:8],
            m.title,
            m.status,
            m.target_date.date().isoformat() if m.target_date else "-",
            f"{m.done_tasks_count}/{m.tasks_count}",
        )
    Console(width=160).print(table)


def _print_task(t: TaskView) -> None:
    typer.echo(f"{t.title} ({t.id})")
    typer.echo(f"  status: {t.status}{' [blocked]' if t.is_blocked else ''}  priority: {t.priority}  type: {t.type}")
    typer.echo(f"  board position: #{t.order_index}  milestone: {t.milestone_title or '-'}")
    typer.echo(f"  assignee: {t.assigned_user_id or '-'}  role: {t.assigned_role or '-'}")
    if t.due_at:
        typer.echo(f"  due: {t.due_at.isoformat()}")
    if t.description:
        typer.echo(f"  {t.description}")
    if t.subtasks:
        typer.echo(f"  subtasks ({t.completed_subtask_count}/{t.subtask_count}):")
        for st in t.subtasks:
            typer.echo(f"    [{'x' if st.is_done else ' '}] {st.title} ({st.id[:8]})")
    if t.dependencies:
        typer.echo("  depends on:")
        for d in t.dependencies:
            typer.echo(f"    - {d.depends_on_title} [{d.depends_on_status}] ({d.depends_on_task_id[:8]})")
    if t.references:
        typer.echo("  references:")
        for r in t.references:
            typer.echo(f"    - [{r.type}] {r.title or r.url} <{r.url}>")


if __name__ == "__main__":
    main()
