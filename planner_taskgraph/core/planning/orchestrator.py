from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable

import structlog

from planner_taskgraph.core.collaborators import ExternalRoadmapGenerator
from planner_taskgraph.core.errors import GenerationFailed, InvalidState, PlannerError
from planner_taskgraph.core.model import MilestoneView, TaskView
from planner_taskgraph.core.planning.applier import ApplyRoadmapResult, apply_roadmap
from planner_taskgraph.core.planning.contracts import Roadmap, load_roadmap
from planner_taskgraph.core.planning.prompts import (
    ElaborationRequest,
    PlanRequest,
    build_elaboration_context,
    build_roadmap_context,
    render_context,
    split_notes,
)
from planner_taskgraph.core.service import BoardService

logger = structlog.get_logger()


@dataclass(frozen=True)
class RoadmapResult:
    milestones: list[MilestoneView]
    tasks: list[TaskView]
    notes: list[str]


@dataclass(frozen=True)
class ElaborationResult:
    task_id: str
    notes: list[str]


class PlanningOrchestrator:
    """Builds generator context from project and team data and applies the answer."""

    def __init__(
        self,
        board: BoardService,
        generator: ExternalRoadmapGenerator,
        *,
        timeout_s: float = 120.0,
    ) -> None:
        self.board = board
        self.generator = generator
        self.timeout_s = timeout_s

    def generate_roadmap(self, project_id: str, request: PlanRequest, actor_id: str) -> RoadmapResult:
        board = self.board
        with structlog.contextvars.bound_contextvars(project_id=project_id, actor_id=actor_id):
            board.access.planner(project_id, actor_id)
            project = board.store.project(project_id)
            members = board.membership.get_active_members(project_id)

            context = build_roadmap_context(project, members, request)
            text = self._call("generate", self.generator.generate, render_context(context))
            roadmap = load_roadmap(text)
            return self._apply(project_id, roadmap, actor_id, generated=True)

    def apply(self, project_id: str, roadmap: Roadmap, actor_id: str) -> RoadmapResult:
        """Apply an already parsed roadmap, e.g. one read from a file."""
        with structlog.contextvars.bound_contextvars(project_id=project_id, actor_id=actor_id):
            self.board.access.planner(project_id, actor_id)
            return self._apply(project_id, roadmap, actor_id)

    def _apply(self, project_id: str, roadmap: Roadmap, actor_id: str, *, generated: bool = False) -> RoadmapResult:
        board = self.board
        members = board.membership.get_active_members(project_id)

        try:
            applied: ApplyRoadmapResult = apply_roadmap(
                board.store,
                project_id,
                roadmap,
                actor_id=actor_id,
                active_members=members,
            )
        except InvalidState as e:
            if not generated or e.code != "E_ROADMAP_INCONSISTENT":
                raise
            raise GenerationFailed(code=e.code, message=e.message, project_id=project_id) from e
        except PlannerError:
            raise
        except Exception as e:
            logger.warning("roadmap_apply_failed", reason=str(e))
            raise GenerationFailed(
                code="E_ROADMAP_INVALID",
                message=f"roadmap could not be applied: {str(e) or type(e).__name__}",
                project_id=project_id,
            ) from e

        for view in applied.tasks:
            board.notify_task_created(view, actor_id)

        notes = [
            f"Generated {len(applied.milestones)} milestones and {len(applied.tasks)} tasks using AI planning.",
            *roadmap.notes,
            *applied.notes,
            "Review and adjust the plan as needed for your specific project requirements.",
        ]
        return RoadmapResult(milestones=applied.milestones, tasks=applied.tasks, notes=notes)

    def elaborate_task(
        self,
        project_id: str,
        task_id: str,
        request: ElaborationRequest,
        actor_id: str,
    ) -> ElaborationResult:
        board = self.board
        with structlog.contextvars.bound_contextvars(project_id=project_id, actor_id=actor_id):
            board.access.member(project_id, actor_id)
            project = board.store.project(project_id)
            task = board.store.get_task(project_id, task_id)
            members = board.membership.get_active_members(project_id)

            context = build_elaboration_context(project, task, members, request)
            text = self._call("elaborate", self.generator.elaborate, render_context(context))
            notes = split_notes(text)
            if not notes:
                raise GenerationFailed(
                    code="E_EMPTY_RESPONSE",
                    message="generator returned no guidance",
                    project_id=project_id,
                    entity=f"task:{task_id}",
                )
            logger.info("task_elaborated", task_id=task_id, notes=len(notes))
            return ElaborationResult(task_id=task_id, notes=notes)

    def _call(self, kind: str, fn: Callable[[str], str], context_text: str) -> str:
        """Run one generator call on a worker thread, bounded by `timeout_s`."""
        ex = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"planner-{kind}")
        try:
            fut = ex.submit(fn, context_text)
            try:
                text = fut.result(timeout=self.timeout_s)
            except FutureTimeout as e:
                logger.warning("generation_failed", kind=kind, reason="timeout", timeout_s=self.timeout_s)
                raise GenerationFailed(
                    code="E_GENERATOR_TIMEOUT",
                    message=f"generator did not answer within {self.timeout_s:g}s",
                ) from e
            except PlannerError:
                raise
            except Exception as e:
                logger.warning("generation_failed", kind=kind, reason=str(e))
                raise GenerationFailed(code="E_GENERATOR_FAILED", message=str(e) or type(e).__name__) from e
        finally:
            # Never wait on a stuck generator; the late answer is simply dropped.
            ex.shutdown(wait=False, cancel_futures=True)

        if not isinstance(text, str) or not text.strip():
            raise GenerationFailed(code="E_EMPTY_RESPONSE", message="generator returned an empty response")
        return text

