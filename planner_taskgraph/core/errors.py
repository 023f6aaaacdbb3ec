from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional


@dataclass(eq=False)
class PlannerError(Exception):
    """Base error envelope. Every failure surfaced by the engine is one of these."""

    code: str
    message: str
    project_id: Optional[str] = None
    entity: Optional[str] = None

    http_status: ClassVar[int] = 500
    exit_code: ClassVar[int] = 2

    def __str__(self) -> str:
        parts: list[str] = []
        if self.project_id:
            parts.append(f"project:{self.project_id}")
        if self.entity:
            parts.append(self.entity)
        loc = "/".join(parts) if parts else "<planner>"
        return f"{loc}: {self.code}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "project_id": self.project_id,
            "entity": self.entity,
            "kind": type(self).__name__,
            "http_status": self.http_status,
        }


class NotFound(PlannerError):
    http_status = 404
    exit_code = 1


class Conflict(PlannerError):
    http_status = 400


class InvalidState(PlannerError):
    http_status = 400


class Unauthorized(PlannerError):
    """Caller is not an active member of the project."""

    http_status = 401
    exit_code = 3


class Forbidden(Unauthorized):
    """Caller is a member but lacks the admin/mentor role."""

    http_status = 403


class GenerationFailed(PlannerError):
    """The external generator failed, timed out, or returned unusable output."""

    http_status = 500


class WorkspaceLoadError(PlannerError):
    exit_code = 1


class ConfigError(PlannerError):
    exit_code = 2


class BoardValidationError(PlannerError):
    """One invariant violation found by the board checker (returned, not raised)."""

    http_status = 400
    exit_code = 1
