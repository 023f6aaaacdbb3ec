from __future__ import annotations

import os
from typing import Any, Optional

from openai import OpenAI

from planner_taskgraph.core.model import TASK_PRIORITIES, TASK_TYPES
from planner_taskgraph.core.planning.prompts import ELABORATE_SYSTEM_PROMPT, ROADMAP_SYSTEM_PROMPT


# OpenAI Structured Outputs requirements:
# - For ALL object schemas, `additionalProperties` MUST be present and MUST be false.
# - For ALL object schemas, `required` MUST include EVERY key in `properties`.
# Optional roadmap fields are therefore nullable rather than omitted.


SUBTASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "title": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "order_index": {"type": "integer"},
    },
    "required": ["title", "description", "order_index"],
}


MILESTONE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "title": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "order_index": {"type": "integer"},
        "days_from_start": {"type": ["integer", "null"]},
    },
    "required": ["title", "description", "order_index", "days_from_start"],
}


TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "title": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "type": {"type": "string", "enum": list(TASK_TYPES)},
        "priority": {"type": "string", "enum": list(TASK_PRIORITIES)},
        "milestone_index": {"type": ["integer", "null"]},
        "assigned_role": {"type": ["string", "null"]},
        "order_index": {"type": "integer"},
        "days_from_start": {"type": ["integer", "null"]},
        "subtasks": {"type": "array", "items": SUBTASK_SCHEMA},
    },
    "required": [
        "title",
        "description",
        "type",
        "priority",
        "milestone_index",
        "assigned_role",
        "order_index",
        "days_from_start",
        "subtasks",
    ],
}


ROADMAP_JSON_SCHEMA: dict[str, Any] = {
    "name": "roadmap",
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "milestones": {"type": "array", "minItems": 1, "items": MILESTONE_SCHEMA},
            "tasks": {"type": "array", "items": TASK_SCHEMA},
            "notes": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["milestones", "tasks", "notes"],
    },
}


class OpenAIRoadmapGenerator:
    """ExternalRoadmapGenerator over the OpenAI Responses API."""

    def __init__(
        self,
        *,
        roadmap_model: str,
        elaborate_model: Optional[str] = None,
        base_url: str | None = None,
    ) -> None:
        self._roadmap_model = roadmap_model
        self._elaborate_model = elaborate_model or roadmap_model
        self._base_url = base_url

    def generate(self, context_text: str) -> str:
        """Roadmap JSON text, constrained by ROADMAP_JSON_SCHEMA."""
        client = self._client()
        resp = client.responses.create(
            model=self._roadmap_model,
            input=[
                {"role": "system", "content": ROADMAP_SYSTEM_PROMPT},
                {"role": "user", "content": context_text + "\nReturn only the JSON roadmap."},
            ],
            text={
                "format": {
                    "type": "json_schema",
                    "name": ROADMAP_JSON_SCHEMA["name"],
                    "schema": ROADMAP_JSON_SCHEMA["schema"],
                    "strict": True,
                }
            },
        )
        return _extract_output_text(resp)

    def elaborate(self, context_text: str) -> str:
        client = self._client()
        resp = client.responses.create(
            model=self._elaborate_model,
            input=[
                {"role": "system", "content": ELABORATE_SYSTEM_PROMPT},
                {"role": "user", "content": context_text},
            ],
        )
        return _extract_output_text(resp)

    def _client(self) -> OpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is not set")

        return OpenAI(base_url=self._base_url) if self._base_url else OpenAI()


def _extract_output_text(resp: Any) -> str:
    """Extract response text robustly across OpenAI SDK response shapes."""
    raw = getattr(resp, "output_text", None)
    if isinstance(raw, str) and raw.strip():
        return raw

    dump = resp.model_dump() if hasattr(resp, "model_dump") else None
    if isinstance(dump, dict):
        texts: list[str] = []
        for item in dump.get("output") or []:
            if not isinstance(item, dict):
                continue
            for c in item.get("content") or []:
                if isinstance(c, dict) and isinstance(c.get("text"), str) and c["text"].strip():
                    texts.append(c["text"])
        if texts:
            return "\n".join(texts)

    raise RuntimeError("model response contained no text output")
