from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from planner_taskgraph.core.model import TASK_PRIORITIES, TASK_TYPES
from planner_taskgraph.core.planning.openai_client import (
    ROADMAP_JSON_SCHEMA,
    OpenAIRoadmapGenerator,
    _extract_output_text,
)


def _walk(obj: Any):
    if isinstance(obj, dict):
        yield obj
        for v in obj.values():
            yield from _walk(v)
    elif isinstance(obj, list):
        for v in obj:
            yield from _walk(v)


def test_roadmap_schema_is_strict_objects():
    """Structured outputs reject object schemas that allow extra keys or optional keys."""
    schema = ROADMAP_JSON_SCHEMA["schema"]

    for node in _walk(schema):
        if node.get("type") != "object":
            continue

        assert node.get("additionalProperties") is False

        props = node.get("properties")
        if isinstance(props, dict):
            req = node.get("required")
            assert isinstance(req, list), "object schema must have required list"
            missing = sorted(set(props) - {x for x in req if isinstance(x, str)})
            assert not missing, f"required missing keys: {missing}"


def test_roadmap_needs_at_least_one_milestone():
    milestones = ROADMAP_JSON_SCHEMA["schema"]["properties"]["milestones"]
    assert milestones.get("minItems") == 1


def test_task_enums_match_model():
    task = ROADMAP_JSON_SCHEMA["schema"]["properties"]["tasks"]["items"]
    assert task["properties"]["type"]["enum"] == list(TASK_TYPES)
    assert task["properties"]["priority"]["enum"] == list(TASK_PRIORITIES)


def test_generator_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        OpenAIRoadmapGenerator(roadmap_model="m").generate("CONTEXT_JSON:\n{}")


def test_extract_output_text_shapes():
    assert _extract_output_text(SimpleNamespace(output_text='{"a": 1}')) == '{"a": 1}'

    class Dumped:
        output_text = ""

        def model_dump(self):
            return {"output": [{"content": [{"text": "line one"}, {"text": "line two"}]}]}

    assert _extract_output_text(Dumped()) == "line one\nline two"

    with pytest.raises(RuntimeError):
        _extract_output_text(SimpleNamespace(output_text=None))
