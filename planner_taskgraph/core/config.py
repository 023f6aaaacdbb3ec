from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from planner_taskgraph.core.errors import ConfigError


LOG_LEVELS: set[str] = {"debug", "info", "warning", "error"}
LOG_FORMATS: set[str] = {"console", "json"}


@dataclass(frozen=True)
class PlannerSettings:
    model: str = "gpt-5-mini"
    roadmap_model: Optional[str] = None
    elaborate_model: Optional[str] = None
    generator_timeout_s: float = 120.0
    base_url: Optional[str] = None
    log_level: str = "warning"
    log_format: str = "console"

    def model_for(self, role: str) -> str:
        """Model for a generator role ("roadmap", "elaborate").

        Resolution order:
          1) OPENAI_MODEL_<ROLE>
          2) <role>_model from the config file
          3) model
        """
        override = (os.getenv(_role_env_key(role), "") or "").strip()
        if override:
            return override
        per_role = getattr(self, f"{role}_model", None)
        return per_role or self.model


# Environment variable -> settings field.
ENV_KEYS: dict[str, str] = {
    "OPENAI_MODEL": "model",
    "OPENAI_BASE_URL": "base_url",
    "PLANNER_GENERATOR_TIMEOUT": "generator_timeout_s",
    "PLANNER_LOG_LEVEL": "log_level",
    "PLANNER_LOG_FORMAT": "log_format",
}


def _role_env_key(role: str) -> str:
    """Map a role name to a role-specific env var key.

    Examples:
      - roadmap -> OPENAI_MODEL_ROADMAP
      - task-elaborate -> OPENAI_MODEL_TASK_ELABORATE
    """
    role_key = re.sub(r"[^A-Za-z0-9]+", "_", role).strip("_").upper()
    return f"OPENAI_MODEL_{role_key}"


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load settings overrides from a YAML file.

    Format: a flat mapping of PlannerSettings field names to values.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(code="E_FILE_NOT_FOUND", message=f"config file does not exist: {p}")
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(code="E_YAML_PARSE", message=str(e)) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(code="E_INVALID_TOP_LEVEL", message="config file must be a mapping")

    known = {f.name for f in fields(PlannerSettings)}
    unknown = sorted(str(k) for k in raw if k not in known)
    if unknown:
        raise ConfigError(
            code="E_UNKNOWN_SETTING",
            message=f"unknown settings: {', '.join(unknown)} (allowed: {', '.join(sorted(known))})",
        )
    return dict(raw)


def merged_settings(
    overrides: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> PlannerSettings:
    """Defaults, then file overrides, then environment variables."""
    values: dict[str, Any] = {}
    if overrides:
        values.update(overrides)

    environ = os.environ if env is None else env
    for key, field_name in ENV_KEYS.items():
        v = (environ.get(key, "") or "").strip()
        if v:
            values[field_name] = v

    return _coerce(replace(PlannerSettings(), **values))


def load_settings(config_file: str | None = None) -> PlannerSettings:
    if not config_file:
        config_file = os.getenv("PLANNER_CONFIG") or None
    overrides = load_config_file(config_file) if config_file else None
    return merged_settings(overrides)


def _coerce(s: PlannerSettings) -> PlannerSettings:
    try:
        timeout = float(s.generator_timeout_s)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            code="E_INVALID_SETTING",
            message=f"generator_timeout_s must be a number, got {s.generator_timeout_s!r}",
        ) from e
    if timeout <= 0:
        raise ConfigError(code="E_INVALID_SETTING", message="generator_timeout_s must be > 0")

    level = str(s.log_level).strip().lower()
    if level not in LOG_LEVELS:
        raise ConfigError(
            code="E_INVALID_SETTING",
            message=f"log_level must be one of {', '.join(sorted(LOG_LEVELS))}",
        )
    fmt = str(s.log_format).strip().lower()
    if fmt not in LOG_FORMATS:
        raise ConfigError(
            code="E_INVALID_SETTING",
            message=f"log_format must be one of {', '.join(sorted(LOG_FORMATS))}",
        )
    if not isinstance(s.model, str) or not s.model.strip():
        raise ConfigError(code="E_INVALID_SETTING", message="model must be a non-empty string")

    return replace(s, generator_timeout_s=timeout, log_level=level, log_format=fmt)
