"""Project configuration: JSON files under the state dir, overridden by STEWARD_* env vars."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

from .models.chat import ChatMode
from .project import STATE_DIR_NAME, RuntimePaths


class ConfigError(ValueError):
    pass


class StewardConfig(BaseModel):
    state_dir: str = STATE_DIR_NAME
    default_mode: ChatMode = ChatMode.NONE
    assistant_name: str | None = None
    elapsed_interval_s: float | None = Field(default=0.1, gt=0)
    approval_dismiss_s: float = Field(default=2.5, ge=0)
    turn_timeout_s: float | None = Field(default=300.0, gt=0)
    event_log_enabled: bool = True

    @field_validator("state_dir")
    @classmethod
    def _non_empty_state_dir(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("state_dir must be a non-empty string.")
        return v.strip()

    @field_validator("assistant_name")
    @classmethod
    def _strip_assistant_name(cls, v: str | None) -> str | None:
        if v is None:
            return None
        s = v.strip()
        return s or None

    def paths(self, project_root: Path) -> RuntimePaths:
        return RuntimePaths.for_project(project_root, state_dir=self.state_dir)


_ENV_PREFIX = "STEWARD_"

_ENV_FIELDS: dict[str, str] = {
    "STATE_DIR": "state_dir",
    "DEFAULT_MODE": "default_mode",
    "ASSISTANT_NAME": "assistant_name",
    "ELAPSED_INTERVAL_S": "elapsed_interval_s",
    "APPROVAL_DISMISS_S": "approval_dismiss_s",
    "TURN_TIMEOUT_S": "turn_timeout_s",
    "EVENT_LOG_ENABLED": "event_log_enabled",
}

_NULLABLE_FIELDS = {"elapsed_interval_s", "turn_timeout_s", "assistant_name"}


def load_config(project_root: Path, *, environ: Mapping[str, str] | None = None) -> StewardConfig:
    """
    Resolve config for a project.

    Precedence (lowest to highest): defaults, `<state>/config.json`,
    `<state>/config.local.json`, `STEWARD_*` environment variables.
    """

    env = os.environ if environ is None else environ
    root = Path(project_root).expanduser().resolve()

    state_dir = env.get(f"{_ENV_PREFIX}STATE_DIR") or STATE_DIR_NAME
    base = RuntimePaths.for_project(root, state_dir=state_dir).state_dir
    merged = _merge_dicts(_load_json_file(base / "config.json"), _load_json_file(base / "config.local.json"))

    for env_name, field_name in _ENV_FIELDS.items():
        raw = env.get(_ENV_PREFIX + env_name)
        if raw is None:
            continue
        value = raw.strip()
        if field_name in _NULLABLE_FIELDS and value.lower() in {"", "none", "null", "off"}:
            merged[field_name] = None
            continue
        merged[field_name] = value

    try:
        return StewardConfig.model_validate(merged)
    except ValueError as e:
        raise ConfigError(f"Invalid steward config: {e}") from e


def _load_json_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object.")
    return raw


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged
