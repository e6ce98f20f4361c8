"""Load, validate, and resolve agentbridge.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from agentbridge.config.models import BridgeConfig

DEFAULT_CONFIG_NAME = "agentbridge.yaml"

#: Environment variables that override individual config fields.
_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "AGENTBRIDGE_BACKEND": ("backend",),
    "AGENTBRIDGE_CODEX_MODEL": ("codex", "model"),
    "AGENTBRIDGE_CODEX_APPROVAL": ("codex", "approval_policy"),
    "AGENTBRIDGE_CODEX_SANDBOX": ("codex", "sandbox"),
    "AGENTBRIDGE_TRAE_DIR": ("trae", "agent_dir"),
}


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> BridgeConfig:
    """Load and validate an agentbridge.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              agentbridge.yaml in the current directory and falls back
              to defaults when there is none.

    Returns:
        A validated BridgeConfig instance.

    Raises:
        ConfigError: On missing explicit file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path)
    if config_path is None:
        raw: dict[str, Any] = {}
        _load_env(Path.cwd())
    else:
        raw = _read_yaml(config_path)
        _load_env(config_path.parent)
    _apply_env_overrides(raw)
    return _validate(raw)


def _resolve_path(path: Path | None) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    return default if default.is_file() else None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)
    return data


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env_overrides(raw: dict[str, Any]) -> None:
    for env_name, keys in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if not value:
            continue
        target = raw
        for key in keys[:-1]:
            section = target.get(key)
            if not isinstance(section, dict):
                section = {}
                target[key] = section
            target = section
        target[keys[-1]] = value


def _validate(raw: dict[str, Any]) -> BridgeConfig:
    try:
        return BridgeConfig.model_validate(raw)
    except ValidationError as exc:
        parts: list[str] = []
        for err in exc.errors():
            loc = " → ".join(str(s) for s in err["loc"])
            msg = err["msg"]
            if "extra inputs" in msg.lower():
                msg = "Unknown setting"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc
