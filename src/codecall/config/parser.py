"""Load, validate, and resolve codecall.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from codecall.config.models import OrchestratorConfig
from codecall.constants import AGENT_PATH_ENV, API_KEY_ENV

DEFAULT_CONFIG_NAME = "codecall.yaml"


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(
    path: Path | None = None, *, required: bool = False
) -> OrchestratorConfig:
    """Load and validate a codecall.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              codecall.yaml in the current directory.
        required: When False a missing default file yields the defaults
                  instead of an error. An explicit *path* must exist.

    Returns:
        A validated OrchestratorConfig. ``api_key`` and ``agent_path``
        fall back to ``CURSOR_API_KEY`` and ``CODECALL_AGENT_PATH``.

    Raises:
        ConfigError: On missing file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path, required=required)
    if config_path is None:
        raw: dict[str, Any] = {}
        _load_env(Path.cwd())
    else:
        raw = _read_yaml(config_path)
        _load_env(config_path.parent)
        _resolve_working_directory(raw, config_path.parent)
    _apply_env_fallbacks(raw)
    return _validate(raw)


def _resolve_path(path: Path | None, *, required: bool) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    if not default.is_file():
        if not required:
            return None
        msg = (
            f"No {DEFAULT_CONFIG_NAME} found in {Path.cwd()}. "
            "Run `codecall init` to create one."
        )
        raise ConfigError(msg)
    return default


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


def _resolve_working_directory(raw: dict[str, Any], base_dir: Path) -> None:
    """Make a relative ``working_directory`` relative to the config file."""
    wd = raw.get("working_directory")
    if not isinstance(wd, str):
        return
    resolved = (base_dir / wd).expanduser().resolve()
    if not resolved.is_dir():
        msg = f"working_directory does not exist: {wd}"
        raise ConfigError(msg)
    raw["working_directory"] = str(resolved)


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env_fallbacks(raw: dict[str, Any]) -> None:
    if not raw.get("api_key") and os.environ.get(API_KEY_ENV):
        raw["api_key"] = os.environ[API_KEY_ENV]
    if not raw.get("agent_path") and os.environ.get(AGENT_PATH_ENV):
        raw["agent_path"] = os.environ[AGENT_PATH_ENV]


def _validate(raw: dict[str, Any]) -> OrchestratorConfig:
    try:
        return OrchestratorConfig.model_validate(raw)
    except ValidationError as exc:
        parts: list[str] = []
        for err in exc.errors():
            loc = " → ".join(str(s) for s in err["loc"]) or "config"
            msg = err["msg"]
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            elif "extra inputs are not permitted" in msg.lower():
                msg = "Unknown setting"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc
