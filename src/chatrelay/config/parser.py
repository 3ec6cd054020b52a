"""Load, validate, and resolve chatrelay.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from chatrelay.config.models import RelayConfig

DEFAULT_CONFIG_NAME = "chatrelay.yaml"

#: Environment variables that override string fields of the config file.
_ENV_OVERRIDES = {
    "CHATRELAY_BACKEND": "backend",
    "CHATRELAY_EXECUTABLE": "executable",
    "CHATRELAY_WORKING_DIR": "working_dir",
    "CHATRELAY_SYSTEM_PROMPT_FILE": "system_prompt_file",
}


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> RelayConfig:
    """Load and validate chatrelay configuration.

    Args:
        path: Explicit config file path. If None, uses chatrelay.yaml in
              the current directory when present and defaults otherwise.

    Returns:
        A validated RelayConfig with ``system_prompt_file`` made absolute.

    Raises:
        ConfigError: On missing explicit file, bad YAML, a bad environment
            override, or validation failure.
    """
    config_path = _resolve_path(path)
    if config_path is None:
        base_dir = Path.cwd()
        raw: dict[str, Any] = {}
    else:
        base_dir = config_path.parent
        raw = _read_yaml(config_path)
    _load_env(base_dir)
    _apply_env_overrides(raw)
    config = _validate(raw)
    return _resolve_paths(config, base_dir)


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
        mark = getattr(exc, "problem_mark", None)
        if mark is not None:
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
    for var, key in _ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            raw[key] = value

    # CHATRELAY_IDLE_TIMEOUT (seconds) wins over the millisecond variable.
    seconds = os.environ.get("CHATRELAY_IDLE_TIMEOUT")
    millis = os.environ.get("SESSION_IDLE_TIMEOUT_MS")
    if seconds:
        raw["idle_timeout"] = _parse_number("CHATRELAY_IDLE_TIMEOUT", seconds)
    elif millis:
        raw["idle_timeout"] = _parse_number("SESSION_IDLE_TIMEOUT_MS", millis) / 1000


def _parse_number(var: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        msg = f"{var} must be a number, got {value!r}"
        raise ConfigError(msg) from exc


def _validate(raw: dict[str, Any]) -> RelayConfig:
    try:
        return RelayConfig.model_validate(raw)
    except ValidationError as exc:
        parts: list[str] = []
        for err in exc.errors():
            loc = " -> ".join(str(s) for s in err["loc"]) or "config"
            msg = err["msg"]
            if "extra inputs are not permitted" in msg.lower():
                msg = "Unknown setting"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc


def _resolve_paths(config: RelayConfig, base_dir: Path) -> RelayConfig:
    if config.system_prompt_file is None:
        return config
    prompt_path = Path(config.system_prompt_file).expanduser()
    if not prompt_path.is_absolute():
        prompt_path = (base_dir / prompt_path).resolve()
    return config.model_copy(update={"system_prompt_file": str(prompt_path)})
