"""Configuration loading for deploywatch.

Reads the YAML config, fills missing credentials from the environment and
validates everything into a frozen WatchConfig. Nothing downstream parses
configuration again.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pydantic
import yaml

from deploywatch.core.models import WatchConfig, parse_duration

DEFAULT_CONFIG_NAME = "config.yml"

ENV_ACCESS_TOKEN = "DEPLOYWATCH_GIT_AUTH_ACCESS_TOKEN"
ENV_PASSWORD = "DEPLOYWATCH_GIT_AUTH_PASSWORD"
ENV_USER = "DEPLOYWATCH_GIT_AUTH_USER"

__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "load_config",
    "load_config_from_string",
    "parse_duration",
]


class ConfigError(Exception):
    """Configuration is missing, unreadable or invalid."""

    pass


def default_config_path() -> Path:
    return Path.cwd() / DEFAULT_CONFIG_NAME


def load_config(
    path: Path,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> WatchConfig:
    """Load and validate a config file.

    Raises:
        ConfigError: If the file cannot be read or does not validate.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Could not read configuration file {path}: {e}") from e
    return load_config_from_string(text, env=env, cwd=cwd, source=str(path))


def load_config_from_string(
    text: str,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    source: str = "<string>",
) -> WatchConfig:
    """Parse YAML text into a WatchConfig.

    Args:
        text: YAML document
        env: Environment used for credential fallbacks (default: os.environ)
        cwd: Base for a relative clone_directory (default: current directory)
        source: Name used in error messages
    """
    env = os.environ if env is None else env
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid configuration in {source}: expected a mapping, got {type(data).__name__}"
        )

    data = _apply_environment(data, env)
    data = _resolve_clone_directory(data, cwd or Path.cwd())

    try:
        return WatchConfig.model_validate(data)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration in {source}: {details}") from e


def _apply_environment(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Fill each project's missing auth fields from the environment.

    Config values always win over environment values.
    """
    projects = data.get("projects")
    if not isinstance(projects, dict):
        return data

    fallbacks = {
        "access_token": env.get(ENV_ACCESS_TOKEN),
        "password": env.get(ENV_PASSWORD),
        "user": env.get(ENV_USER),
    }
    fallbacks = {key: value for key, value in fallbacks.items() if value}
    if not fallbacks:
        return data

    resolved = {}
    for name, project in projects.items():
        if isinstance(project, dict):
            auth = project.get("auth") or {}
            if isinstance(auth, dict):
                merged = dict(auth)
                for key, value in fallbacks.items():
                    if not merged.get(key):
                        merged[key] = value
                project = {**project, "auth": merged}
        resolved[name] = project
    return {**data, "projects": resolved}


def _resolve_clone_directory(data: dict[str, Any], cwd: Path) -> dict[str, Any]:
    clone_directory = data.get("clone_directory")
    if not clone_directory or not isinstance(clone_directory, (str, Path)):
        return data
    path = Path(clone_directory).expanduser()
    if not path.is_absolute():
        path = cwd / path
    return {**data, "clone_directory": path}
