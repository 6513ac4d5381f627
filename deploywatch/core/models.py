"""Data models for deploywatch.

Configuration is validated once with Pydantic into frozen models; the watch
core only ever sees these. Runtime state uses plain dataclasses.
"""

import math
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_AUTH_USER = "deploywatch"

_SECONDS_ONLY = re.compile(r"^\d+(?:\.\d+)?$")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as ``"10s"``, ``"1m30s"`` or ``"500ms"``.

    Plain numbers are taken as seconds. The result must be strictly positive.
    """
    if isinstance(value, timedelta):
        duration = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Invalid duration: {value!r}")
        duration = timedelta(seconds=value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Duration must not be empty")
        if _SECONDS_ONLY.match(text):
            duration = timedelta(seconds=float(text))
        else:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ValueError(f"Invalid duration: {value!r}")
            duration = timedelta(seconds=seconds)
    else:
        raise ValueError(f"Invalid duration: {value!r}")

    if duration <= timedelta(0):
        raise ValueError(f"Duration must be positive, got {value!r}")
    return duration


# --- Configuration Models ---


class GitAuth(BaseModel):
    """Credentials for one project's remote.

    An access token takes precedence over a password; both are sent as the
    secret half of HTTP basic auth.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    user: str | None = None
    # Secrets stay out of repr so they never reach the logs
    password: str | None = Field(default=None, repr=False)
    access_token: str | None = Field(default=None, repr=False)

    def basic_credentials(self) -> tuple[str, str] | None:
        """Return ``(username, secret)`` or None when no secret is configured."""
        secret = self.access_token or self.password
        if not secret:
            return None
        return self.user or DEFAULT_AUTH_USER, secret


class BranchConfig(BaseModel):
    """A watched branch and its ordered deployment steps."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    steps: tuple[str, ...] = ()

    @field_validator("steps", mode="before")
    @classmethod
    def validate_steps(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            raise ValueError("steps must be a list of shell commands, not a single string")
        return v

    @field_validator("steps")
    @classmethod
    def reject_blank_steps(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for index, step in enumerate(v, start=1):
            if not step.strip():
                raise ValueError(f"Step {index} is empty")
        return v


class ProjectConfig(BaseModel):
    """A repository and the branches watched in it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    clone_url: str = Field(min_length=1)
    fetch_interval: timedelta
    auth: GitAuth = Field(default_factory=GitAuth)
    branches: dict[str, BranchConfig]

    @field_validator("fetch_interval", mode="before")
    @classmethod
    def validate_fetch_interval(cls, v):
        return parse_duration(v)

    @model_validator(mode="before")
    @classmethod
    def name_branches(cls, data: Any) -> Any:
        """Fill each branch's name from its mapping key."""
        if not isinstance(data, dict):
            return data
        branches = data.get("branches")
        if not isinstance(branches, dict):
            return data
        named = {}
        for branch_name, branch in branches.items():
            if branch is None:
                branch = {}
            if isinstance(branch, dict):
                branch = {"name": branch_name, **branch}
            named[branch_name] = branch
        return {**data, "branches": named}

    @model_validator(mode="after")
    def check_branches(self) -> "ProjectConfig":
        if not self.branches:
            raise ValueError(f"Project '{self.name}' must watch at least one branch")
        for key, branch in self.branches.items():
            if key != branch.name:
                raise ValueError(f"Branch key '{key}' does not match branch name '{branch.name}'")
        return self


class WatchConfig(BaseModel):
    """Top-level configuration: where clones live and what to watch."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    clone_directory: Path
    git_timeout: timedelta = timedelta(minutes=5)
    projects: dict[str, ProjectConfig]

    @field_validator("git_timeout", mode="before")
    @classmethod
    def validate_git_timeout(cls, v):
        return parse_duration(v)

    @model_validator(mode="before")
    @classmethod
    def name_projects(cls, data: Any) -> Any:
        """Fill each project's name from its mapping key."""
        if not isinstance(data, dict):
            return data
        projects = data.get("projects")
        if not isinstance(projects, dict):
            return data
        named = {}
        for project_name, project in projects.items():
            if isinstance(project, dict):
                project = {"name": project_name, **project}
            named[project_name] = project
        return {**data, "projects": named}

    @model_validator(mode="after")
    def check_projects(self) -> "WatchConfig":
        if not self.projects:
            raise ValueError("At least one project must be configured")
        return self


# --- Runtime Models ---


class FetchResult(str, Enum):
    """Outcome of a fetch+merge that did not fail."""

    CHANGED = "changed"  # Fetch brought new refs and the merge ran
    UP_TO_DATE = "up_to_date"  # Nothing new on the remote


class IterationOutcome(str, Enum):
    """What a single watcher iteration ended up doing."""

    UP_TO_DATE = "up_to_date"
    HEAD_UNCHANGED = "head_unchanged"  # Only unrelated refs/tags moved
    DEPLOYED = "deployed"
    ROLLED_BACK = "rolled_back"


class WatchStatus(str, Enum):
    """Lifecycle status of a branch watcher."""

    IDLE = "idle"
    FETCHING = "fetching"
    DEPLOYING = "deploying"
    ROLLING_BACK = "rolling_back"
    STOPPED = "stopped"


@dataclass
class WatchState:
    """In-memory state of one branch watcher. Never persisted."""

    project: str
    branch: str
    status: WatchStatus = WatchStatus.IDLE
    last_head: str | None = None
    iterations: int = 0
    deployments: int = 0
    rollbacks: int = 0
    failed_iterations: int = 0


@dataclass
class StepRunResult:
    """Result of running a branch's steps.

    should_continue is False when a step exited non-zero; the caller is
    expected to roll back.
    """

    completed: int
    total: int
    should_continue: bool
    failed_step: str | None = None
    returncode: int | None = None
