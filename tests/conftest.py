# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the deploywatch test suite.

This module provides:
- Real git "remote" repositories built under tmp_path (for @pytest.mark.git tests)
- Sample configurations
- In-memory fake repositories and step executors for watcher/supervisor tests

Usage:
    Fixtures are discovered by pytest automatically.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from deploywatch.core.models import (
    BranchConfig,
    FetchResult,
    ProjectConfig,
    StepRunResult,
    WatchConfig,
)

# =============================================================================
# Git Repository Fixtures
# =============================================================================


def _git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


class GitRemote:
    """A bare repository plus a seed checkout used to push new commits."""

    def __init__(self, root: Path):
        self.bare = root / "remote.git"
        self.seed = root / "seed"
        self.url = str(self.bare)

        _git("init", "--bare", str(self.bare), cwd=root)
        _git("init", str(self.seed), cwd=root)
        _git("config", "user.email", "test@example.com", cwd=self.seed)
        _git("config", "user.name", "Test User", cwd=self.seed)
        _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=self.seed)
        self.current_branch = "main"
        _git("remote", "add", "origin", self.url, cwd=self.seed)
        self.commit("README.md", "# Test Project\n", message="Initial commit")

    def commit(
        self, filename: str, content: str, message: str = "Update", branch: str = "main"
    ) -> str:
        """Commit a file on ``branch`` and push it. Returns the new commit hash."""
        if branch != self.current_branch:
            _git("checkout", branch, cwd=self.seed)
            self.current_branch = branch
        (self.seed / filename).write_text(content)
        _git("add", filename, cwd=self.seed)
        _git("commit", "-m", message, cwd=self.seed)
        _git("push", "origin", branch, cwd=self.seed)
        return _git("rev-parse", "HEAD", cwd=self.seed)

    def create_branch(self, branch: str, start: str = "main") -> None:
        _git("checkout", "-b", branch, start, cwd=self.seed)
        self.current_branch = branch
        _git("push", "origin", branch, cwd=self.seed)

    def tag(self, name: str) -> None:
        _git("tag", name, cwd=self.seed)
        _git("push", "origin", name, cwd=self.seed)

    def head(self, branch: str = "main") -> str:
        return _git("rev-parse", branch, cwd=self.seed)


@pytest.fixture
def git_remote(tmp_path: Path) -> GitRemote:
    """Create a bare remote with one commit on ``main``.

    WARNING: Runs actual git commands. Skips when git is unavailable.
    """
    if shutil.which("git") is None:
        pytest.skip("Git not available")
    try:
        return GitRemote(tmp_path)
    except subprocess.CalledProcessError:
        pytest.skip("Git not available")


# =============================================================================
# Configuration Fixtures
# =============================================================================


SAMPLE_CONFIG_YAML = """\
clone_directory: ".deploywatch"
projects:
  webapp:
    fetch_interval: "10s"
    clone_url: "https://example.com/acme/webapp.git"
    branches:
      main:
        steps:
          - echo "Hooray"
      staging:
        steps: []
"""


@pytest.fixture
def sample_config_yaml() -> str:
    return SAMPLE_CONFIG_YAML


@pytest.fixture
def make_project():
    """Factory for ProjectConfig instances."""

    def _make(
        name: str = "webapp",
        branches: dict[str, Iterable[str]] | None = None,
        interval: float = 0.01,
        clone_url: str = "https://example.com/acme/webapp.git",
    ) -> ProjectConfig:
        branches = branches if branches is not None else {"main": ["echo deploy"]}
        return ProjectConfig(
            name=name,
            clone_url=clone_url,
            fetch_interval=timedelta(seconds=interval),
            branches={
                branch: BranchConfig(name=branch, steps=tuple(steps))
                for branch, steps in branches.items()
            },
        )

    return _make


@pytest.fixture
def make_config(tmp_path: Path, make_project):
    """Factory for WatchConfig instances rooted in tmp_path."""

    def _make(*projects: ProjectConfig) -> WatchConfig:
        projects = projects or (make_project(),)
        return WatchConfig(
            clone_directory=tmp_path / "clones",
            projects={project.name: project for project in projects},
        )

    return _make


# =============================================================================
# Fake Collaborators
# =============================================================================


class FakeRepository:
    """Scripted in-memory stand-in for GitRepository.

    ``outcomes`` is consumed one per fetch_and_merge call. Each entry is:
    - FetchResult.UP_TO_DATE
    - a commit hash string: the merge moves HEAD there (CHANGED)
    - FetchResult.CHANGED: merge ran but HEAD stays put (tag-only update)
    - an Exception instance: raised from fetch_and_merge
    Once exhausted, every further fetch is UP_TO_DATE.
    """

    def __init__(self, head: str = "a" * 40, outcomes: Iterable[Any] = (), path: Path | None = None):
        self.current_head = head
        self.outcomes = list(outcomes)
        self.path = path or Path(".")
        self.fetch_calls = 0
        self.resets: list[str | None] = []

    def head(self) -> str:
        return self.current_head

    def fetch_and_merge(self) -> FetchResult:
        self.fetch_calls += 1
        if not self.outcomes:
            return FetchResult.UP_TO_DATE
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is FetchResult.UP_TO_DATE or outcome is FetchResult.CHANGED:
            return outcome
        self.current_head = outcome
        return FetchResult.CHANGED

    def hard_reset(self, commit: str | None = None) -> None:
        self.resets.append(commit)
        if commit is not None:
            self.current_head = commit


class FakeExecutor:
    """Records step runs; ``fail_at`` is the 1-based index of a failing step."""

    def __init__(self, fail_at: int | None = None, gate: asyncio.Event | None = None):
        self.fail_at = fail_at
        self.gate = gate
        self.runs: list[tuple[tuple[str, ...], dict[str, str]]] = []
        self.workdirs: list[Path] = []

    async def run(self, steps, workdir, env=None) -> StepRunResult:
        self.runs.append((tuple(steps), dict(env or {})))
        self.workdirs.append(workdir)
        if self.gate is not None:
            await self.gate.wait()
        total = len(steps)
        if self.fail_at is not None and self.fail_at <= total:
            return StepRunResult(
                completed=self.fail_at - 1,
                total=total,
                should_continue=False,
                failed_step=steps[self.fail_at - 1],
                returncode=1,
            )
        return StepRunResult(completed=total, total=total, should_continue=True)


@pytest.fixture
def fake_repository():
    return FakeRepository


@pytest.fixture
def fake_executor():
    return FakeExecutor
