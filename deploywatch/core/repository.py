"""Git repository access for branch watchers.

Each watched (project, branch) pair gets its own single-branch clone. This
module wraps the handful of git operations the watcher needs:

- ``GitRepository.open(...)`` / ``GitRepository.clone(...)``
- ``head()``: current commit hash of the checked out branch
- ``fetch_and_merge()``: fetch ``origin`` and fast-forward the branch
- ``hard_reset(commit)``: discard working tree changes and untracked files,
  optionally moving the branch back to ``commit``

All methods are blocking; async callers run them in a worker thread.
Credentials are handed to git through environment-scoped config, so they are
never written to the clone's ``.git/config``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from pathlib import Path

import git
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from deploywatch.core.models import FetchResult, GitAuth

logger = logging.getLogger(__name__)

REMOTE_NAME = "origin"
DEFAULT_GIT_TIMEOUT = 300.0


class RepositoryError(Exception):
    """A git operation failed."""

    pass


class RepositoryNotFoundError(RepositoryError):
    """No repository exists at the given path yet."""

    pass


def clone_path_for(clone_root: Path, project: str, branch: str) -> Path:
    """Return the clone directory for a (project, branch) pair.

    The directory name is a SHA-1 over both names, separated by a NUL byte so
    ("ab", "c") and ("a", "bc") cannot collide. Stable across restarts.
    """
    digest = hashlib.sha1()
    digest.update(project.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(branch.encode("utf-8"))
    return Path(clone_root) / digest.hexdigest()


def git_environment(auth: GitAuth, base: dict[str, str] | None = None) -> dict[str, str]:
    """Build the environment for git subprocesses.

    Credentials become an ``http.extraHeader`` entry via GIT_CONFIG_COUNT,
    appended after any config entries already present in the environment.
    """
    env = dict(os.environ if base is None else base)
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    env.setdefault("GCM_INTERACTIVE", "never")

    credentials = auth.basic_credentials()
    if credentials is None:
        return env

    username, secret = credentials
    token = base64.b64encode(f"{username}:{secret}".encode()).decode("ascii")
    try:
        index = int(env.get("GIT_CONFIG_COUNT", "0"))
    except ValueError:
        index = 0
    env[f"GIT_CONFIG_KEY_{index}"] = "http.extraHeader"
    env[f"GIT_CONFIG_VALUE_{index}"] = f"Authorization: Basic {token}"
    env["GIT_CONFIG_COUNT"] = str(index + 1)
    return env


class GitRepository:
    """A local single-branch clone bound to its remote branch and credentials."""

    def __init__(
        self,
        repo: Repo,
        path: Path,
        branch: str,
        auth: GitAuth | None = None,
        timeout: float = DEFAULT_GIT_TIMEOUT,
    ):
        self._repo = repo
        self.path = Path(path)
        self.branch = branch
        self.auth = auth or GitAuth()
        self.timeout = timeout
        self._rolled_back: str | None = None

    @classmethod
    def open(
        cls,
        path: Path,
        branch: str,
        auth: GitAuth | None = None,
        timeout: float = DEFAULT_GIT_TIMEOUT,
    ) -> GitRepository:
        """Open an existing clone.

        Raises:
            RepositoryNotFoundError: Nothing has been cloned to ``path`` yet.
            RepositoryError: Anything else prevented opening the clone.
        """
        path = Path(path)
        try:
            repo = Repo(path)
        except (NoSuchPathError, InvalidGitRepositoryError) as e:
            raise RepositoryNotFoundError(f"No repository at {path}") from e
        except Exception as e:
            raise RepositoryError(f"Could not open repository at {path}: {e}") from e

        # A bare or worktree-less repository is damaged for our purposes
        if repo.bare:
            raise RepositoryError(f"Repository at {path} is bare; expected a working clone")
        return cls(repo, path, branch, auth=auth, timeout=timeout)

    @classmethod
    def clone(
        cls,
        url: str,
        path: Path,
        branch: str,
        auth: GitAuth | None = None,
        timeout: float = DEFAULT_GIT_TIMEOUT,
    ) -> GitRepository:
        """Clone ``branch`` of ``url`` into ``path``, fetching only that branch."""
        path = Path(path)
        auth = auth or GitAuth()
        try:
            git.Git().clone(
                "--branch",
                branch,
                "--single-branch",
                "--origin",
                REMOTE_NAME,
                "--",
                url,
                str(path),
                env=git_environment(auth),
                kill_after_timeout=timeout,
            )
            repo = Repo(path)
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryError(f"Could not clone branch '{branch}' of {url}: {e}") from e
        logger.info(f"Cloned branch '{branch}' into {path}")
        return cls(repo, path, branch, auth=auth, timeout=timeout)

    def head(self) -> str:
        """Return the commit hash HEAD points to."""
        try:
            return self._repo.head.commit.hexsha
        except (ValueError, GitCommandError) as e:
            raise RepositoryError(f"Could not read HEAD of {self.path}: {e}") from e

    def fetch_and_merge(self) -> FetchResult:
        """Fetch the remote and fast-forward the branch onto it.

        The merge runs whenever HEAD differs from ``origin/<branch>``, so a
        merge that failed on an earlier call is retried even though the fetch
        itself brings nothing new. The one exception is a remote tip that was
        rolled back with ``hard_reset``: it is not merged again until the
        remote moves past it.

        Returns UP_TO_DATE when the fetch updated no refs and there was nothing
        to merge. Otherwise CHANGED, even if only tags moved and HEAD stays
        where it was.

        Raises:
            RepositoryError: Fetch or merge failed (network, auth, divergence).
        """
        env = git_environment(self.auth)
        tracking = f"{REMOTE_NAME}/{self.branch}"
        try:
            before = self._ref_snapshot()
            self._repo.git.fetch(
                REMOTE_NAME, "--tags", "--prune", env=env, kill_after_timeout=self.timeout
            )
            after = self._ref_snapshot()
            remote_head = self._repo.git.rev_parse(tracking)
        except GitCommandError as e:
            raise RepositoryError(f"Fetch failed for {self.path}: {e}") from e

        refs_changed = before != after
        if remote_head in (self.head(), self._rolled_back):
            return FetchResult.CHANGED if refs_changed else FetchResult.UP_TO_DATE

        try:
            self._repo.git.merge(
                "--ff-only", tracking, env=env, kill_after_timeout=self.timeout
            )
        except GitCommandError as e:
            raise RepositoryError(f"Merge of {tracking} failed in {self.path}: {e}") from e
        self._rolled_back = None
        return FetchResult.CHANGED

    def hard_reset(self, commit: str | None = None) -> None:
        """Run ``git reset --hard`` to ``commit`` (default: HEAD), then ``git clean -fd``.

        Discards every uncommitted change and every untracked file in the
        clone. Ignored files are kept. When ``commit`` moves HEAD, the commit
        HEAD pointed to is remembered and not merged again by
        ``fetch_and_merge``.
        """
        try:
            current = self.head()
            self._repo.git.reset("--hard", commit or "HEAD")
            self._repo.git.clean("-f", "-d")
        except GitCommandError as e:
            raise RepositoryError(f"Hard reset failed in {self.path}: {e}") from e
        if commit is not None and commit != current:
            self._rolled_back = current

    def _ref_snapshot(self) -> dict[str, str]:
        out = self._repo.git.for_each_ref("--format=%(refname) %(objectname)")
        snapshot = {}
        for line in out.splitlines():
            name, _, sha = line.strip().partition(" ")
            if name:
                snapshot[name] = sha
        return snapshot
