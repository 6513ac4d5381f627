"""Clone directory management and startup repository acquisition.

Layout:
    <clone_directory>/
        .deploywatch.lock      held while a daemon is running
        <sha1(project, branch)>/  one single-branch clone per watched branch

Clones are opened when present and cloned fresh otherwise. A clone that exists
but cannot be opened is a fatal error: it is never deleted and re-cloned.
"""

import logging
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock, Timeout

from deploywatch.core.models import BranchConfig, ProjectConfig, WatchConfig
from deploywatch.core.repository import (
    GitRepository,
    RepositoryError,
    RepositoryNotFoundError,
    clone_path_for,
)

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Fatal startup error: the clone directory or a clone is unusable."""

    pass


@dataclass(frozen=True)
class BranchWorkspace:
    """A watched branch together with its local clone."""

    project: ProjectConfig
    branch: BranchConfig
    path: Path
    repository: GitRepository


class WorkspaceManager:
    """Prepare the clone directory and acquire one clone per watched branch.

    Workflow:
    1. Create the clone directory if missing
    2. Take the single-instance lock (``locked()``)
    3. ``acquire()``: open or clone every (project, branch) pair
    """

    LOCK_NAME = ".deploywatch.lock"

    def __init__(
        self,
        config: WatchConfig,
        opener: Callable[..., GitRepository] = GitRepository.open,
        cloner: Callable[..., GitRepository] = GitRepository.clone,
    ):
        self.config = config
        self.clone_root = Path(config.clone_directory).absolute()
        self._open = opener
        self._clone = cloner

    def prepare_clone_root(self) -> None:
        """Create the clone directory if it does not exist."""
        if self.clone_root.exists() and not self.clone_root.is_dir():
            raise WorkspaceError(f"Clone directory {self.clone_root} is not a directory")
        try:
            self.clone_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Could not create clone directory {self.clone_root}: {e}") from e

    @contextmanager
    def locked(self) -> Generator[None, None, None]:
        """Hold the clone directory lock for the duration of the block.

        Raises:
            WorkspaceError: Another process already holds the lock.
        """
        self.prepare_clone_root()
        lock = FileLock(self.clone_root / self.LOCK_NAME, timeout=0)
        try:
            lock.acquire()
        except Timeout as e:
            raise WorkspaceError(
                f"Clone directory {self.clone_root} is in use by another deploywatch process"
            ) from e
        try:
            yield
        finally:
            lock.release()

    def clone_path(self, project: str, branch: str) -> Path:
        return clone_path_for(self.clone_root, project, branch)

    def acquire(self) -> dict[str, list[BranchWorkspace]]:
        """Open or clone every configured branch.

        Returns:
            Mapping of project name to its branch workspaces

        Raises:
            WorkspaceError: Any open/clone failure other than "not cloned yet"
        """
        self.prepare_clone_root()
        started = time.monotonic()
        timeout = self.config.git_timeout.total_seconds()
        result: dict[str, list[BranchWorkspace]] = {}

        for project in self.config.projects.values():
            workspaces = []
            for branch in project.branches.values():
                path = self.clone_path(project.name, branch.name)
                repository = self._open_or_clone(project, branch, path, timeout)
                workspaces.append(
                    BranchWorkspace(
                        project=project, branch=branch, path=path, repository=repository
                    )
                )
            result[project.name] = workspaces

        logger.info(
            f"Prepared {sum(len(w) for w in result.values())} clone(s) "
            f"in {time.monotonic() - started:.1f}s"
        )
        return result

    def _open_or_clone(
        self, project: ProjectConfig, branch: BranchConfig, path: Path, timeout: float
    ) -> GitRepository:
        try:
            repository = self._open(path, branch.name, auth=project.auth, timeout=timeout)
            logger.debug(f"Reusing clone of {project.name}:{branch.name} at {path}")
            return repository
        except RepositoryNotFoundError:
            pass
        except RepositoryError as e:
            raise WorkspaceError(
                f"Could not open local clone for branch '{branch.name}' "
                f"of project '{project.name}': {e}"
            ) from e

        logger.info(f"Cloning branch '{branch.name}' of project '{project.name}'")
        try:
            return self._clone(
                project.clone_url, path, branch.name, auth=project.auth, timeout=timeout
            )
        except RepositoryError as e:
            raise WorkspaceError(
                f"Could not clone branch '{branch.name}' of project '{project.name}': {e}"
            ) from e
