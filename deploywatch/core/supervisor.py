"""Supervision of branch watchers.

RootSupervisor -> ProjectSupervisor (per project) -> BranchWatcher (per branch)

Every level launches its children as tasks and joins them with
``asyncio.gather``; nothing outlives its parent. A single asyncio.Event is the
shutdown signal shared by all watchers. Watchers absorb their own failures, so
one broken branch never stops its siblings.
"""

import asyncio
import logging
from collections.abc import Sequence

from deploywatch.core.executor import StepExecutor
from deploywatch.core.models import ProjectConfig, WatchConfig, WatchState
from deploywatch.core.watcher import BranchWatcher
from deploywatch.core.workspace import BranchWorkspace, WorkspaceManager

logger = logging.getLogger(__name__)


class ProjectSupervisor:
    """Run one watcher per branch of a project until shutdown."""

    def __init__(
        self,
        project: ProjectConfig,
        watchers: Sequence[BranchWatcher],
    ):
        self.project = project
        self.watchers = list(watchers)

    @classmethod
    def from_workspaces(
        cls,
        project: ProjectConfig,
        workspaces: Sequence[BranchWorkspace],
        shutdown: asyncio.Event,
        executor: StepExecutor | None = None,
    ) -> "ProjectSupervisor":
        executor = executor or StepExecutor()
        interval = project.fetch_interval.total_seconds()
        watchers = [
            BranchWatcher(
                project=project.name,
                branch=workspace.branch,
                repository=workspace.repository,
                fetch_interval=interval,
                shutdown=shutdown,
                executor=executor,
            )
            for workspace in workspaces
        ]
        return cls(project, watchers)

    async def run(self) -> list[WatchState]:
        """Block until every watcher has exited. Watchers are never restarted."""
        results = await asyncio.gather(
            *(watcher.run() for watcher in self.watchers), return_exceptions=True
        )
        for watcher, result in zip(self.watchers, results):
            # BranchWatcher.run absorbs iteration errors; anything here is a bug
            if isinstance(result, BaseException) and not isinstance(
                result, asyncio.CancelledError
            ):
                logger.error(
                    f"Watcher {watcher.name} exited with an error: {result!r}", exc_info=result
                )
        logger.debug(f"All watchers of project '{self.project.name}' have stopped")
        return [watcher.state for watcher in self.watchers]


class RootSupervisor:
    """Run one ProjectSupervisor per project and drain them on shutdown."""

    def __init__(self, projects: Sequence[ProjectSupervisor], shutdown: asyncio.Event):
        self.projects = list(projects)
        self.shutdown = shutdown

    @property
    def watchers(self) -> list[BranchWatcher]:
        return [watcher for project in self.projects for watcher in project.watchers]

    async def run(self) -> list[WatchState]:
        logger.info(
            f"Watching {len(self.watchers)} branch(es) across {len(self.projects)} project(s)"
        )
        results = await asyncio.gather(
            *(project.run() for project in self.projects), return_exceptions=True
        )
        states: list[WatchState] = []
        for project, result in zip(self.projects, results):
            if isinstance(result, BaseException):
                if not isinstance(result, asyncio.CancelledError):
                    logger.error(
                        f"Supervisor of project '{project.project.name}' failed: {result!r}",
                        exc_info=result,
                    )
                states.extend(watcher.state for watcher in project.watchers)
            else:
                states.extend(result)
        logger.info("All watchers stopped")
        return states


async def start(
    config: WatchConfig,
    shutdown: asyncio.Event,
    manager: WorkspaceManager | None = None,
    executor: StepExecutor | None = None,
) -> list[WatchState]:
    """Acquire all clones, then watch every branch until ``shutdown`` is set.

    Returns the final watch states after a clean drain.

    Raises:
        WorkspaceError: A fatal startup condition occurred before watching began
    """
    manager = manager or WorkspaceManager(config)
    executor = executor or StepExecutor()

    with manager.locked():
        logger.info("Setting up configured repositories...")
        workspaces = await asyncio.to_thread(manager.acquire)

        supervisors = [
            ProjectSupervisor.from_workspaces(
                project, workspaces.get(name, []), shutdown, executor=executor
            )
            for name, project in config.projects.items()
        ]
        root = RootSupervisor(supervisors, shutdown)
        return await root.run()
