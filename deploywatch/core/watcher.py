"""Per-branch watch loop.

One BranchWatcher owns one branch's clone. Each iteration:

1. Stop if shutdown was requested
2. Read HEAD (before)
3. Fetch + fast-forward; if nothing was fetched, wait for the next interval
4. Read HEAD (after); if unchanged (only tags/other refs moved), wait
5. Run the branch's steps
6. If a step failed, hard-reset the clone back to the pre-merge HEAD
7. Wait for the fetch interval or shutdown, whichever comes first

Iteration errors are logged and retried on the next interval. Only the
shutdown event ends the loop.
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from deploywatch.core.executor import StepExecutor, StepLaunchError
from deploywatch.core.models import (
    BranchConfig,
    FetchResult,
    IterationOutcome,
    WatchState,
    WatchStatus,
)
from deploywatch.core.repository import RepositoryError

logger = logging.getLogger(__name__)


class Repository(Protocol):
    """Blocking repository operations a watcher needs."""

    path: Path

    def head(self) -> str: ...

    def fetch_and_merge(self) -> FetchResult: ...

    def hard_reset(self, commit: str | None = None) -> None: ...


class BranchWatcher:
    """Watch one branch and deploy it whenever its head moves."""

    def __init__(
        self,
        project: str,
        branch: BranchConfig,
        repository: Repository,
        fetch_interval: float,
        shutdown: asyncio.Event,
        executor: StepExecutor | None = None,
    ):
        if fetch_interval <= 0:
            raise ValueError(f"fetch_interval must be positive, got {fetch_interval}")
        self.project = project
        self.branch = branch
        self.repository = repository
        self.fetch_interval = fetch_interval
        self.shutdown = shutdown
        self.executor = executor or StepExecutor()
        self.state = WatchState(project=project, branch=branch.name)

    @property
    def name(self) -> str:
        return f"{self.project}:{self.branch.name}"

    async def run(self) -> WatchState:
        """Loop until shutdown. Never raises for iteration failures."""
        logger.info(f"Watching {self.name} every {self.fetch_interval:g}s")
        try:
            while not self.shutdown.is_set():
                await self._guarded_iteration()
                await self._wait()
        finally:
            self.state.status = WatchStatus.STOPPED
            logger.info(f"Stopped watching {self.name}")
        return self.state

    async def run_iteration(self) -> IterationOutcome:
        """Run a single pull/diff/deploy cycle.

        Raises:
            RepositoryError: Reading HEAD, fetching, merging or resetting failed
            StepLaunchError: A step could not be started
        """
        self.state.iterations += 1
        self.state.status = WatchStatus.FETCHING
        try:
            before = await asyncio.to_thread(self.repository.head)
            logger.debug(f"Fetching {self.name} (head {before[:12]})")

            result = await asyncio.to_thread(self.repository.fetch_and_merge)
            if result is FetchResult.UP_TO_DATE:
                self.state.last_head = before
                logger.debug(f"{self.name} is up to date")
                return IterationOutcome.UP_TO_DATE

            after = await asyncio.to_thread(self.repository.head)
            self.state.last_head = after
            if before == after:
                logger.debug(
                    f"Skipping steps for {self.name}: head did not move ({before[:12]})"
                )
                return IterationOutcome.HEAD_UNCHANGED

            logger.info(f"Pulled new commits on {self.name}: {before[:12]} -> {after[:12]}")
            self.state.status = WatchStatus.DEPLOYING
            run = await self.executor.run(
                self.branch.steps,
                self.repository.path,
                env={
                    "DEPLOYWATCH_PROJECT": self.project,
                    "DEPLOYWATCH_BRANCH": self.branch.name,
                    "DEPLOYWATCH_COMMIT": after,
                },
            )
            if run.should_continue:
                self.state.deployments += 1
                logger.info(f"Deployed {self.name} at {after[:12]} ({run.completed} step(s))")
                return IterationOutcome.DEPLOYED

            self.state.status = WatchStatus.ROLLING_BACK
            logger.warning(
                f"Rolling back {self.name} to {before[:12]} after step "
                f"{run.completed + 1}/{run.total} failed"
            )
            await asyncio.to_thread(self.repository.hard_reset, before)
            self.state.rollbacks += 1
            self.state.last_head = before
            return IterationOutcome.ROLLED_BACK
        finally:
            self.state.status = WatchStatus.IDLE

    async def _guarded_iteration(self) -> IterationOutcome | None:
        try:
            return await self.run_iteration()
        except (RepositoryError, StepLaunchError) as e:
            self.state.failed_iterations += 1
            logger.error(f"Iteration failed for {self.name}: {e}")
        except Exception:
            self.state.failed_iterations += 1
            logger.exception(f"Unexpected error while watching {self.name}")
        return None

    async def _wait(self) -> None:
        """Sleep for the fetch interval, waking early on shutdown."""
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=self.fetch_interval)
        except asyncio.TimeoutError:
            pass
