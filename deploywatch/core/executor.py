"""Sequential execution of deployment steps.

Steps are shell commands run one after another in the branch's clone, with
stdout/stderr inherited from the daemon. The first non-zero exit stops the
run and asks the caller to roll back. A step that cannot even be spawned
raises StepLaunchError instead: nothing ran, so there is nothing to undo.
"""

import asyncio
import logging
import os
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from deploywatch.core.models import StepRunResult

logger = logging.getLogger(__name__)

# Exit codes the POSIX shell uses for "not executable" / "not found"
SHELL_NOT_EXECUTABLE = 126
SHELL_NOT_FOUND = 127


class StepLaunchError(Exception):
    """A step's process could not be started."""

    def __init__(self, step: str, index: int, cause: OSError):
        self.step = step
        self.index = index
        self.cause = cause
        super().__init__(f"Could not launch step {index} ({step!r}): {cause}")


class StepExecutor:
    """Run a branch's steps strictly in order, stopping at the first failure.

    USAGE:
        executor = StepExecutor()
        result = await executor.run(["make build", "make deploy"], workdir)
        if not result.should_continue:
            # roll back
    """

    def __init__(self, env: Mapping[str, str] | None = None):
        self.base_env = dict(os.environ if env is None else env)

    async def run(
        self,
        steps: Sequence[str],
        workdir: str | Path,
        env: Mapping[str, str] | None = None,
    ) -> StepRunResult:
        """Run ``steps`` in ``workdir``.

        Args:
            steps: Shell commands, in order
            workdir: Working directory for every step
            env: Extra environment variables layered over the base environment

        Returns:
            StepRunResult with the number of completed steps

        Raises:
            StepLaunchError: A step's process could not be spawned
        """
        workdir = Path(workdir)
        step_env = {**self.base_env, **(env or {})}
        total = len(steps)

        for index, step in enumerate(steps, start=1):
            logger.info(f"Running step {index}/{total} in {workdir}: {step}")
            started = time.monotonic()
            returncode = await self._run_step(step, index, workdir, step_env)
            elapsed = time.monotonic() - started

            if returncode != 0:
                hint = ""
                if returncode in (SHELL_NOT_EXECUTABLE, SHELL_NOT_FOUND):
                    hint = " (command not found or not executable)"
                logger.warning(
                    f"Step {index}/{total} failed with exit code {returncode}{hint} "
                    f"after {elapsed:.1f}s: {step}"
                )
                return StepRunResult(
                    completed=index - 1,
                    total=total,
                    should_continue=False,
                    failed_step=step,
                    returncode=returncode,
                )

            logger.info(f"Completed step {index}/{total} in {elapsed:.1f}s")

        return StepRunResult(completed=total, total=total, should_continue=True)

    async def _run_step(
        self, step: str, index: int, workdir: Path, env: dict[str, str]
    ) -> int:
        try:
            process = await asyncio.create_subprocess_shell(step, cwd=workdir, env=env)
        except OSError as e:
            raise StepLaunchError(step, index, e) from e
        # Not cancelled on shutdown: an in-flight step always runs to completion
        return await process.wait()
