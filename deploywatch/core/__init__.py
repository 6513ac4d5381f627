"""Core modules for the deploywatch daemon."""

from deploywatch.core.models import (
    BranchConfig,
    FetchResult,
    GitAuth,
    IterationOutcome,
    ProjectConfig,
    StepRunResult,
    WatchConfig,
    WatchState,
    WatchStatus,
)
from deploywatch.core.supervisor import ProjectSupervisor, RootSupervisor, start

__all__ = [
    "BranchConfig",
    "FetchResult",
    "GitAuth",
    "IterationOutcome",
    "ProjectConfig",
    "ProjectSupervisor",
    "RootSupervisor",
    "StepRunResult",
    "WatchConfig",
    "WatchState",
    "WatchStatus",
    "start",
]
