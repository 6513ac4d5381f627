"""CLI entry point for deploywatch.

Commands:
- deploywatch run: Watch configured branches and deploy on new commits
- deploywatch check: Validate the config and show where each branch is cloned
- deploywatch version: Show version information
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from deploywatch import __version__
from deploywatch.core.config import ConfigError, default_config_path, load_config
from deploywatch.core.models import WatchConfig, WatchState
from deploywatch.core.repository import clone_path_for
from deploywatch.core.supervisor import start
from deploywatch.core.workspace import WorkspaceError

console = Console()
logger = logging.getLogger("deploywatch")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(level: str) -> None:
    """Configure the root logger with a rich handler."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _load_or_exit(config_path: Path) -> WatchConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Could not load config:[/red] {escape(str(e))}")
        sys.exit(1)


config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path of the configuration file (default: ./config.yml)",
)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Deploywatch - run deployment steps when watched branches change."""
    pass


@main.command()
@config_option
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=lambda: os.environ.get("LOG_LEVEL", "INFO").upper(),
    show_default="$LOG_LEVEL or INFO",
    help="Log level to use",
)
def run(config_path: Path | None, log_level: str) -> None:
    """Watch all configured branches until interrupted.

    Example:
        deploywatch run --config deploy.yml --log-level debug
    """
    setup_logging(log_level)
    config = _load_or_exit(config_path or default_config_path())

    try:
        states = asyncio.run(_serve(config))
    except WorkspaceError as e:
        console.print(f"[red]Failed to start up:[/red] {escape(str(e))}")
        sys.exit(1)

    console.print(_state_table(states))


async def _serve(config: WatchConfig) -> list[WatchState]:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_shutdown, shutdown, sig)
    try:
        return await start(config, shutdown)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def _request_shutdown(shutdown: asyncio.Event, sig: signal.Signals) -> None:
    if not shutdown.is_set():
        logger.info(f"Received signal {sig.name}, shutting down..")
    shutdown.set()


def _state_table(states: list[WatchState]) -> Table:
    table = Table(title="Watch Summary")
    table.add_column("Project", style="cyan")
    table.add_column("Branch", style="cyan")
    table.add_column("Head", style="white")
    table.add_column("Checks", justify="right")
    table.add_column("Deploys", justify="right", style="green")
    table.add_column("Rollbacks", justify="right", style="yellow")
    table.add_column("Errors", justify="right", style="red")

    for state in states:
        table.add_row(
            escape(state.project),
            escape(state.branch),
            state.last_head[:12] if state.last_head else "-",
            str(state.iterations),
            str(state.deployments),
            str(state.rollbacks),
            str(state.failed_iterations),
        )
    return table


@main.command()
@config_option
def check(config_path: Path | None) -> None:
    """Validate the configuration without touching any repository."""
    config = _load_or_exit(config_path or default_config_path())

    table = Table(title="Watched Branches")
    table.add_column("Project", style="cyan")
    table.add_column("Branch", style="cyan")
    table.add_column("Interval", justify="right")
    table.add_column("Steps", justify="right", style="green")
    table.add_column("Auth", style="white")
    table.add_column("Clone Directory", style="dim")

    for project in config.projects.values():
        auth = "yes" if project.auth.basic_credentials() else "no"
        for branch in project.branches.values():
            table.add_row(
                escape(project.name),
                escape(branch.name),
                f"{project.fetch_interval.total_seconds():g}s",
                str(len(branch.steps)),
                auth,
                str(clone_path_for(config.clone_directory, project.name, branch.name)),
            )

    console.print(table)
    console.print("[green]✓ Configuration is valid[/green]")


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"deploywatch v{__version__}")


if __name__ == "__main__":
    main()
