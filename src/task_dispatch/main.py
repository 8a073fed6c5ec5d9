"""CLI entrypoint for task-dispatch."""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from task_dispatch import __version__
from task_dispatch.config import ConfigError
from task_dispatch.dispatch.controllers import (
    HarnessCliController,
    HarnessRunCommand,
    RunnerUnavailable,
    ScanOnceCommand,
    TriggerCommand,
)
from task_dispatch.dispatch.triggers import TriggerSourceError

click.rich_click.USE_MARKDOWN = True
HARNESS_CONTROLLER = HarnessCliController()
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="task-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def task_dispatch(log_level: str) -> None:
    """Dispatch Notion tasks to an OpenCode agent.

    Configuration is read from environment variables, for example
    `NOTION_TOKEN`, `NOTION_DATABASE_ID` and `PROJECT_MAPPINGS`.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@task_dispatch.command("run")
@click.option(
    "--skip-startup-scan",
    is_flag=True,
    default=False,
    help="Wait for the timer or trigger file instead of scanning right away.",
)
def run(skip_startup_scan: bool) -> None:
    """Run the harness until interrupted (Ctrl+C)."""

    with _cli_errors():
        _emit_lines(
            HARNESS_CONTROLLER.run(HarnessRunCommand(skip_startup_scan=skip_startup_scan)),
        )


@task_dispatch.command("scan")
def scan() -> None:
    """Run a single scan: claim eligible tasks and dispatch them."""

    with _cli_errors():
        _emit_lines(HARNESS_CONTROLLER.scan_once(ScanOnceCommand()))


@task_dispatch.command("tasks")
def tasks() -> None:
    """List tasks the next scan would pick up, without claiming them."""

    with _cli_errors():
        _emit_lines(HARNESS_CONTROLLER.list_tasks())


@task_dispatch.command("trigger")
@click.option(
    "--trigger-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Marker file to touch. Defaults to TRIGGER_FILE.",
)
def trigger(trigger_file: Path | None) -> None:
    """Ask a running harness to scan immediately."""

    with _cli_errors():
        _emit_lines(HARNESS_CONTROLLER.trigger(TriggerCommand(trigger_file=trigger_file)))


@task_dispatch.command("check-config")
def check_config() -> None:
    """Validate configuration and print the effective settings."""

    with _cli_errors():
        _emit_lines(HARNESS_CONTROLLER.check_config())


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except ConfigError as error:
        raise click.ClickException(f"Configuration error: {error}") from error
    except (RunnerUnavailable, TriggerSourceError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_dispatch()
