"""CLI entrypoint for trial-harness."""

import logging
import sys
from pathlib import Path

import rich_click as click

from trial_harness import __version__
from trial_harness.harness.controllers import (
    HarnessCliController,
    RunCommand,
    SummaryCommand,
    TasksCommand,
)
from trial_harness.harness.errors import HarnessError
from trial_harness.harness.reporter import OUTPUT_MODES

click.rich_click.USE_MARKDOWN = True
HARNESS_CONTROLLER = HarnessCliController()
INTERRUPTED_EXIT_CODE = 130


@click.group()
@click.version_option(version=__version__, prog_name="trial-harness")
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Log errors only.")
def trial_harness(verbose: int, quiet: bool) -> None:
    """Resumable multi-model benchmark trial harness."""

    _configure_logging(verbose=verbose, quiet=quiet)


@trial_harness.command("run")
@click.option(
    "-n",
    "--trials",
    type=click.IntRange(min=1),
    required=True,
    help="Trials per (task, model) pair.",
)
@click.option(
    "--resume/--no-resume",
    default=False,
    show_default=True,
    help="Skip trials that already have a recorded outcome.",
)
@click.option(
    "--save",
    "save_path",
    type=click.Path(path_type=Path),
    required=True,
    help="Save directory holding the trial store and logs.",
)
@click.option(
    "--model",
    "models",
    multiple=True,
    help="Model id to evaluate. Can be repeated.",
)
@click.option(
    "--output",
    type=click.Choice(OUTPUT_MODES),
    default="progress",
    show_default=True,
    help="Progress rendering mode.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Max trials in flight. Defaults to TRIAL_HARNESS_CONCURRENCY.",
)
@click.option(
    "--trial-timeout",
    "trial_timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Wall-clock limit per trial in seconds.",
)
@click.option(
    "--rerun-errored/--no-rerun-errored",
    default=False,
    show_default=True,
    help="With --resume, run errored trials again.",
)
@click.option(
    "--tasks-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Task catalog directory. Defaults to TRIAL_HARNESS_TASKS_DIR.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Trial command template with {task}, {model}, {trial}, {task_path} "
        "and {log_file} placeholders. Defaults to TRIAL_HARNESS_COMMAND_TEMPLATE."
    ),
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Print the pending trials without running them.",
)
@click.argument("task_glob")
def run(  # noqa: PLR0913
    trials: int,
    resume: bool,
    save_path: Path,
    models: tuple[str, ...],
    output: str,
    concurrency: int | None,
    trial_timeout_seconds: float | None,
    rerun_errored: bool,
    tasks_dir: Path | None,
    command_template: str | None,
    dry_run: bool,
    task_glob: str,
) -> None:
    """Run every pending (task, model, trial) for tasks matching TASK_GLOB."""

    try:
        result = HARNESS_CONTROLLER.run(
            RunCommand(
                task_glob=task_glob,
                trials=trials,
                save_path=save_path,
                models=models,
                resume=resume,
                output=output,
                concurrency=concurrency,
                trial_timeout_seconds=trial_timeout_seconds,
                rerun_errored=rerun_errored,
                tasks_dir=tasks_dir,
                command_template=command_template,
                dry_run=dry_run,
            ),
            echo=click.echo,
        )
    except HarnessError as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(result.lines)
    if result.interrupted:
        sys.exit(INTERRUPTED_EXIT_CODE)


@trial_harness.command("summary")
@click.option(
    "--save",
    "save_path",
    type=click.Path(path_type=Path),
    required=True,
    help="Save directory of a previous run.",
)
@click.option(
    "--model",
    "models",
    multiple=True,
    help="Only report these models, in this order. Can be repeated.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print one JSON object.")
def summary(save_path: Path, models: tuple[str, ...], as_json: bool) -> None:
    """Show per-model pass/fail/error tallies from a save directory."""

    try:
        lines = HARNESS_CONTROLLER.summary(
            SummaryCommand(save_path=save_path, models=models, as_json=as_json),
        )
    except HarnessError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@trial_harness.command("tasks")
@click.option(
    "--tasks-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Task catalog directory. Defaults to TRIAL_HARNESS_TASKS_DIR.",
)
@click.argument("task_glob", required=False)
def tasks(tasks_dir: Path | None, task_glob: str | None) -> None:
    """List catalog tasks, optionally filtered by TASK_GLOB."""

    try:
        lines = HARNESS_CONTROLLER.tasks(TasksCommand(tasks_dir=tasks_dir, task_glob=task_glob))
    except HarnessError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _configure_logging(*, verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:  # noqa: PLR2004
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    trial_harness()
