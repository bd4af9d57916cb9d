"""Controllers for trial harness CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from trial_harness.config import Settings
from trial_harness.harness.aggregator import ModelTally, render_summary_lines, summarize
from trial_harness.harness.backend import CommandTrialRunner, TrialRunner
from trial_harness.harness.catalog import DirectoryTaskCatalog, match_tasks
from trial_harness.harness.errors import ConfigError, NoMatchingTasks, StoreIOError
from trial_harness.harness.events import EventChannel
from trial_harness.harness.models import PendingSet, RunConfig, RunSummary
from trial_harness.harness.planner import plan
from trial_harness.harness.reporter import ProgressReporter
from trial_harness.harness.scheduler import TrialScheduler
from trial_harness.harness.store import DB_FILENAME, TrialStore

DRY_RUN_PREVIEW_LIMIT = 20


@dataclass(slots=True)
class RunCommand:
    """CLI input for one benchmark run."""

    task_glob: str
    trials: int
    save_path: Path
    models: tuple[str, ...]
    resume: bool = False
    output: str = "progress"
    concurrency: int | None = None
    trial_timeout_seconds: float | None = None
    rerun_errored: bool = False
    tasks_dir: Path | None = None
    command_template: str | None = None
    dry_run: bool = False


@dataclass(slots=True)
class RunResult:
    """Lines to print after a run plus whether it was interrupted."""

    lines: list[str]
    interrupted: bool = False


@dataclass(slots=True)
class SummaryCommand:
    """CLI input for per-model summary of a save directory."""

    save_path: Path
    models: tuple[str, ...] = ()
    as_json: bool = False


@dataclass(slots=True)
class TasksCommand:
    """CLI input for task catalog listing."""

    tasks_dir: Path | None
    task_glob: str | None = None


class HarnessCliController:
    """Coordinates planning, scheduling, and reporting for CLI commands."""

    def __init__(
        self,
        runner_factory: Callable[[Settings, str], TrialRunner] | None = None,
    ) -> None:
        self._runner_factory = runner_factory or _command_runner

    def run(self, command: RunCommand, *, echo: Callable[[str], None] = print) -> RunResult:
        settings = _load_settings(tasks_dir=command.tasks_dir)
        config = RunConfig(
            task_glob=command.task_glob,
            models=command.models,
            trials=command.trials,
            save_path=command.save_path,
            concurrency=command.concurrency or settings.scheduler.concurrency,
            resume=command.resume,
            rerun_errored=command.rerun_errored,
            trial_timeout_seconds=_effective_timeout(command, settings),
        )
        config.validate()
        catalog = DirectoryTaskCatalog(settings.tasks_dir)

        runner: TrialRunner | None = None
        if not command.dry_run:
            template = (command.command_template or settings.runner.command_template).strip()
            if not template:
                raise ConfigError(
                    "No trial command configured. "
                    "Set TRIAL_HARNESS_COMMAND_TEMPLATE or pass --command.",
                )
            runner = self._runner_factory(settings, template)

        with _store(settings, config.save_path) as store:
            pending = plan(config, store, catalog=catalog)
            if runner is None:
                return RunResult(lines=_dry_run_lines(pending))

            channel = EventChannel(settings.scheduler.event_buffer_size)
            reporter = ProgressReporter(channel, mode=command.output, echo=echo)
            scheduler = TrialScheduler(
                store=store,
                runner=runner,
                channel=channel,
                concurrency=config.concurrency,
                trial_timeout_seconds=config.trial_timeout_seconds,
                graceful_shutdown_seconds=settings.scheduler.graceful_shutdown_seconds,
                install_signal_handlers=True,
            )
            reporter.start()
            try:
                summary = scheduler.run(pending)
            finally:
                channel.close()
                reporter.join()
            tallies = summarize(store, models=config.models)

        if command.output == "json":
            lines = [json.dumps(_summary_payload(summary, tallies), sort_keys=True)]
        else:
            lines = _run_summary_lines(summary, save_path=config.save_path)
            lines.extend(render_summary_lines(tallies))
        return RunResult(lines=lines, interrupted=summary.stopped)

    def summary(self, command: SummaryCommand) -> list[str]:
        settings = _load_settings()
        if not (command.save_path / DB_FILENAME).is_file():
            raise StoreIOError("No trial store found", path=command.save_path)
        with _store(settings, command.save_path) as store:
            tallies = summarize(store, models=command.models or None)
            total = store.count()
        if command.as_json:
            payload = {"records": total, "models": _tallies_payload(tallies)}
            return [json.dumps(payload, sort_keys=True)]
        return [f"Trial store: {command.save_path} records={total}", *render_summary_lines(tallies)]

    def tasks(self, command: TasksCommand) -> list[str]:
        settings = _load_settings(tasks_dir=command.tasks_dir)
        catalog = DirectoryTaskCatalog(settings.tasks_dir)
        task_glob = command.task_glob or "*"
        task_ids = match_tasks(catalog, task_glob)
        if not task_ids:
            raise NoMatchingTasks(task_glob, source=catalog.describe())
        return [f"Tasks in {settings.tasks_dir} matching {task_glob!r}: {len(task_ids)}", *task_ids]


def _load_settings(*, tasks_dir: Path | None = None) -> Settings:
    try:
        settings = Settings.from_env(tasks_dir=tasks_dir)
        settings.validate()
    except ValueError as error:
        raise ConfigError(str(error)) from error
    return settings


def _effective_timeout(command: RunCommand, settings: Settings) -> float | None:
    if command.trial_timeout_seconds is not None:
        return command.trial_timeout_seconds
    configured = settings.scheduler.trial_timeout_seconds
    return configured if configured > 0 else None


def _command_runner(settings: Settings, template: str) -> TrialRunner:
    return CommandTrialRunner(
        command_template=template,
        tasks_root=settings.tasks_dir,
        failed_exit_codes=settings.runner.failed_exit_codes,
        transient_exit_codes=settings.runner.transient_exit_codes,
    )


def _dry_run_lines(pending: PendingSet) -> list[str]:
    lines = [
        f"Dry run: {len(pending)} of {pending.total} trials pending "
        f"(skipped={pending.skipped} stale={len(pending.stale)})",
        f"Tasks: {len(pending.tasks)} Models: {', '.join(pending.models)}",
    ]
    for key in pending.keys[:DRY_RUN_PREVIEW_LIMIT]:
        lines.append(f"  {key.label()}")
    hidden = len(pending) - DRY_RUN_PREVIEW_LIMIT
    if hidden > 0:
        lines.append(f"  ... and {hidden} more")
    return lines


def _run_summary_lines(summary: RunSummary, *, save_path: Path) -> list[str]:
    lines = [
        "Run summary: "
        f"planned={summary.planned} executed={summary.executed} "
        f"passed={summary.passed} failed={summary.failed} errored={summary.errored} "
        f"skipped={summary.skipped} abandoned={summary.abandoned} "
        f"not_started={summary.not_started}",
    ]
    if summary.conflicts:
        lines.append(f"Kept {summary.conflicts} existing records written by a concurrent run.")
    if summary.stopped:
        lines.append(
            f"Run interrupted ({summary.stop_reason}). "
            f"Resume with: --resume --save {save_path}",
        )
    lines.append(f"Results saved to: {save_path}")
    return lines


def _summary_payload(summary: RunSummary, tallies: dict[str, ModelTally]) -> dict[str, object]:
    return {
        "event": "summary",
        "planned": summary.planned,
        "executed": summary.executed,
        "passed": summary.passed,
        "failed": summary.failed,
        "errored": summary.errored,
        "skipped": summary.skipped,
        "abandoned": summary.abandoned,
        "not_started": summary.not_started,
        "conflicts": summary.conflicts,
        "stopped": summary.stopped,
        "stop_reason": summary.stop_reason,
        "models": _tallies_payload(tallies),
    }


def _tallies_payload(tallies: dict[str, ModelTally]) -> dict[str, dict[str, object]]:
    return {
        model_id: {
            "passed": tally.passed,
            "failed": tally.failed,
            "errored": tally.errored,
            "total": tally.total,
            "pass_rate": tally.pass_rate,
            "mean_duration_seconds": tally.mean_duration_seconds,
            "error_causes": dict(tally.error_causes),
        }
        for model_id, tally in tallies.items()
    }


@contextmanager
def _store(settings: Settings, save_path: Path) -> Iterator[TrialStore]:
    store = TrialStore.open(
        save_path,
        busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        write_max_retries=settings.store.write_max_retries,
        write_retry_backoff_seconds=settings.store.write_retry_backoff_seconds,
    )
    try:
        yield store
    finally:
        store.close()
