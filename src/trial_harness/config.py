"""Runtime configuration for the trial harness."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class RunnerSettings:
    """Command trial runner settings."""

    command_template: str = ""
    failed_exit_codes: tuple[int, ...] = (1,)
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class SchedulerSettings:
    """Worker pool and cancellation settings."""

    concurrency: int = 4
    trial_timeout_seconds: float = 0.0
    graceful_shutdown_seconds: float = 30.0
    event_buffer_size: int = 1_000


@dataclass(slots=True)
class StoreSettings:
    """Trial store persistence settings."""

    sqlite_busy_timeout_ms: int = 5_000
    write_max_retries: int = 3
    write_retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    tasks_dir: Path = Path("tasks")
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)

    @classmethod
    def from_env(cls, tasks_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local runs."""

        return cls(
            tasks_dir=tasks_dir or Path(os.getenv("TRIAL_HARNESS_TASKS_DIR", "tasks")),
            runner=RunnerSettings(
                command_template=os.getenv("TRIAL_HARNESS_COMMAND_TEMPLATE", "").strip(),
                failed_exit_codes=_env_int_tuple("TRIAL_HARNESS_FAILED_EXIT_CODES", "1"),
                transient_exit_codes=_env_int_tuple(
                    "TRIAL_HARNESS_TRANSIENT_EXIT_CODES",
                    "137,143",
                ),
            ),
            scheduler=SchedulerSettings(
                concurrency=int(os.getenv("TRIAL_HARNESS_CONCURRENCY", "4")),
                trial_timeout_seconds=float(
                    os.getenv("TRIAL_HARNESS_TRIAL_TIMEOUT_SECONDS", "0"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("TRIAL_HARNESS_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                event_buffer_size=int(os.getenv("TRIAL_HARNESS_EVENT_BUFFER_SIZE", "1000")),
            ),
            store=StoreSettings(
                sqlite_busy_timeout_ms=int(
                    os.getenv("TRIAL_HARNESS_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
                write_max_retries=int(os.getenv("TRIAL_HARNESS_STORE_WRITE_MAX_RETRIES", "3")),
                write_retry_backoff_seconds=float(
                    os.getenv("TRIAL_HARNESS_STORE_WRITE_RETRY_BACKOFF_SECONDS", "0.5"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any numeric setting is out of range."""

        if self.scheduler.concurrency < 1:
            raise ValueError("TRIAL_HARNESS_CONCURRENCY must be >= 1.")
        if self.scheduler.trial_timeout_seconds < 0:
            raise ValueError("TRIAL_HARNESS_TRIAL_TIMEOUT_SECONDS must be >= 0.")
        if self.scheduler.graceful_shutdown_seconds < 0:
            raise ValueError("TRIAL_HARNESS_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.scheduler.event_buffer_size < 1:
            raise ValueError("TRIAL_HARNESS_EVENT_BUFFER_SIZE must be >= 1.")
        if self.store.sqlite_busy_timeout_ms < 1:
            raise ValueError("TRIAL_HARNESS_SQLITE_BUSY_TIMEOUT_MS must be >= 1.")
        if self.store.write_max_retries < 0:
            raise ValueError("TRIAL_HARNESS_STORE_WRITE_MAX_RETRIES must be >= 0.")
        if self.store.write_retry_backoff_seconds < 0:
            raise ValueError("TRIAL_HARNESS_STORE_WRITE_RETRY_BACKOFF_SECONDS must be >= 0.")
        if 0 in self.runner.failed_exit_codes:
            raise ValueError("TRIAL_HARNESS_FAILED_EXIT_CODES must not include 0.")
        overlap = set(self.runner.failed_exit_codes) & set(self.runner.transient_exit_codes)
        if overlap:
            raise ValueError(
                "TRIAL_HARNESS_FAILED_EXIT_CODES and TRIAL_HARNESS_TRANSIENT_EXIT_CODES "
                f"overlap: {sorted(overlap)}",
            )


def _env_int_tuple(name: str, default: str) -> tuple[int, ...]:
    raw = os.getenv(name, default).strip()
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            value = int(token)
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
        if value not in values:
            values.append(value)
    return tuple(values)
