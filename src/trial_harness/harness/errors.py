"""Harness error taxonomy.

Configuration and store errors are harness-fatal and abort a run before (or
while) scheduling. Trial errors belong to one unit of work and are absorbed
into ``errored`` outcomes by the scheduler.
"""

from __future__ import annotations

from pathlib import Path


class HarnessError(RuntimeError):
    """Base class for harness-level failures."""


class ConfigError(HarnessError, ValueError):
    """Invalid run configuration."""


class NoMatchingTasks(ConfigError):
    """Task glob matched nothing in the catalog."""

    def __init__(self, task_glob: str, *, source: str) -> None:
        super().__init__(f"No tasks match {task_glob!r} in {source}.")
        self.task_glob = task_glob
        self.source = source


class EmptyModelList(ConfigError):
    """No models were supplied for the run."""

    def __init__(self) -> None:
        super().__init__("At least one model is required. Pass --model one or more times.")


class DuplicateModel(ConfigError):
    """The same model id was supplied more than once."""

    def __init__(self, model_id: str) -> None:
        super().__init__(f"Model {model_id!r} was supplied more than once.")
        self.model_id = model_id


class StoreError(HarnessError):
    """Trial store failure."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message if path is None else f"{message} (store: {path})")
        self.path = path


class StoreIOError(StoreError):
    """Filesystem or database I/O failure while opening or writing the store."""


class StoreCorrupt(StoreError):
    """Existing store data cannot be parsed."""


class TrialError(RuntimeError):
    """Failure of one trial execution."""


class TrialRunError(TrialError):
    """Trial runner could not execute the trial."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class TrialAbandoned(TrialError):
    """Trial was interrupted by a stop request; its outcome is unknown."""
