"""Benchmark task catalogs."""

from __future__ import annotations

from collections.abc import Iterable
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Protocol

from trial_harness.harness.errors import ConfigError
from trial_harness.harness.models import TaskId


class TaskCatalog(Protocol):
    """Source of benchmark task ids."""

    def list_tasks(self) -> list[TaskId]:
        """Return every known task id."""

    def describe(self) -> str:
        """Human-readable catalog location for error messages."""


class DirectoryTaskCatalog:
    """Tasks are the non-hidden entries of a tasks directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def list_tasks(self) -> list[TaskId]:
        if not self.root.is_dir():
            raise ConfigError(
                f"Tasks directory does not exist: {self.root}. "
                "Set TRIAL_HARNESS_TASKS_DIR or pass --tasks-dir.",
            )
        return sorted(
            entry.name for entry in self.root.iterdir() if not entry.name.startswith(".")
        )

    def describe(self) -> str:
        return f"tasks directory {self.root}"


class StaticTaskCatalog:
    """Fixed in-memory task list."""

    def __init__(self, task_ids: Iterable[TaskId]) -> None:
        self._task_ids = sorted(set(task_ids))

    def list_tasks(self) -> list[TaskId]:
        return list(self._task_ids)

    def describe(self) -> str:
        return f"static catalog ({len(self._task_ids)} tasks)"


def match_tasks(catalog: TaskCatalog, task_glob: str) -> list[TaskId]:
    """Catalog tasks matching ``task_glob``, sorted lexicographically."""

    return sorted(task_id for task_id in catalog.list_tasks() if fnmatchcase(task_id, task_glob))
