"""Domain models for benchmark trials."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import NamedTuple

from trial_harness.harness.errors import ConfigError, DuplicateModel, EmptyModelList

TaskId = str
ModelId = str


class TrialKey(NamedTuple):
    """Unique identity of one unit of work."""

    task_id: TaskId
    model_id: ModelId
    trial_index: int

    def label(self) -> str:
        return f"{self.task_id}/{self.model_id}#{self.trial_index}"


class OutcomeStatus(str, Enum):
    """Terminal trial states."""

    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


class ErrorCause(str, Enum):
    """Normalized causes recorded for errored trials."""

    TIMEOUT = "timeout"
    EXCEPTION = "exception"
    LAUNCH_FAILED = "launch_failed"
    BACKEND_TRANSIENT = "backend_transient"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    NONZERO_EXIT = "nonzero_exit"


@dataclass(frozen=True, slots=True)
class TrialOutcome:
    """Terminal result of one trial."""

    status: OutcomeStatus
    detail: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    log_ref: str | None = None

    @classmethod
    def passed(cls, *, log_ref: str | None = None) -> TrialOutcome:
        return cls(status=OutcomeStatus.PASSED, log_ref=log_ref)

    @classmethod
    def failed(cls, reason: str, *, log_ref: str | None = None) -> TrialOutcome:
        return cls(status=OutcomeStatus.FAILED, detail=reason, log_ref=log_ref)

    @classmethod
    def errored(
        cls,
        cause: ErrorCause,
        message: str = "",
        *,
        log_ref: str | None = None,
    ) -> TrialOutcome:
        detail = f"{cause.value}: {message}" if message else cause.value
        return cls(status=OutcomeStatus.ERRORED, detail=detail, log_ref=log_ref)

    @property
    def error_cause(self) -> str | None:
        """Cause code of an errored outcome, if any."""

        if self.status != OutcomeStatus.ERRORED or not self.detail:
            return None
        return self.detail.split(":", 1)[0]

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def with_timing(self, *, started_at: datetime, finished_at: datetime) -> TrialOutcome:
        """Fill timing fields the runner left empty."""

        return replace(
            self,
            started_at=self.started_at or started_at,
            finished_at=self.finished_at or finished_at,
        )


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Immutable configuration for one harness invocation."""

    task_glob: str
    models: tuple[ModelId, ...]
    trials: int
    save_path: Path
    concurrency: int = 1
    resume: bool = False
    rerun_errored: bool = False
    trial_timeout_seconds: float | None = None

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot produce a valid key space."""

        if not self.task_glob.strip():
            raise ConfigError("Task glob must not be empty.")
        if not self.models:
            raise EmptyModelList()
        seen: set[str] = set()
        for model_id in self.models:
            if not model_id.strip():
                raise ConfigError("Model ids must not be blank.")
            if model_id in seen:
                raise DuplicateModel(model_id)
            seen.add(model_id)
        if self.trials < 1:
            raise ConfigError(f"Trial count must be >= 1, got {self.trials}.")
        if self.concurrency < 1:
            raise ConfigError(f"Concurrency must be >= 1, got {self.concurrency}.")
        if self.trial_timeout_seconds is not None and self.trial_timeout_seconds <= 0:
            raise ConfigError(
                f"Trial timeout must be > 0 seconds, got {self.trial_timeout_seconds}.",
            )


@dataclass(frozen=True, slots=True)
class PendingSet:
    """Keys that still need execution for one run configuration."""

    keys: tuple[TrialKey, ...]
    tasks: tuple[TaskId, ...]
    models: tuple[ModelId, ...]
    total: int
    skipped: int = 0
    stale: tuple[TrialKey, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.keys)

    def __iter__(self) -> Iterator[TrialKey]:
        return iter(self.keys)


@dataclass(slots=True)
class RunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    planned: int = 0
    executed: int = 0
    passed: int = 0
    failed: int = 0
    errored: int = 0
    abandoned: int = 0
    not_started: int = 0
    conflicts: int = 0
    skipped: int = 0
    stopped: bool = False
    stop_reason: str | None = None

    def record(self, outcome: TrialOutcome) -> None:
        self.executed += 1
        if outcome.status == OutcomeStatus.PASSED:
            self.passed += 1
        elif outcome.status == OutcomeStatus.FAILED:
            self.failed += 1
        else:
            self.errored += 1


def trial_log_ref(key: TrialKey) -> str:
    """Save-dir relative log location for one trial."""

    return "/".join(
        (
            "logs",
            _safe_segment(key.task_id),
            _safe_segment(key.model_id),
            f"trial-{key.trial_index}.log",
        ),
    )


def _safe_segment(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in "-_." else "_" for char in value)
    return cleaned.strip(".") or "_"
