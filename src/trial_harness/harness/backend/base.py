"""Trial runner interface consumed by the scheduler."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from trial_harness.harness.models import TrialKey, TrialOutcome


def _never() -> bool:
    return False


@dataclass(slots=True)
class TrialRequest:
    """Inputs required to execute one trial."""

    key: TrialKey
    timeout_seconds: float | None = None
    log_path: Path | None = None
    log_ref: str | None = None
    stop_requested: Callable[[], bool] = _never
    graceful_shutdown_seconds: float = 30.0


class TrialRunner(Protocol):
    """Protocol implemented by trial runners."""

    def run(self, request: TrialRequest) -> TrialOutcome:
        """Execute one trial and return its terminal outcome."""
