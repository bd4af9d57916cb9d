"""Progress reporter consuming scheduler events."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from trial_harness.harness.events import (
    EventChannel,
    HarnessEvent,
    RunFinished,
    RunStarted,
    RunStopping,
    TrialFinished,
    TrialInterrupted,
    event_to_dict,
)
from trial_harness.harness.models import OutcomeStatus

logger = logging.getLogger(__name__)

OUTPUT_MODES = ("progress", "json", "quiet")


@dataclass(slots=True)
class _ModelProgress:
    passed: int = 0
    failed: int = 0
    errored: int = 0

    @property
    def done(self) -> int:
        return self.passed + self.failed + self.errored


class ProgressReporter:
    """Render scheduler events on a background thread.

    Rendering errors are logged and counted; they never propagate into the
    run.
    """

    def __init__(
        self,
        channel: EventChannel,
        *,
        mode: str = "progress",
        echo: Callable[[str], None] = print,
    ) -> None:
        if mode not in OUTPUT_MODES:
            raise ValueError(f"Unsupported output mode: {mode!r}")
        self.channel = channel
        self.mode = mode
        self._echo = echo
        self.total = 0
        self.completed = 0
        self.render_failures = 0
        self.per_model: dict[str, _ModelProgress] = {}
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self.consume, daemon=True, name="trial-progress")
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        self._thread = None

    def consume(self) -> None:
        """Drain the channel until it is closed."""

        for event in self.channel:
            self.handle(event)

    def handle(self, event: HarnessEvent) -> None:
        self._track(event)
        if self.mode == "quiet":
            return
        try:
            line = self.render(event)
            if line is not None:
                self._echo(line)
        except Exception:  # noqa: BLE001
            self.render_failures += 1
            logger.warning("Progress render failed for %s", event.name, exc_info=True)

    def render(self, event: HarnessEvent) -> str | None:
        if self.mode == "json":
            return json.dumps(event_to_dict(event), sort_keys=True)
        if isinstance(event, RunStarted):
            return (
                f"Running {event.total} trials "
                f"(skipped={event.skipped} concurrency={event.concurrency})"
            )
        if isinstance(event, TrialFinished):
            key = event.key
            outcome = event.outcome
            model = self.per_model[key.model_id]
            duration = outcome.duration_seconds
            timing = f" ({duration:.1f}s)" if duration is not None else ""
            detail = f" - {outcome.detail}" if outcome.detail else ""
            return (
                f"[{self.completed}/{self.total}] {key.label()} "
                f"{outcome.status.value}{timing}{detail} | "
                f"{key.model_id}: passed={model.passed}/{model.done}"
            )
        if isinstance(event, TrialInterrupted):
            return f"Abandoned {event.key.label()}: {event.reason}"
        if isinstance(event, RunStopping):
            return f"Stopping: {event.reason}; waiting for in-flight trials"
        if isinstance(event, RunFinished):
            dropped = self.channel.dropped
            suffix = f" (dropped {dropped} progress events)" if dropped else ""
            return f"Finished {self.completed}/{self.total} trials{suffix}"
        return None

    def _track(self, event: HarnessEvent) -> None:
        if isinstance(event, RunStarted):
            self.total = event.total
            return
        if not isinstance(event, TrialFinished):
            return
        self.completed += 1
        model = self.per_model.setdefault(event.key.model_id, _ModelProgress())
        if event.outcome.status == OutcomeStatus.PASSED:
            model.passed += 1
        elif event.outcome.status == OutcomeStatus.FAILED:
            model.failed += 1
        else:
            model.errored += 1
