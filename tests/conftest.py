"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
import threading
import time
from collections.abc import Callable
from fnmatch import fnmatchcase
from pathlib import Path

import pytest

from trial_harness.harness.backend.base import TrialRequest
from trial_harness.harness.errors import TrialAbandoned, TrialRunError
from trial_harness.harness.models import ErrorCause, TrialKey, TrialOutcome
from trial_harness.harness.store import TrialStore

ECHO_RUNNER_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m trial_harness.harness.backend.echo_runner "
    "--task {task} --model {model} --trial {trial}"
)


@pytest.fixture(autouse=True)
def _clean_harness_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("TRIAL_HARNESS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def store(tmp_path: Path):
    trial_store = TrialStore.open(tmp_path / "save", write_retry_backoff_seconds=0.0)
    yield trial_store
    trial_store.close()


@pytest.fixture()
def tasks_dir(tmp_path: Path) -> Path:
    root = tmp_path / "tasks"
    for name in ("A", "B", "C-extra", ".hidden"):
        (root / name).mkdir(parents=True)
    return root


class ScriptedRunner:
    """In-process trial runner whose behaviour is picked by label globs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        delay: float = 0.0,
        fail: tuple[str, ...] = (),
        error: tuple[str, ...] = (),
        explode: tuple[str, ...] = (),
        unavailable: tuple[str, ...] = (),
        block: tuple[str, ...] = (),
        on_call: Callable[[TrialRequest], None] | None = None,
    ) -> None:
        self.delay = delay
        self.fail = fail
        self.error = error
        self.explode = explode
        self.unavailable = unavailable
        self.block = block
        self.on_call = on_call
        self.calls: list[TrialKey] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def run(self, request: TrialRequest) -> TrialOutcome:
        with self._lock:
            self.calls.append(request.key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return self._run(request)
        finally:
            with self._lock:
                self.in_flight -= 1

    def _run(self, request: TrialRequest) -> TrialOutcome:
        label = request.key.label()
        if self.on_call is not None:
            self.on_call(request)
        if _matches(label, self.block):
            while not request.stop_requested():
                time.sleep(0.01)
            raise TrialAbandoned(f"{label} interrupted")
        if self.delay:
            time.sleep(self.delay)
        if _matches(label, self.explode):
            raise RuntimeError("runner exploded")
        if _matches(label, self.unavailable):
            raise TrialRunError("agent endpoint unreachable", transient=True)
        if _matches(label, self.fail):
            return TrialOutcome.failed("wrong answer", log_ref=request.log_ref)
        if _matches(label, self.error):
            return TrialOutcome.errored(
                ErrorCause.BACKEND_TRANSIENT,
                "HTTP 429",
                log_ref=request.log_ref,
            )
        return TrialOutcome.passed(log_ref=request.log_ref)


def _matches(label: str, patterns: tuple[str, ...]) -> bool:
    return any(fnmatchcase(label, pattern) for pattern in patterns)


@pytest.fixture()
def scripted_runner() -> type[ScriptedRunner]:
    return ScriptedRunner


@pytest.fixture()
def echo_runner_template() -> str:
    return ECHO_RUNNER_COMMAND_TEMPLATE
