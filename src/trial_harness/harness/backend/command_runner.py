"""Subprocess-based trial runner for external agent commands."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO

from trial_harness.harness.backend.base import TrialRequest
from trial_harness.harness.errors import TrialAbandoned, TrialRunError
from trial_harness.harness.failure_classifier import classify_trial_failure
from trial_harness.harness.models import ErrorCause, TrialOutcome
from trial_harness.storage.common import utc_now

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_TAIL_CHARS = 16_000


class CommandTrialRunner:
    """Execute one command per trial and map its exit status to an outcome.

    Exit 0 is a pass, ``failed_exit_codes`` mean the model did not solve the
    task, anything else is classified as an error of the harness
    environment (quota, auth, transient backend trouble, ...).
    """

    def __init__(
        self,
        *,
        command_template: str,
        tasks_root: Path,
        failed_exit_codes: tuple[int, ...] = (1,),
        transient_exit_codes: tuple[int, ...] = (137, 143),
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.command_template = command_template
        self.tasks_root = tasks_root
        self.failed_exit_codes = failed_exit_codes
        self.transient_exit_codes = transient_exit_codes
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: TrialRequest) -> TrialOutcome:
        key = request.key
        task_path = self.tasks_root / key.task_id
        log_path = request.log_path or Path(os.devnull)
        if request.log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)

        values = {
            "task": key.task_id,
            "model": key.model_id,
            "trial": str(key.trial_index),
            "task_path": str(task_path),
            "log_file": str(log_path),
        }
        run_args = build_run_args(command_template=self.command_template, values=values)

        env = os.environ.copy()
        env["TRIAL_HARNESS_TASK"] = key.task_id
        env["TRIAL_HARNESS_MODEL"] = key.model_id
        env["TRIAL_HARNESS_TRIAL"] = str(key.trial_index)
        env["TRIAL_HARNESS_TASK_PATH"] = str(task_path)

        started_at = utc_now()
        try:
            with log_path.open("w", encoding="utf-8") as log_handle:
                exit_code, timed_out, stopped = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    log_handle=log_handle,
                    stop_requested=request.stop_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    poll_interval_seconds=self.poll_interval_seconds,
                )
        except FileNotFoundError as error:
            raise TrialRunError(
                f"Trial command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise TrialRunError(
                f"Trial command failed to start: {error}",
                transient=True,
            ) from error
        finished_at = utc_now()

        if stopped:
            raise TrialAbandoned(f"{key.label()} terminated by stop request")
        if exit_code != 0 and not timed_out and request.stop_requested():
            # Likely killed by the same signal that stopped the run.
            raise TrialAbandoned(f"{key.label()} exited {exit_code} after stop request")

        outcome = self._map_exit(
            model=key.model_id,
            exit_code=exit_code,
            timed_out=timed_out,
            timeout_seconds=request.timeout_seconds,
            log_path=request.log_path,
            log_ref=request.log_ref,
        )
        return outcome.with_timing(started_at=started_at, finished_at=finished_at)

    def _map_exit(  # noqa: PLR0913
        self,
        *,
        model: str,
        exit_code: int,
        timed_out: bool,
        timeout_seconds: float | None,
        log_path: Path | None,
        log_ref: str | None,
    ) -> TrialOutcome:
        if timed_out:
            return TrialOutcome.errored(
                ErrorCause.TIMEOUT,
                f"exceeded {timeout_seconds}s",
                log_ref=log_ref,
            )
        if exit_code == 0:
            return TrialOutcome.passed(log_ref=log_ref)
        if exit_code in self.failed_exit_codes:
            return TrialOutcome.failed(f"exit code {exit_code}", log_ref=log_ref)

        classified = classify_trial_failure(
            model=model,
            exit_code=exit_code,
            output=_read_tail(log_path),
            transient_exit_codes=self.transient_exit_codes,
        )
        logger.info(
            "Trial command exited %d: %s (rule=%s)",
            exit_code,
            classified.reason_code,
            classified.matched_rule,
        )
        return TrialOutcome.errored(
            classified.cause,
            classified.describe(exit_code=exit_code),
            log_ref=log_ref,
        )


def build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    """Render ``command_template`` into argv with shell-quoted placeholders."""

    stripped = command_template.strip()
    if not stripped:
        raise TrialRunError("Trial command template is empty.", transient=False)
    try:
        rendered = stripped.format(**{name: shlex.quote(value) for name, value in values.items()})
    except KeyError as error:
        raise TrialRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    except (IndexError, ValueError) as error:
        raise TrialRunError(f"Malformed command template: {error}", transient=False) from error

    argv = shlex.split(rendered)
    if not argv:
        raise TrialRunError("Trial command template rendered empty command.", transient=False)
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: float | None,
    log_handle: IO[str],
    stop_requested,
    graceful_shutdown_seconds: float,
    poll_interval_seconds: float,
) -> tuple[int, bool, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=log_handle,
        stderr=subprocess.STDOUT,
        text=True,
        # Own session: a terminal Ctrl-C reaches the harness, not the agent.
        start_new_session=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, False

        now = time.monotonic()
        if timeout_seconds is not None and now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, False

        if stop_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, False, True

        time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_tail(path: Path | None) -> str:
    if path is None or not path.exists():
        return ""
    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return ""
    return text[-_TAIL_CHARS:]
