"""Bounded-concurrency trial scheduler."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from typing import Any

from trial_harness.harness.backend.base import TrialRequest, TrialRunner
from trial_harness.harness.errors import StoreError, TrialAbandoned, TrialRunError
from trial_harness.harness.events import (
    EventChannel,
    HarnessEvent,
    RunFinished,
    RunStarted,
    RunStopping,
    TrialFinished,
    TrialInterrupted,
    TrialStarted,
)
from trial_harness.harness.models import (
    ErrorCause,
    PendingSet,
    RunSummary,
    TrialKey,
    TrialOutcome,
    trial_log_ref,
)
from trial_harness.harness.store import TrialStore
from trial_harness.storage.common import utc_now

logger = logging.getLogger(__name__)

_SUPERVISE_INTERVAL_SECONDS = 0.05


class TrialScheduler:
    """Execute a pending set with at most ``concurrency`` runner calls in flight.

    Every worker persists the outcome of its trial before it takes the next
    key, so a crash loses at most the trials that were in flight. Exactly-once
    recording is left to the store's primary key.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TrialStore,
        runner: TrialRunner,
        channel: EventChannel | None = None,
        concurrency: int = 1,
        trial_timeout_seconds: float | None = None,
        graceful_shutdown_seconds: float = 30.0,
        install_signal_handlers: bool = False,
    ) -> None:
        if concurrency < 1:
            raise ValueError("Scheduler concurrency must be >= 1.")
        if trial_timeout_seconds is not None and trial_timeout_seconds <= 0:
            raise ValueError("Trial timeout must be > 0 seconds.")
        self.store = store
        self.runner = runner
        self.channel = channel
        self.concurrency = concurrency
        self.trial_timeout_seconds = trial_timeout_seconds
        self.graceful_shutdown_seconds = max(0.0, graceful_shutdown_seconds)
        self.install_signal_handlers = install_signal_handlers
        self._stop = threading.Event()
        self._stop_reason: str | None = None
        self._state_lock = threading.Lock()
        self._fatal_error: StoreError | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, reason: str = "stop requested") -> None:
        """Stop admitting new trials; in-flight trials are asked to wind down."""

        with self._state_lock:
            if self._stop.is_set():
                return
            self._stop_reason = reason
            self._stop.set()
        logger.warning("Stopping trial admission: %s", reason)
        self._publish(RunStopping(reason=reason))

    def run(self, pending: PendingSet) -> RunSummary:
        """Execute ``pending`` and return aggregate counters.

        Raises the first ``StoreError`` hit while persisting, after in-flight
        trials have drained.
        """

        summary = RunSummary(planned=len(pending), skipped=pending.skipped)
        if pending.stale:
            self.store.discard(pending.stale)

        slots = min(self.concurrency, len(pending))
        logger.info(
            "Scheduling %d trials on %d slots (skipped=%d)",
            len(pending),
            slots,
            pending.skipped,
        )
        self._publish(
            RunStarted(total=len(pending), skipped=pending.skipped, concurrency=self.concurrency),
        )

        next_key = _admission(iter(pending.keys), stop=self._stop)
        with self._signal_handlers():
            if slots:
                with ThreadPoolExecutor(
                    max_workers=slots,
                    thread_name_prefix="trial-slot",
                ) as executor:
                    futures = [
                        executor.submit(self._slot_loop, next_key, summary) for _ in range(slots)
                    ]
                    for future in as_completed(futures):
                        future.result()

        summary.not_started = max(0, summary.planned - summary.executed - summary.abandoned)
        summary.stopped = self._stop.is_set()
        summary.stop_reason = self._stop_reason
        logger.info(
            "Run finished: executed=%d passed=%d failed=%d errored=%d "
            "abandoned=%d not_started=%d stopped=%s",
            summary.executed,
            summary.passed,
            summary.failed,
            summary.errored,
            summary.abandoned,
            summary.not_started,
            summary.stopped,
        )
        self._publish(RunFinished(summary=summary))

        if self._fatal_error is not None:
            raise self._fatal_error
        return summary

    def _slot_loop(self, next_key: Callable[[], TrialKey | None], summary: RunSummary) -> None:
        while True:
            key = next_key()
            if key is None:
                return
            self._run_one(key, summary)

    def _run_one(self, key: TrialKey, summary: RunSummary) -> None:
        logger.debug("Admitting trial %s", key.label())
        self._publish(TrialStarted(key=key))

        cancel = threading.Event()
        request = TrialRequest(
            key=key,
            timeout_seconds=self.trial_timeout_seconds,
            log_path=self.store.log_path(key),
            log_ref=trial_log_ref(key),
            stop_requested=lambda: cancel.is_set() or self._stop.is_set(),
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        started_at = utc_now()
        try:
            outcome = self._execute(request, cancel=cancel)
        except TrialAbandoned as error:
            reason = str(error) or "stop requested"
            logger.info("Trial %s abandoned: %s", key.label(), reason)
            with self._state_lock:
                summary.abandoned += 1
            self._publish(TrialInterrupted(key=key, reason=reason))
            return
        except Exception as error:
            logger.exception("Trial %s failed inside the scheduler", key.label())
            outcome = TrialOutcome.errored(
                ErrorCause.EXCEPTION,
                f"{type(error).__name__}: {error}",
                log_ref=request.log_ref,
            )
        outcome = outcome.with_timing(started_at=started_at, finished_at=utc_now())

        try:
            inserted = self.store.put(key, outcome)
        except StoreError as error:
            logger.error("Failed to persist %s: %s", key.label(), error)
            with self._state_lock:
                summary.abandoned += 1
                if self._fatal_error is None:
                    self._fatal_error = error
            self.request_stop(f"store error: {error}")
            return

        with self._state_lock:
            summary.record(outcome)
            if not inserted:
                summary.conflicts += 1
        self._publish(TrialFinished(key=key, outcome=outcome))

    def _execute(self, request: TrialRequest, *, cancel: threading.Event) -> TrialOutcome:
        """Run ``request`` on a helper thread under timeout and stop supervision."""

        label = request.key.label()
        result: dict[str, Any] = {}
        done = threading.Event()

        def _call() -> None:
            try:
                result["outcome"] = self.runner.run(request)
            except BaseException as error:  # noqa: BLE001
                result["error"] = error
            finally:
                done.set()

        worker = threading.Thread(target=_call, daemon=True, name=f"trial-{label}")
        worker.start()

        timeout = self.trial_timeout_seconds
        deadline = None if timeout is None else time.monotonic() + timeout
        stop_deadline: float | None = None
        while not done.wait(_SUPERVISE_INTERVAL_SECONDS):
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                cancel.set()
                logger.warning("Trial %s exceeded %ss; cancelling", label, timeout)
                if not done.wait(self.graceful_shutdown_seconds):
                    logger.warning(
                        "Trial %s ignored cancellation for %.1fs; leaving it behind",
                        label,
                        self.graceful_shutdown_seconds,
                    )
                return TrialOutcome.errored(
                    ErrorCause.TIMEOUT,
                    f"exceeded {timeout}s",
                    log_ref=request.log_ref,
                )
            if self._stop.is_set():
                if stop_deadline is None:
                    stop_deadline = now + self.graceful_shutdown_seconds
                elif now >= stop_deadline:
                    raise TrialAbandoned(
                        f"{label} still running {self.graceful_shutdown_seconds}s "
                        "after stop request",
                    )

        error = result.get("error")
        if error is None:
            outcome = result.get("outcome")
            if not isinstance(outcome, TrialOutcome):
                logger.warning("Trial %s runner returned %r", label, outcome)
                return TrialOutcome.errored(
                    ErrorCause.EXCEPTION,
                    f"runner returned {type(outcome).__name__} instead of TrialOutcome",
                    log_ref=request.log_ref,
                )
            return outcome
        if isinstance(error, TrialAbandoned):
            raise error
        if isinstance(error, TrialRunError):
            cause = ErrorCause.BACKEND_TRANSIENT if error.transient else ErrorCause.LAUNCH_FAILED
            logger.warning("Trial %s could not run: %s", label, error)
            return TrialOutcome.errored(cause, str(error), log_ref=request.log_ref)
        if isinstance(error, Exception):
            logger.warning("Trial %s raised %s", label, type(error).__name__, exc_info=error)
            return TrialOutcome.errored(
                ErrorCause.EXCEPTION,
                f"{type(error).__name__}: {error}",
                log_ref=request.log_ref,
            )
        raise error

    def _publish(self, event: HarnessEvent) -> None:
        if self.channel is not None:
            self.channel.publish(event)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers or not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(f"received {name}")

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _admission(keys: Iterator[TrialKey], *, stop: threading.Event) -> Callable[[], TrialKey | None]:
    """Thread-safe key source that yields nothing once ``stop`` is set."""

    lock = threading.Lock()

    def _next_key() -> TrialKey | None:
        with lock:
            if stop.is_set():
                return None
            return next(keys, None)

    return _next_key
