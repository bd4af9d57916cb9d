"""Structured lifecycle events and the bounded channel that carries them."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from trial_harness.harness.models import RunSummary, TrialKey, TrialOutcome
from trial_harness.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunStarted:
    """The scheduler accepted a pending set."""

    name: ClassVar[str] = "run_started"

    total: int
    skipped: int
    concurrency: int
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class TrialStarted:
    """A worker admitted one trial."""

    name: ClassVar[str] = "trial_started"

    key: TrialKey
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class TrialFinished:
    """A trial reached a terminal outcome and was persisted."""

    name: ClassVar[str] = "trial_finished"

    key: TrialKey
    outcome: TrialOutcome
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class TrialInterrupted:
    """A trial was interrupted by a stop request and left pending."""

    name: ClassVar[str] = "trial_interrupted"

    key: TrialKey
    reason: str
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class RunStopping:
    """Admission of new trials stopped."""

    name: ClassVar[str] = "run_stopping"

    reason: str
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class RunFinished:
    """The scheduler returned."""

    name: ClassVar[str] = "run_finished"

    summary: RunSummary
    at: datetime = field(default_factory=utc_now)


HarnessEvent = (
    RunStarted | TrialStarted | TrialFinished | TrialInterrupted | RunStopping | RunFinished
)


def event_to_dict(event: HarnessEvent) -> dict[str, Any]:
    """JSON-friendly representation of one event."""

    payload: dict[str, Any] = {"event": event.name, "at": event.at.isoformat()}
    if isinstance(event, RunStarted):
        payload.update(total=event.total, skipped=event.skipped, concurrency=event.concurrency)
    elif isinstance(event, TrialStarted):
        payload.update(_key_fields(event.key))
    elif isinstance(event, TrialFinished):
        payload.update(_key_fields(event.key))
        payload.update(
            status=event.outcome.status.value,
            detail=event.outcome.detail,
            duration_seconds=event.outcome.duration_seconds,
            log_ref=event.outcome.log_ref,
        )
    elif isinstance(event, TrialInterrupted):
        payload.update(_key_fields(event.key))
        payload["reason"] = event.reason
    elif isinstance(event, RunStopping):
        payload["reason"] = event.reason
    else:
        summary = event.summary
        payload.update(
            planned=summary.planned,
            executed=summary.executed,
            passed=summary.passed,
            failed=summary.failed,
            errored=summary.errored,
            abandoned=summary.abandoned,
            not_started=summary.not_started,
            stopped=summary.stopped,
        )
    return payload


def _key_fields(key: TrialKey) -> dict[str, Any]:
    return {"task": key.task_id, "model": key.model_id, "trial": key.trial_index}


class EventChannel:
    """Bounded multi-producer, single-consumer event queue.

    ``publish`` never blocks: when the buffer is full the event is dropped
    and counted, so a slow consumer cannot stall trial execution. The final
    ``RunFinished`` event is always accepted.
    """

    def __init__(self, capacity: int = 1_000) -> None:
        if capacity < 1:
            raise ValueError("Event channel capacity must be >= 1.")
        self.capacity = capacity
        self._queue: queue.Queue[HarnessEvent] = queue.Queue(maxsize=capacity + 1)
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._dropped = 0

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def publish(self, event: HarnessEvent) -> bool:
        """Enqueue ``event``; returns False if it was dropped."""

        if self._closed.is_set():
            return False
        with self._lock:
            # One slot past capacity stays free for RunFinished.
            if not isinstance(event, RunFinished) and self._queue.qsize() >= self.capacity:
                self._dropped += 1
                logger.debug("Event buffer full; dropped %s", event.name)
                return False
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                self._dropped += 1
                logger.debug("Event buffer full; dropped %s", event.name)
                return False
        return True

    def close(self) -> None:
        """Stop accepting events; consumers drain what is buffered, then stop."""

        self._closed.set()

    def get(self, timeout: float | None = None) -> HarnessEvent | None:
        """Next event, or None once the channel is closed and drained."""

        deadline_wait = 0.1 if timeout is None else min(0.1, timeout)
        waited = 0.0
        while True:
            try:
                return self._queue.get(timeout=deadline_wait)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    return None
                waited += deadline_wait
                if timeout is not None and waited >= timeout:
                    return None

    def __iter__(self) -> Iterator[HarnessEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event
