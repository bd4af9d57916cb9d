"""Per-model summaries read back from the trial store."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

from trial_harness.harness.models import ModelId, OutcomeStatus
from trial_harness.harness.store import TrialStore


@dataclass(slots=True)
class ModelTally:
    """Outcome counts for one model."""

    passed: int = 0
    failed: int = 0
    errored: int = 0
    duration_total_seconds: float = 0.0
    timed_samples: int = 0
    error_causes: Counter[str] = field(default_factory=Counter)

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.errored

    @property
    def pass_rate(self) -> float | None:
        """Share of recorded trials that passed; errored trials count against it."""

        if self.total == 0:
            return None
        return self.passed / self.total

    @property
    def mean_duration_seconds(self) -> float | None:
        if self.timed_samples == 0:
            return None
        return self.duration_total_seconds / self.timed_samples


def summarize(
    store: TrialStore,
    *,
    models: Sequence[ModelId] | None = None,
) -> dict[ModelId, ModelTally]:
    """Tally every record in ``store`` per model.

    Reads only; safe to call while a run is writing. With ``models`` the
    result follows that order, includes zero tallies for models without
    records and ignores everything else. Otherwise models are sorted.
    """

    wanted = None if models is None else set(models)
    tallies: dict[ModelId, ModelTally] = {}
    for key, outcome in store.all():
        if wanted is not None and key.model_id not in wanted:
            continue
        tally = tallies.setdefault(key.model_id, ModelTally())
        if outcome.status == OutcomeStatus.PASSED:
            tally.passed += 1
        elif outcome.status == OutcomeStatus.FAILED:
            tally.failed += 1
        else:
            tally.errored += 1
            tally.error_causes[outcome.error_cause or "unknown"] += 1
        duration = outcome.duration_seconds
        if duration is not None:
            tally.duration_total_seconds += duration
            tally.timed_samples += 1

    order = list(models) if models is not None else sorted(tallies)
    return {model_id: tallies.get(model_id, ModelTally()) for model_id in order}


def render_summary_lines(tallies: dict[ModelId, ModelTally]) -> list[str]:
    """Render operator-facing summary lines for CLI output."""

    if not tallies:
        return ["No trial records."]
    lines = ["Per-model results:"]
    for model_id, tally in tallies.items():
        line = (
            f"  {model_id}: passed={tally.passed} failed={tally.failed} "
            f"errored={tally.errored} total={tally.total} "
            f"pass_rate={_fmt_ratio(tally.pass_rate)} "
            f"mean_duration={_fmt_seconds(tally.mean_duration_seconds)}"
        )
        if tally.error_causes:
            line += f" causes[{_fmt_key_value(dict(tally.error_causes))}]"
        lines.append(line)
    return lines


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_seconds(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.1f}s"


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
