"""Resume planner: diff the requested key space against the trial store."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from trial_harness.harness.catalog import TaskCatalog, match_tasks
from trial_harness.harness.errors import NoMatchingTasks
from trial_harness.harness.models import (
    ModelId,
    OutcomeStatus,
    PendingSet,
    RunConfig,
    TaskId,
    TrialKey,
)
from trial_harness.harness.store import TrialStore

logger = logging.getLogger(__name__)


def plan(config: RunConfig, store: TrialStore, *, catalog: TaskCatalog) -> PendingSet:
    """Compute the keys that still need execution for ``config``.

    Keys are ordered task (lexicographic), then model (supplied order), then
    trial index. With ``resume`` every key holding a terminal record is
    skipped, unless it errored and ``rerun_errored`` is set. Without
    ``resume`` the whole key space is pending and existing records are
    reported as stale so the scheduler can discard them first.
    """

    config.validate()
    tasks = match_tasks(catalog, config.task_glob)
    if not tasks:
        raise NoMatchingTasks(config.task_glob, source=catalog.describe())

    pending: list[TrialKey] = []
    stale: list[TrialKey] = []
    skipped = 0
    total = 0
    for key in key_space(tasks=tasks, models=config.models, trials=config.trials):
        total += 1
        existing = store.get(key)
        if existing is None:
            pending.append(key)
            continue
        if not config.resume:
            pending.append(key)
            stale.append(key)
            continue
        if config.rerun_errored and existing.status == OutcomeStatus.ERRORED:
            pending.append(key)
            stale.append(key)
            continue
        skipped += 1

    logger.info(
        "Planned %d/%d trials (%d tasks x %d models x %d); skipped=%d stale=%d",
        len(pending),
        total,
        len(tasks),
        len(config.models),
        config.trials,
        skipped,
        len(stale),
    )
    return PendingSet(
        keys=tuple(pending),
        tasks=tuple(tasks),
        models=tuple(config.models),
        total=total,
        skipped=skipped,
        stale=tuple(stale),
    )


def key_space(
    *,
    tasks: list[TaskId] | tuple[TaskId, ...],
    models: tuple[ModelId, ...],
    trials: int,
) -> Iterator[TrialKey]:
    """Full ``tasks x models x [0, trials)`` key space in planning order."""

    for task_id in tasks:
        for model_id in models:
            for trial_index in range(trials):
                yield TrialKey(task_id, model_id, trial_index)
