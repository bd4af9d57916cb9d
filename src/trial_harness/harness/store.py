"""Durable trial record store backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import TypeVar

from alembic.util.exc import CommandError
from sqlalchemy import delete as sa_delete
from sqlalchemy import exc as sa_exc
from sqlalchemy import text, tuple_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, func, select

from trial_harness.harness.errors import StoreCorrupt, StoreIOError
from trial_harness.harness.models import OutcomeStatus, TrialKey, TrialOutcome, trial_log_ref
from trial_harness.storage.alembic_runner import upgrade_head
from trial_harness.storage.common import as_utc, build_sqlite_engine, utc_now
from trial_harness.storage.sqlmodel_models import TrialRecordRow

logger = logging.getLogger(__name__)

DB_FILENAME = "trials.db"
_SCAN_PAGE_SIZE = 500
_DISCARD_CHUNK_SIZE = 200

_T = TypeVar("_T")


class TrialStore:
    """Append-only record of terminal trial outcomes keyed by TrialKey."""

    def __init__(
        self,
        root: Path,
        *,
        busy_timeout_ms: int = 5_000,
        write_max_retries: int = 3,
        write_retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.root = root
        self.db_path = root / DB_FILENAME
        self.write_max_retries = write_max_retries
        self.write_retry_backoff_seconds = write_retry_backoff_seconds
        self.engine = build_sqlite_engine(db_path=self.db_path, busy_timeout_ms=busy_timeout_ms)
        self._write_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        write_max_retries: int = 3,
        write_retry_backoff_seconds: float = 0.5,
    ) -> TrialStore:
        """Open the store at ``path``, creating and migrating it when absent."""

        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StoreIOError(f"Cannot create save directory: {error}", path=path) from error

        store = cls(
            path,
            busy_timeout_ms=busy_timeout_ms,
            write_max_retries=write_max_retries,
            write_retry_backoff_seconds=write_retry_backoff_seconds,
        )
        try:
            store.init_schema()
        except BaseException:
            store.close()
            raise
        return store

    def init_schema(self) -> None:
        """Run schema migrations and verify database integrity."""

        try:
            upgrade_head(self.db_path)
            with self.engine.connect() as connection:
                verdict = connection.execute(text("PRAGMA quick_check")).scalar_one()
        except CommandError as error:
            raise StoreCorrupt(f"Unknown store schema revision: {error}", path=self.root) from error
        except sa_exc.OperationalError as error:
            raise StoreIOError(
                f"Cannot open trial database: {error.orig}",
                path=self.root,
            ) from error
        except sa_exc.DatabaseError as error:
            raise StoreCorrupt(
                f"Trial database is unreadable: {error.orig}",
                path=self.root,
            ) from error
        except OSError as error:
            raise StoreIOError(f"Cannot open trial database: {error}", path=self.root) from error
        if verdict != "ok":
            raise StoreCorrupt(f"Trial database failed integrity check: {verdict}", path=self.root)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __enter__(self) -> TrialStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def get(self, key: TrialKey) -> TrialOutcome | None:
        """Return the recorded outcome for ``key``, if any."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TrialRecordRow).where(
                    TrialRecordRow.task_id == key.task_id,
                    TrialRecordRow.model_id == key.model_id,
                    TrialRecordRow.trial_index == key.trial_index,
                ),
            ).one_or_none()
            if row is None:
                return None
            return _to_outcome(row, root=self.root)

    def put(self, key: TrialKey, outcome: TrialOutcome) -> bool:
        """Durably record ``outcome``. Returns False if ``key`` already had a record."""

        statement = (
            sqlite_insert(TrialRecordRow)
            .values(
                task_id=key.task_id,
                model_id=key.model_id,
                trial_index=key.trial_index,
                status=outcome.status.value,
                detail=outcome.detail,
                started_at=outcome.started_at,
                finished_at=outcome.finished_at,
                log_ref=outcome.log_ref,
                recorded_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["task_id", "model_id", "trial_index"])
        )

        def _insert() -> bool:
            with Session(self.engine) as session:
                result = session.exec(statement)  # type: ignore[call-overload]
                session.commit()
                return result.rowcount == 1

        inserted = self._write(_insert, what=f"record {key.label()}")
        if not inserted:
            logger.warning("Trial %s already has a terminal record; keeping it", key.label())
        return inserted

    def discard(self, keys: Iterable[TrialKey]) -> int:
        """Delete records for ``keys`` so they can be executed again."""

        pending = list(keys)
        if not pending:
            return 0

        def _delete() -> int:
            removed = 0
            with Session(self.engine) as session:
                for start in range(0, len(pending), _DISCARD_CHUNK_SIZE):
                    chunk = pending[start : start + _DISCARD_CHUNK_SIZE]
                    result = session.exec(  # type: ignore[call-overload]
                        sa_delete(TrialRecordRow).where(
                            tuple_(
                                col(TrialRecordRow.task_id),
                                col(TrialRecordRow.model_id),
                                col(TrialRecordRow.trial_index),
                            ).in_([tuple(key) for key in chunk]),
                        ),
                    )
                    removed += result.rowcount
                session.commit()
            return removed

        removed = self._write(_delete, what=f"discard of {len(pending)} records")
        logger.info("Discarded %d prior trial records", removed)
        return removed

    def all(self) -> Iterable[tuple[TrialKey, TrialOutcome]]:
        """Lazy, restartable enumeration of every record in key order."""

        return _RecordScan(self)

    def count(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(TrialRecordRow)).one()

    def log_path(self, key: TrialKey) -> Path:
        """Filesystem location reserved for the trial's log."""

        return self.root / trial_log_ref(key)

    def _write(self, operation: Callable[[], _T], *, what: str) -> _T:
        attempt = 0
        with self._write_lock:
            while True:
                attempt += 1
                try:
                    return operation()
                except sa_exc.OperationalError as error:
                    if attempt > self.write_max_retries:
                        raise StoreIOError(
                            f"Failed to persist {what} after {attempt} attempts: {error.orig}",
                            path=self.root,
                        ) from error
                    backoff = self.write_retry_backoff_seconds * attempt
                    logger.warning(
                        "Store write for %s failed (attempt %d/%d): %s; retrying in %.2fs",
                        what,
                        attempt,
                        self.write_max_retries + 1,
                        error.orig,
                        backoff,
                    )
                    time.sleep(backoff)
                except sa_exc.DatabaseError as error:
                    raise StoreCorrupt(
                        f"Failed to persist {what}: {error.orig}",
                        path=self.root,
                    ) from error

    def _scan_page(
        self,
        after: tuple[str, str, int] | None,
    ) -> list[TrialRecordRow]:
        statement = select(TrialRecordRow)
        if after is not None:
            statement = statement.where(
                tuple_(
                    col(TrialRecordRow.task_id),
                    col(TrialRecordRow.model_id),
                    col(TrialRecordRow.trial_index),
                )
                > tuple_(*after),
            )
        statement = statement.order_by(
            col(TrialRecordRow.task_id).asc(),
            col(TrialRecordRow.model_id).asc(),
            col(TrialRecordRow.trial_index).asc(),
        ).limit(_SCAN_PAGE_SIZE)
        with Session(self.engine) as session:
            return list(session.exec(statement).all())


class _RecordScan:
    """Iterable over store records; every ``iter()`` starts a fresh scan."""

    def __init__(self, store: TrialStore) -> None:
        self._store = store

    def __iter__(self) -> Iterator[tuple[TrialKey, TrialOutcome]]:
        after: tuple[str, str, int] | None = None
        while True:
            rows = self._store._scan_page(after)
            for row in rows:
                yield (
                    TrialKey(row.task_id, row.model_id, row.trial_index),
                    _to_outcome(row, root=self._store.root),
                )
            if len(rows) < _SCAN_PAGE_SIZE:
                return
            last = rows[-1]
            after = (last.task_id, last.model_id, last.trial_index)


def _to_outcome(row: TrialRecordRow, *, root: Path) -> TrialOutcome:
    try:
        status = OutcomeStatus(row.status)
    except ValueError as error:
        raise StoreCorrupt(
            "Unrecognized outcome status "
            f"{row.status!r} for {row.task_id}/{row.model_id}#{row.trial_index}",
            path=root,
        ) from error
    return TrialOutcome(
        status=status,
        detail=row.detail,
        started_at=as_utc(row.started_at),
        finished_at=as_utc(row.finished_at),
        log_ref=row.log_ref,
    )
