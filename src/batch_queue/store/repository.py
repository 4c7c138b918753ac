"""Persistent task store for batch queues."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from batch_queue.errors import StoreError, TaskExistsError
from batch_queue.models import (
    ClaimFilters,
    LeaseSessionView,
    QueueTaskCreate,
    QueueTaskView,
    RetryPolicy,
    StatusTally,
    TaskStatus,
)
from batch_queue.store.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from batch_queue.store.schema import upgrade_head
from batch_queue.store.sqlmodel_models import QueueSession, QueueTask

logger = logging.getLogger(__name__)


class TaskStore:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every mutation of a task row is a single conditional ``UPDATE`` so that
    concurrent processes coordinate through the database alone.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        with self._store_errors("initializing schema"):
            upgrade_head(self.db_path)

    # Tasks

    def create_task(
        self,
        *,
        queue_name: str,
        parameters: str,
        payload: QueueTaskCreate,
        policy: RetryPolicy,
        lease_id: str | None = None,
    ) -> QueueTaskView:
        """Insert one pending task, optionally replacing an unowned one."""

        now = utc_now()
        expires_at = (
            now + timedelta(seconds=policy.lifetime_seconds)
            if policy.lifetime_seconds is not None
            else None
        )
        with self._store_errors(f"creating task {payload.task_key!r}"), Session(self.engine) as session:
            existing = session.exec(
                select(QueueTask).where(
                    QueueTask.queue_name == queue_name,
                    QueueTask.parameters == parameters,
                    QueueTask.task_key == payload.task_key,
                ),
            ).one_or_none()
            if existing is not None:
                if not payload.replace_existing:
                    raise TaskExistsError(payload.task_key)
                if existing.lease_id is not None and existing.lease_id != lease_id:
                    raise TaskExistsError(
                        payload.task_key,
                        details="Task is owned by another processor",
                    )
                session.delete(existing)
                session.flush()

            row = QueueTask(
                queue_name=queue_name,
                task_key=payload.task_key,
                parameters=parameters,
                data1=payload.data1,
                data2=payload.data2,
                data3=payload.data3,
                status=TaskStatus.PENDING.value,
                attempts=0,
                max_attempts=policy.max_attempts,
                expires_at=to_db_datetime(expires_at) if expires_at is not None else None,
                lease_id=lease_id if payload.take_ownership else None,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise TaskExistsError(payload.task_key) from error
            session.refresh(row)
            return _to_task_view(row)

    def claim_batch(
        self,
        *,
        queue_name: str,
        parameters: str,
        max_size: int,
        lease_id: str,
        filters: ClaimFilters | None = None,
    ) -> int:
        """Atomically assign up to ``max_size`` eligible unclaimed tasks to a lease."""

        now = to_db_datetime(utc_now())
        candidates = (
            sa_select(QueueTask.record_id)
            .where(
                *_partition_clauses(queue_name, parameters),
                *_eligible_clauses(now),
                col(QueueTask.lease_id).is_(None),
                *_filter_clauses(filters),
            )
            .order_by(col(QueueTask.record_id).asc())
            .limit(max_size)
        )
        with self._store_errors("claiming tasks"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.record_id).in_(candidates),
                    col(QueueTask.lease_id).is_(None),
                    col(QueueTask.status) == TaskStatus.PENDING.value,
                )
                .values(lease_id=lease_id)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return int(result.rowcount or 0)

    def fetch_by_lease(self, *, lease_id: str) -> list[QueueTaskView]:
        """Return pending, still-eligible tasks held by a lease in insertion order."""

        now = to_db_datetime(utc_now())
        with self._store_errors("loading leased tasks"), Session(self.engine) as session:
            rows = session.exec(
                select(QueueTask)
                .where(
                    QueueTask.lease_id == lease_id,
                    *_eligible_clauses(now),
                )
                .order_by(col(QueueTask.record_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def set_status(  # noqa: PLR0913
        self,
        *,
        record_id: int,
        lease_id: str,
        status: TaskStatus,
        error_status: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Record the outcome of one attempt on a task still held by ``lease_id``.

        Increments ``attempts`` and clears the lease. Returns False when the
        row is no longer pending under that lease.
        """

        now = utc_now()
        with self._store_errors(f"updating task {record_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.record_id) == record_id,
                    col(QueueTask.lease_id) == lease_id,
                    col(QueueTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    attempts=QueueTask.attempts + 1,
                    lease_id=None,
                    completed_at=to_db_datetime(now) if status.terminal else None,
                    error_status=error_status,
                    error_message=error_message,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_by_lease(self, *, lease_id: str, count_attempt: bool = True) -> int:
        """Return pending tasks held by a lease to the queue and drop the session."""

        values: dict[str, object] = {"lease_id": None}
        if count_attempt:
            values["attempts"] = QueueTask.attempts + 1
        with self._store_errors(f"releasing lease {lease_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.lease_id) == lease_id,
                    col(QueueTask.status) == TaskStatus.PENDING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False),
            )
            session.exec(sa_delete(QueueSession).where(col(QueueSession.session_id) == lease_id))
            session.commit()
            return int(result.rowcount or 0)

    def release_orphaned(self, *, queue_name: str) -> int:
        """Release pending tasks whose lease session is gone or expired."""

        now = to_db_datetime(utc_now())
        live_sessions = sa_select(QueueSession.session_id).where(
            col(QueueSession.expires_at) >= now,
        )
        with self._store_errors("clearing sessions"), Session(self.engine) as session:
            session.exec(sa_delete(QueueSession).where(col(QueueSession.expires_at) < now))
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.queue_name) == queue_name,
                    col(QueueTask.status) == TaskStatus.PENDING.value,
                    col(QueueTask.lease_id).is_not(None),
                    col(QueueTask.lease_id).not_in(live_sessions),
                )
                .values(lease_id=None, attempts=QueueTask.attempts + 1)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return int(result.rowcount or 0)

    def mark_exhausted_failed(self, *, queue_name: str, parameters: str) -> int:
        """Move unclaimed pending tasks with no retry budget left to failure."""

        now = to_db_datetime(utc_now())
        with self._store_errors("marking tasks failed"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    *_partition_clauses(queue_name, parameters),
                    col(QueueTask.status) == TaskStatus.PENDING.value,
                    col(QueueTask.lease_id).is_(None),
                    or_(
                        (col(QueueTask.max_attempts).is_not(None))
                        & (col(QueueTask.attempts) >= col(QueueTask.max_attempts)),
                        (col(QueueTask.expires_at).is_not(None))
                        & (col(QueueTask.expires_at) < now),
                    ),
                )
                .values(status=TaskStatus.FAILURE.value, completed_at=now)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return int(result.rowcount or 0)

    def clear_partition(self, *, queue_name: str, parameters: str) -> int:
        """Force-release every claimed pending task of a partition."""

        with self._store_errors("clearing partition"), Session(self.engine) as session:
            released = session.exec(
                sa_update(QueueTask)
                .where(
                    *_partition_clauses(queue_name, parameters),
                    col(QueueTask.lease_id).is_not(None),
                    col(QueueTask.status) == TaskStatus.PENDING.value,
                )
                .values(lease_id=None, attempts=QueueTask.attempts + 1)
                .execution_options(synchronize_session=False),
            )
            session.exec(
                sa_update(QueueTask)
                .where(
                    *_partition_clauses(queue_name, parameters),
                    col(QueueTask.lease_id).is_not(None),
                    col(QueueTask.status) != TaskStatus.PENDING.value,
                )
                .values(lease_id=None)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return int(released.rowcount or 0)

    def delete_by_partition(self, *, queue_name: str, parameters: str) -> int:
        """Delete every task of a partition."""

        with self._store_errors("deleting partition"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueTask).where(*_partition_clauses(queue_name, parameters)),
            )
            session.commit()
            return int(result.rowcount or 0)

    def prune(
        self,
        *,
        queue_name: str,
        older_than: datetime | None,
        statuses: Iterable[TaskStatus] = (),
    ) -> int:
        """Delete tasks of a queue created before ``older_than`` with given statuses."""

        clauses: list[ColumnElement[bool]] = [col(QueueTask.queue_name) == queue_name]
        if older_than is not None:
            clauses.append(col(QueueTask.created_at) < to_db_datetime(older_than))
        status_values = [status.value for status in statuses]
        if status_values:
            clauses.append(col(QueueTask.status).in_(status_values))
        with self._store_errors(f"pruning queue {queue_name!r}"), Session(self.engine) as session:
            result = session.exec(sa_delete(QueueTask).where(*clauses))
            session.commit()
            return int(result.rowcount or 0)

    def count_by_status(self, *, queue_name: str, parameters: str) -> StatusTally:
        """Tally tasks of a partition by status."""

        with self._store_errors("counting tasks"), Session(self.engine) as session:
            rows = session.exec(
                select(QueueTask.status, func.count())
                .where(*_partition_clauses(queue_name, parameters))
                .group_by(QueueTask.status),
            ).all()
        tally = StatusTally()
        for status, count in rows:
            setattr(tally, TaskStatus(status).value, int(count))
        return tally

    def count_tasks(self, *, queue_name: str, parameters: str) -> int:
        with self._store_errors("counting tasks"), Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(QueueTask)
                    .where(*_partition_clauses(queue_name, parameters)),
                ).one(),
            )

    def get_task(self, *, queue_name: str, parameters: str, task_key: str) -> QueueTaskView | None:
        with self._store_errors(f"loading task {task_key!r}"), Session(self.engine) as session:
            row = session.exec(
                select(QueueTask).where(
                    *_partition_clauses(queue_name, parameters),
                    QueueTask.task_key == task_key,
                ),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        queue_name: str,
        parameters: str,
        status: TaskStatus | None = None,
    ) -> list[QueueTaskView]:
        """List tasks of a partition in insertion order."""

        statement = (
            select(QueueTask)
            .where(*_partition_clauses(queue_name, parameters))
            .order_by(col(QueueTask.record_id).asc())
        )
        if status is not None:
            statement = statement.where(QueueTask.status == status.value)
        with self._store_errors("listing tasks"), Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    # Lease sessions

    def create_session(
        self,
        *,
        session_id: str,
        queue_name: str,
        lifetime_seconds: int,
    ) -> LeaseSessionView:
        now = utc_now()
        with self._store_errors("starting session"), Session(self.engine) as session:
            row = QueueSession(
                session_id=session_id,
                queue_name=queue_name,
                created_at=to_db_datetime(now),
                expires_at=to_db_datetime(now + timedelta(seconds=lifetime_seconds)),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row)

    def get_session(self, *, session_id: str) -> LeaseSessionView | None:
        with self._store_errors("loading session"), Session(self.engine) as session:
            row = session.exec(
                select(QueueSession).where(QueueSession.session_id == session_id),
            ).one_or_none()
        return _to_session_view(row) if row is not None else None

    def session_expired(self, *, session_id: str) -> bool:
        """True when the session row is gone or its expiry has passed."""

        current = self.get_session(session_id=session_id)
        return current is None or current.expires_at < utc_now()

    def touch_session(self, *, session_id: str, lifetime_seconds: int) -> bool:
        """Push a live session's expiry to ``lifetime_seconds`` from now.

        Returns False when the session row is gone or already expired.
        """

        now = utc_now()
        with self._store_errors("touching session"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueSession)
                .where(
                    col(QueueSession.session_id) == session_id,
                    col(QueueSession.expires_at) >= to_db_datetime(now),
                )
                .values(expires_at=to_db_datetime(now + timedelta(seconds=lifetime_seconds)))
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return result.rowcount == 1

    def end_session(self, *, session_id: str) -> bool:
        """Drop a session row; its remaining pending tasks become orphaned."""

        with self._store_errors("ending session"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueSession).where(col(QueueSession.session_id) == session_id),
            )
            session.commit()
            return bool(result.rowcount)

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as error:
            logger.debug("Task store failure while %s", operation, exc_info=True)
            raise StoreError(f"Task store failed {operation}: {error}") from error


def _partition_clauses(queue_name: str, parameters: str) -> list[ColumnElement[bool]]:
    return [
        col(QueueTask.queue_name) == queue_name,
        col(QueueTask.parameters) == parameters,
    ]


def _eligible_clauses(now: datetime) -> list[ColumnElement[bool]]:
    return [
        col(QueueTask.status) == TaskStatus.PENDING.value,
        or_(col(QueueTask.expires_at).is_(None), col(QueueTask.expires_at) >= now),
        or_(
            col(QueueTask.max_attempts).is_(None),
            col(QueueTask.attempts) < col(QueueTask.max_attempts),
        ),
    ]


def _filter_clauses(filters: ClaimFilters | None) -> list[ColumnElement[bool]]:
    if filters is None:
        return []
    return [col(getattr(QueueTask, name)).in_(values) for name, values in filters.items()]


def _to_task_view(row: QueueTask) -> QueueTaskView:
    return QueueTaskView(
        record_id=row.record_id or 0,
        queue_name=row.queue_name,
        task_key=row.task_key,
        parameters=row.parameters,
        data1=row.data1,
        data2=row.data2,
        data3=row.data3,
        status=TaskStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        expires_at=to_utc_aware_datetime(row.expires_at) if row.expires_at is not None else None,
        lease_id=row.lease_id,
        error_status=row.error_status,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )


def _to_session_view(row: QueueSession) -> LeaseSessionView:
    return LeaseSessionView(
        session_id=row.session_id,
        queue_name=row.queue_name,
        created_at=to_utc_aware_datetime(row.created_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
    )
