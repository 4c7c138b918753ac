"""Lease manager: one claim window over a queue partition."""

from __future__ import annotations

import logging
from uuid import uuid4

from batch_queue.errors import TaskError, ValidationError
from batch_queue.models import (
    ClaimFilters,
    QueueTaskCreate,
    QueueTaskView,
    RetryPolicy,
    TaskOutcome,
    TaskStatus,
)
from batch_queue.store.common import utc_now
from batch_queue.store.repository import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_LEASE_LIFETIME_SECONDS = 3_600


class LeaseManager:
    """Mediates all task store access on behalf of one lease.

    A manager built without ``session_id`` starts its session lazily on the
    first claim. A manager built with ``session_id`` is bound to a lease that
    another process already claimed and never claims on its own.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        queue_name: str,
        parameters: str = "",
        policy: RetryPolicy | None = None,
        lease_lifetime_seconds: int = DEFAULT_LEASE_LIFETIME_SECONDS,
        session_id: str | None = None,
    ) -> None:
        if lease_lifetime_seconds < 1:
            raise ValidationError("Session lifetime must be positive")
        self.store = store
        self.queue_name = queue_name
        self.parameters = parameters
        self.policy = policy
        self.lease_lifetime_seconds = lease_lifetime_seconds
        self._session_id = session_id or uuid4().hex
        self._session_started = session_id is not None

    @property
    def session_id(self) -> str:
        return self._session_id

    def create_task(self, payload: QueueTaskCreate) -> QueueTaskView:
        """Create a task in this manager's partition using its retry policy."""

        if self.policy is None:
            raise ValidationError(
                "Missing 'max_attempts' or 'lifetime'",
                code="MISSING_PARAMETER",
            )
        if payload.take_ownership:
            self._ensure_session()
        task = self.store.create_task(
            queue_name=self.queue_name,
            parameters=self.parameters,
            payload=payload,
            policy=self.policy,
            lease_id=self.session_id,
        )
        logger.debug("Queue %r: created task %s", self.queue_name, task.task_key)
        return task

    def claim_tasks(self, max_batch_size: int, filters: ClaimFilters | None = None) -> int:
        """Claim up to ``max_batch_size`` tasks; returns the number claimed."""

        if max_batch_size < 1:
            raise ValidationError(f"maxTasks must be positive; found {max_batch_size}")
        self._ensure_session()
        claimed = self.store.claim_batch(
            queue_name=self.queue_name,
            parameters=self.parameters,
            max_size=max_batch_size,
            lease_id=self.session_id,
            filters=filters,
        )
        logger.debug("Queue %r: lease %s claimed %d tasks", self.queue_name, self.session_id, claimed)
        return claimed

    def load_tasks(self) -> list[QueueTaskView]:
        """Tasks currently held by this lease."""

        return self.store.fetch_by_lease(lease_id=self.session_id)

    def update_task_status(
        self,
        task: QueueTaskView,
        outcome: TaskOutcome,
        error: TaskError | None = None,
    ) -> TaskStatus | None:
        """Record one processing attempt and decide retry versus terminal failure.

        Returns the new status, or None when this lease no longer holds the task.
        """

        if outcome is TaskOutcome.SUCCESS and error is not None:
            raise ValidationError(
                "An error is incompatible with a successful outcome",
                code="INCONSISTENT_PARAMETERS",
            )
        if outcome is TaskOutcome.SUCCESS:
            status = TaskStatus.SUCCESS
        elif self._budget_exhausted(task):
            status = TaskStatus.FAILURE
        else:
            status = TaskStatus.PENDING

        updated = self.store.set_status(
            record_id=task.record_id,
            lease_id=self.session_id,
            status=status,
            error_status=error.error_status if error is not None else None,
            error_message=error.message if error is not None else None,
        )
        if not updated:
            logger.warning(
                "Queue %r: task %s is no longer held by lease %s; outcome %s dropped",
                self.queue_name,
                task.task_key,
                self.session_id,
                outcome.value,
            )
            return None
        if status is TaskStatus.FAILURE:
            logger.critical(
                "Queue %r: task %s failed permanently after %d attempts: %s",
                self.queue_name,
                task.task_key,
                task.attempts + 1,
                error.message if error is not None else "",
            )
        return status

    def clear_sessions(self) -> int:
        """Release pending tasks held by expired or ended leases of this queue."""

        released = self.store.release_orphaned(queue_name=self.queue_name)
        if released:
            logger.info("Queue %r: released %d tasks from orphaned leases", self.queue_name, released)
        return released

    def mark_tasks_failed(self) -> int:
        """Fail unclaimed pending tasks whose retry budget is exhausted."""

        failed = self.store.mark_exhausted_failed(
            queue_name=self.queue_name,
            parameters=self.parameters,
        )
        if failed:
            logger.critical(
                "Queue %r: %d tasks failed permanently (retry budget exhausted)",
                self.queue_name,
                failed,
            )
        return failed

    def release(self, *, count_attempt: bool = True) -> int:
        """Give back every pending task held by this lease and end the session."""

        released = self.store.release_by_lease(lease_id=self.session_id, count_attempt=count_attempt)
        self._session_started = False
        logger.debug("Queue %r: lease %s released %d tasks", self.queue_name, self.session_id, released)
        return released

    def end_session(self) -> None:
        """Drop the session row, leaving held tasks to the next ``clear_sessions``."""

        self.store.end_session(session_id=self.session_id)
        self._session_started = False

    def touch_session(self) -> bool:
        """Extend this lease by its full lifetime; False when it already lapsed."""

        touched = self.store.touch_session(
            session_id=self.session_id,
            lifetime_seconds=self.lease_lifetime_seconds,
        )
        if not touched:
            logger.warning(
                "Queue %r: lease %s expired before it could be extended",
                self.queue_name,
                self.session_id,
            )
        return touched

    def lease_expired(self) -> bool:
        return self.store.session_expired(session_id=self.session_id)

    def _ensure_session(self) -> None:
        if self._session_started:
            return
        self.store.create_session(
            session_id=self.session_id,
            queue_name=self.queue_name,
            lifetime_seconds=self.lease_lifetime_seconds,
        )
        self._session_started = True

    def _budget_exhausted(self, task: QueueTaskView) -> bool:
        max_attempts = task.max_attempts
        expires_at = task.expires_at
        if max_attempts is None and expires_at is None and self.policy is not None:
            max_attempts = self.policy.max_attempts
        if max_attempts is not None and task.attempts + 1 >= max_attempts:
            return True
        return expires_at is not None and expires_at < utc_now()
