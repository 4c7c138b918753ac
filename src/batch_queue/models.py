"""Domain models for the batch task queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def terminal(self) -> bool:
        return self is not TaskStatus.PENDING


class TaskOutcome(str, Enum):
    """Result of one processing attempt as reported to the lease manager."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exactly one of ``max_attempts`` or ``lifetime_seconds`` is set."""

    max_attempts: int | None = None
    lifetime_seconds: int | None = None


@dataclass(slots=True, frozen=True)
class ClaimFilters:
    """Optional payload filters applied when claiming tasks."""

    data1: tuple[str, ...] | None = None
    data2: tuple[str, ...] | None = None
    data3: tuple[str, ...] | None = None

    def items(self) -> list[tuple[str, tuple[str, ...]]]:
        return [
            (name, values)
            for name, values in (("data1", self.data1), ("data2", self.data2), ("data3", self.data3))
            if values is not None
        ]


@dataclass(slots=True)
class QueueTaskCreate:
    """Input payload for creating one task."""

    task_key: str
    data1: str | None = None
    data2: str | None = None
    data3: str | None = None
    replace_existing: bool = False
    take_ownership: bool = False


@dataclass(slots=True)
class QueueTaskView:
    """Readable task row for processors and the CLI."""

    record_id: int
    queue_name: str
    task_key: str
    parameters: str
    data1: str | None
    data2: str | None
    data3: str | None
    status: TaskStatus
    attempts: int
    max_attempts: int | None
    expires_at: datetime | None
    lease_id: str | None
    error_status: str | None
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None

    @property
    def claimed(self) -> bool:
        return self.lease_id is not None and self.status == TaskStatus.PENDING


@dataclass(slots=True)
class LeaseSessionView:
    """Lease session row."""

    session_id: str
    queue_name: str
    created_at: datetime
    expires_at: datetime


@dataclass(slots=True)
class StatusTally:
    """Task counts of one partition by status."""

    success: int = 0
    failure: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure + self.pending

    def to_dict(self) -> dict[str, int]:
        return {"success": self.success, "failure": self.failure, "pending": self.pending}
