"""Batch queue errors."""

from __future__ import annotations


class BatchQueueError(Exception):
    """Base error for batch queue operations."""

    def __init__(self, message: str, code: str = "BATCH_QUEUE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(BatchQueueError):
    """Invalid or inconsistent processor options."""

    def __init__(self, message: str, code: str = "INVALID_PARAMETER") -> None:
        super().__init__(message, code)


class StoreError(BatchQueueError):
    """Task store I/O failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "STORE_ERROR")


class TaskExistsError(BatchQueueError):
    """A task with the same key already exists in the partition."""

    def __init__(self, task_key: str, details: str = "Task exists") -> None:
        super().__init__(f"{details}: {task_key}", "OBJECT_EXISTS")
        self.task_key = task_key


class TaskError(BatchQueueError):
    """Processing callback failed for one task."""

    def __init__(self, task_key: str, message: str, error_status: str = "TASK_ERROR") -> None:
        super().__init__(message, "TASK_ERROR")
        self.task_key = task_key
        self.error_status = error_status

    @classmethod
    def wrap(cls, task_key: str, error: BaseException) -> TaskError:
        if isinstance(error, TaskError):
            return error
        if isinstance(error, BatchQueueError):
            return cls(task_key, error.message, error_status=error.code)
        return cls(task_key, str(error) or repr(error), error_status=type(error).__name__)

    def to_dict(self) -> dict[str, str]:
        return {"task_key": self.task_key, "status": self.error_status, "message": self.message}


class SpawnError(BatchQueueError):
    """A slave process could not be started."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "SPAWN_ERROR")


class SlaveError(BatchQueueError):
    """A slave process exited abnormally or reported a malformed result."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(f"Slave {session_id}: {message}", "SLAVE_ERROR")
        self.session_id = session_id
