"""Example processor that echoes task keys, with scripted failures and hangs.

Params (all optional, all strings since they arrive from ``--param``):

- ``count``: number of tasks to create (default 5);
- ``fail_keys``: comma-separated task keys that fail;
- ``fail_times``: how many attempts of each failing key fail (default 1);
- ``hang_keys``: comma-separated task keys whose first attempt sleeps;
- ``hang_seconds``: length of that sleep (default 3600).

Failures and hangs are decided from the durable attempt counter, so they
behave the same when tasks are processed by separate slave processes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

from batch_queue.errors import TaskError, ValidationError
from batch_queue.lease import LeaseManager
from batch_queue.models import QueueTaskCreate, QueueTaskView
from batch_queue.options import ModeOptions
from batch_queue.processor import QueueProcessor

logger = logging.getLogger(__name__)

_INT_PARAMS = {"count": 5, "fail_times": 1, "hang_seconds": 3_600}
_LIST_PARAMS = ("fail_keys", "hang_keys")


class EchoFailure(RuntimeError):
    """Scripted processing failure."""


class EchoProcessor(QueueProcessor):
    queue_name = "echo"

    def validate_params(self, params: Mapping[str, str]) -> None:
        unknown = sorted(set(params) - set(_INT_PARAMS) - set(_LIST_PARAMS))
        if unknown:
            raise ValidationError(f"Unsupported echo param: {unknown[0]}")
        for name in _INT_PARAMS:
            if name in params:
                try:
                    value = int(params[name])
                except ValueError as error:
                    raise ValidationError(f"Invalid {name}: {params[name]!r}") from error
                if value < 0:
                    raise ValidationError(f"Invalid {name}: expected integer >= 0; found {value}")

    @property
    def count(self) -> int:
        return self._int_param("count")

    def create_tasks(self, options: ModeOptions, manager: LeaseManager) -> int:
        for index in range(self.count):
            manager.create_task(
                QueueTaskCreate(
                    task_key=task_key(index),
                    data1="even" if index % 2 == 0 else "odd",
                    data2=str(index),
                ),
            )
        return self.count

    def process_task(self, options: ModeOptions, manager: LeaseManager, task: QueueTaskView) -> Any:
        if task.task_key in self._list_param("hang_keys") and task.attempts == 0:
            logger.info("Echo: task %s hangs for %ds", task.task_key, self._int_param("hang_seconds"))
            time.sleep(self._int_param("hang_seconds"))
        if task.task_key in self._list_param("fail_keys") and task.attempts < self._int_param("fail_times"):
            raise EchoFailure(f"scripted failure of {task.task_key} (attempt {task.attempts + 1})")
        return task.task_key

    def aggregate_results(self, options: ModeOptions, partial: Any, result: Any) -> Any:
        totals = {"succeeded": 0, "failed": 0}
        if isinstance(partial, Mapping):
            totals.update({name: int(partial.get(name, 0)) for name in totals})
        if isinstance(result, Mapping):
            for name in totals:
                totals[name] += int(result.get(name, 0))
        elif isinstance(result, TaskError):
            totals["failed"] += 1
        elif result is not None:
            totals["succeeded"] += 1
        return totals

    def _int_param(self, name: str) -> int:
        return int(self.params.get(name, _INT_PARAMS[name]))

    def _list_param(self, name: str) -> set[str]:
        return {item.strip() for item in self.params.get(name, "").split(",") if item.strip()}


def task_key(index: int) -> str:
    return f"echo-{index:04d}"
