"""Batch processor engine and the processor hooks it drives."""

from __future__ import annotations

import json
import logging
import random
import signal
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from batch_queue.config import Settings
from batch_queue.errors import BatchQueueError, SlaveError, SpawnError, TaskError
from batch_queue.lease import LeaseManager
from batch_queue.models import (
    QueueTaskView,
    RetryPolicy,
    StatusTally,
    TaskOutcome,
    TaskStatus,
)
from batch_queue.options import (
    ClearOptions,
    CreateOptions,
    MasterOptions,
    ModeOptions,
    RunOptions,
    SlaveOptions,
    StatusOptions,
    TerminateOptions,
    options_to_dict,
)
from batch_queue.slave import SlaveFactory, SlaveHandle, SubprocessSlaveFactory
from batch_queue.store.repository import TaskStore

logger = logging.getLogger(__name__)


class QueueProcessor(ABC):
    """Application hooks plugged into ``BatchProcessor``.

    Subclasses set ``queue_name`` and implement ``create_tasks`` and
    ``process_task``. Processor-specific ``params`` select the partition of
    the queue the processor works on.
    """

    queue_name: str = ""

    def __init__(self, params: Mapping[str, str] | None = None) -> None:
        if not self.queue_name:
            raise BatchQueueError(f"{type(self).__name__} does not define queue_name")
        self.params = dict(params or {})
        self.validate_params(self.params)

    @classmethod
    def reference(cls) -> str:
        """Importable ``module:Class`` reference used to start slaves."""

        return f"{cls.__module__}:{cls.__qualname__}"

    def validate_params(self, params: Mapping[str, str]) -> None:
        """Reject unsupported processor params by raising ``ValidationError``."""

    def encode_params(self) -> dict[str, str]:
        return dict(self.params)

    def partition_key(self) -> str:
        encoded = self.encode_params()
        if not encoded:
            return ""
        return json.dumps(encoded, sort_keys=True, separators=(",", ":"))

    @abstractmethod
    def create_tasks(self, options: ModeOptions, manager: LeaseManager) -> int:
        """Populate the partition; returns the number of tasks created."""

    @abstractmethod
    def process_task(self, options: ModeOptions, manager: LeaseManager, task: QueueTaskView) -> Any:
        """Process one task; raising marks the attempt failed."""

    def aggregate_results(self, options: ModeOptions, partial: Any, result: Any) -> Any:
        return None

    def summarize_status(self, options: ModeOptions, tally: StatusTally) -> Any:
        return tally


class ProcessorState(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    RUNNING = "running"
    MASTER_LOOP = "master_loop"
    SLAVE_LOOP = "slave_loop"
    STATUS = "status"
    CLEARING = "clearing"
    TERMINATING = "terminating"


@dataclass(slots=True)
class MasterRunSummary:
    slaves_started: int = 0
    slaves_completed: int = 0
    slaves_timed_out: int = 0
    slaves_failed: int = 0
    spawn_failures: int = 0
    result: Any = None


class BatchProcessor:
    """Runs one processor in one of the seven modes, each to completion."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        processor: QueueProcessor,
        settings: Settings | None = None,
        slave_factory: SlaveFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.processor = processor
        self.settings = settings or Settings(db_path=store.db_path)
        self.slave_factory = slave_factory or SubprocessSlaveFactory(
            processor_ref=processor.reference(),
            db_path=store.db_path,
            params=processor.encode_params(),
            settings=self.settings,
        )
        self._sleep = sleep
        self._state = ProcessorState.IDLE
        self._stop_requested = False
        self.last_master_summary: MasterRunSummary | None = None

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def queue_name(self) -> str:
        return self.processor.queue_name

    @property
    def parameters(self) -> str:
        return self.processor.partition_key()

    def execute(self, options: ModeOptions) -> Any:  # noqa: PLR0911
        """Dispatch to the routine of ``options.mode``."""

        logger.info("Queue %r: %s %s", self.queue_name, options.mode.value, options_to_dict(options))
        if isinstance(options, CreateOptions):
            return self.create(options)
        if isinstance(options, RunOptions):
            return self.run(options)
        if isinstance(options, MasterOptions):
            return self.master(options)
        if isinstance(options, SlaveOptions):
            return self.slave(options)
        if isinstance(options, StatusOptions):
            return self.status(options)
        if isinstance(options, ClearOptions):
            return self.clear(options)
        if isinstance(options, TerminateOptions):
            return self.terminate(options)
        raise BatchQueueError(f"Unsupported options: {type(options).__name__}")

    def create(self, options: CreateOptions) -> int:
        with self._enter(ProcessorState.CREATING):
            return self._create_if_empty(options)

    def run(self, options: RunOptions) -> Any:
        with self._enter(ProcessorState.RUNNING):
            self._create_if_empty(options)
            result = None
            batches = 0
            while True:
                manager = self._assign_tasks(options)
                if manager is None:
                    break
                batch = manager.load_tasks()
                result = self.aggregate_results(options, result, self.process_batch(options, manager, batch))
                manager.release()
                batches += 1
            logger.info("Queue %r: run finished after %d batches", self.queue_name, batches)
            return result

    def master(self, options: MasterOptions) -> Any:  # noqa: C901
        with self._enter(ProcessorState.MASTER_LOOP), self._signal_handlers():
            self._create_if_empty(options)
            summary = MasterRunSummary()
            self.last_master_summary = summary
            coordinator = self._manager(options.policy)
            slaves: list[SlaveHandle] = []
            failed_rounds = 0
            try:
                while True:
                    self._poll_slaves(options, slaves, summary)
                    if self._stop_requested:
                        self._abandon_all(slaves, summary)
                        break
                    coordinator.clear_sessions()
                    coordinator.mark_tasks_failed()
                    spawn_failed = not self._spawn_slaves(options, slaves, summary)
                    failed_rounds = failed_rounds + 1 if spawn_failed else 0
                    if not slaves:
                        if not spawn_failed:
                            break
                        if failed_rounds >= self.settings.master.max_spawn_failure_rounds:
                            logger.error(
                                "Queue %r: giving up after %d rounds without a slave",
                                self.queue_name,
                                failed_rounds,
                            )
                            break
                    self._sleep(self.settings.master.poll_interval_seconds)
            finally:
                # Only reached with a non-empty pool when an error escapes the loop.
                for slave in slaves:
                    logger.warning("Queue %r: abandoning slave %s", self.queue_name, slave.session_id)
                    slave.abandon()

            logger.info(
                "Queue %r: master finished (started=%d completed=%d timed_out=%d failed=%d)",
                self.queue_name,
                summary.slaves_started,
                summary.slaves_completed,
                summary.slaves_timed_out,
                summary.slaves_failed,
            )
            failures = summary.slaves_failed + summary.spawn_failures
            if failures and not summary.slaves_completed:
                raise BatchQueueError("All slaves failed")
            return summary.result

    def slave(self, options: SlaveOptions) -> Any:
        with self._enter(ProcessorState.SLAVE_LOOP):
            manager = self._manager(options.policy, session_id=options.lease_id)
            batch = manager.load_tasks()
            logger.info("Queue %r: slave %s loaded %d tasks", self.queue_name, options.lease_id, len(batch))
            result = self.process_batch(options, manager, batch)
            manager.release()
            return result

    def status(self, options: StatusOptions | None = None) -> Any:
        with self._enter(ProcessorState.STATUS):
            tally = self.store.count_by_status(queue_name=self.queue_name, parameters=self.parameters)
            return self.processor.summarize_status(options or StatusOptions(), tally)

    def clear(self, options: ClearOptions | None = None) -> int:
        with self._enter(ProcessorState.CLEARING):
            released = self.store.clear_partition(queue_name=self.queue_name, parameters=self.parameters)
            logger.info("Queue %r: cleared %d claimed tasks", self.queue_name, released)
            return released

    def terminate(self, options: TerminateOptions | None = None) -> int:
        with self._enter(ProcessorState.TERMINATING):
            deleted = self.store.delete_by_partition(queue_name=self.queue_name, parameters=self.parameters)
            logger.info("Queue %r: deleted %d tasks", self.queue_name, deleted)
            return deleted

    def process_batch(
        self,
        options: RunOptions | SlaveOptions | MasterOptions,
        manager: LeaseManager,
        batch: list[QueueTaskView],
    ) -> Any:
        tasks = list(batch)
        if options.shuffle:
            random.shuffle(tasks)
        result = None
        touch_period = self.settings.master.touch_period
        for processed, task in enumerate(tasks, start=1):
            result = self.aggregate_results(options, result, self.process_task(options, manager, task))
            if processed % touch_period == 0:
                manager.touch_session()
            if options.sleep_ms > 0:
                self._sleep(options.sleep_ms / 1000)
        return result

    def process_task(
        self,
        options: RunOptions | SlaveOptions | MasterOptions,
        manager: LeaseManager,
        task: QueueTaskView,
    ) -> Any:
        """Process one task and record the attempt; callback errors become ``TaskError``."""

        try:
            result = self.processor.process_task(options, manager, task)
        except Exception as error:  # noqa: BLE001
            task_error = TaskError.wrap(task.task_key, error)
            status = manager.update_task_status(task, TaskOutcome.FAILURE, task_error)
            logger.error(
                "Queue %r: task %s failed (%s): %s",
                self.queue_name,
                task.task_key,
                "retry" if status is TaskStatus.PENDING else "final",
                task_error.message,
            )
            return task_error
        manager.update_task_status(task, TaskOutcome.SUCCESS)
        return result

    def aggregate_results(self, options: ModeOptions, partial: Any, result: Any) -> Any:
        return self.processor.aggregate_results(options, partial, result)

    def _create_if_empty(self, options: CreateOptions | RunOptions | MasterOptions) -> int:
        existing = self.store.count_tasks(queue_name=self.queue_name, parameters=self.parameters)
        if existing:
            logger.info("Queue %r: %d tasks exist; skipping creation", self.queue_name, existing)
            return 0
        manager = self._manager(options.policy)
        created = self.processor.create_tasks(options, manager)
        manager.release(count_attempt=False)
        logger.info("Queue %r: created %d tasks", self.queue_name, created)
        return created

    def _assign_tasks(
        self,
        options: RunOptions | MasterOptions,
        *,
        sweep: bool = True,
    ) -> LeaseManager | None:
        manager = self._manager(options.policy)
        if sweep:
            manager.clear_sessions()
            manager.mark_tasks_failed()
        if manager.claim_tasks(options.batch_size, options.filters) == 0:
            manager.end_session()
            return None
        return manager

    def _spawn_slaves(
        self,
        options: MasterOptions,
        slaves: list[SlaveHandle],
        summary: MasterRunSummary,
    ) -> bool:
        """Fill the pool from claimable tasks; False when a spawn failed this round."""

        while len(slaves) < options.slave_count and not self._stop_requested:
            manager = self._assign_tasks(options, sweep=False)
            if manager is None:
                break
            try:
                slave = self.slave_factory(manager, options)
            except SpawnError as error:
                summary.spawn_failures += 1
                logger.error("Queue %r: %s; retrying next round", self.queue_name, error.message)
                manager.release(count_attempt=False)
                return False
            slaves.append(slave)
            summary.slaves_started += 1
            if len(slaves) < options.slave_count:
                self._sleep(self.settings.master.spawn_interval_seconds)
        return True

    def _poll_slaves(
        self,
        options: MasterOptions,
        slaves: list[SlaveHandle],
        summary: MasterRunSummary,
    ) -> None:
        for slave in list(slaves):
            try:
                if slave.terminated():
                    slaves.remove(slave)
                    value = slave.result()
                    summary.result = self.aggregate_results(options, summary.result, value)
                    summary.slaves_completed += 1
                    logger.info("Queue %r: slave %s completed", self.queue_name, slave.session_id)
                elif slave.timed_out():
                    slaves.remove(slave)
                    slave.abandon()
                    summary.slaves_timed_out += 1
                    logger.warning(
                        "Queue %r: slave %s timed out; its tasks return to the queue",
                        self.queue_name,
                        slave.session_id,
                    )
            except SlaveError as error:
                if slave in slaves:
                    slaves.remove(slave)
                    slave.abandon()
                summary.slaves_failed += 1
                logger.error("Queue %r: failed processing slave: %s", self.queue_name, error.message)
            if slave not in slaves:
                self.store.end_session(session_id=slave.session_id)

    def _abandon_all(self, slaves: list[SlaveHandle], summary: MasterRunSummary) -> None:
        for slave in slaves:
            slave.abandon()
            self.store.end_session(session_id=slave.session_id)
            summary.slaves_failed += 1
        slaves.clear()

    def _manager(self, policy: RetryPolicy, *, session_id: str | None = None) -> LeaseManager:
        return LeaseManager(
            store=self.store,
            queue_name=self.queue_name,
            parameters=self.parameters,
            policy=policy,
            lease_lifetime_seconds=self.settings.master.lease_lifetime_seconds,
            session_id=session_id,
        )

    @contextmanager
    def _enter(self, state: ProcessorState) -> Iterator[None]:
        if self._state is not ProcessorState.IDLE:
            raise BatchQueueError(f"Processor is busy ({self._state.value})")
        self._state = state
        try:
            yield
        finally:
            self._state = ProcessorState.IDLE

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        self._stop_requested = False
        if not hasattr(signal, "SIGTERM"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.warning("Queue %r: received signal %d; stopping slaves", self.queue_name, signum)
            self._stop_requested = True

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
