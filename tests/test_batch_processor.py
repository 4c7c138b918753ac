from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

import allure
import pytest

from batch_queue.config import MasterSettings, Settings
from batch_queue.errors import (
    BatchQueueError,
    SlaveError,
    SpawnError,
    StoreError,
    TaskError,
    ValidationError,
)
from batch_queue.lease import LeaseManager
from batch_queue.models import (
    QueueTaskCreate,
    QueueTaskView,
    RetryPolicy,
    StatusTally,
    TaskOutcome,
    TaskStatus,
)
from batch_queue.options import MasterOptions, ModeOptions, SlaveOptions, build_mode_options
from batch_queue.processor import BatchProcessor, ProcessorState, QueueProcessor
from batch_queue.processors.echo import EchoProcessor, task_key
from batch_queue.store import TaskStore
from batch_queue.store.common import utc_now

pytestmark = [
    allure.epic("Batch Queue"),
    allure.feature("Batch Processor"),
]


class RecordingProcessor(QueueProcessor):
    """Keeps processing order in memory and aggregates results into a list."""

    queue_name = "recording"

    def __init__(self, keys: list[str], *, explode_on_create: bool = False) -> None:
        super().__init__()
        self.keys = keys
        self.explode_on_create = explode_on_create
        self.processed: list[str] = []

    def create_tasks(self, options: ModeOptions, manager: LeaseManager) -> int:
        if self.explode_on_create:
            raise RuntimeError("cannot create")
        for key in self.keys:
            manager.create_task(QueueTaskCreate(task_key=key))
        return len(self.keys)

    def process_task(self, options: ModeOptions, manager: LeaseManager, task: QueueTaskView) -> Any:
        self.processed.append(task.task_key)
        return task.task_key

    def aggregate_results(self, options: ModeOptions, partial: Any, result: Any) -> Any:
        items = list(partial or [])
        items.extend(result if isinstance(result, list) else [result])
        return items

    def summarize_status(self, options: ModeOptions, tally: StatusTally) -> Any:
        return {"done": tally.success, "left": tally.pending}


class TickingProcessor(RecordingProcessor):
    """Advances a shared clock by ``step`` for every processed task."""

    queue_name = "ticking"

    def __init__(self, keys: list[str], *, clock: dict[str, datetime], step: timedelta) -> None:
        super().__init__(keys)
        self.clock = clock
        self.step = step

    def process_task(self, options: ModeOptions, manager: LeaseManager, task: QueueTaskView) -> Any:
        self.clock["now"] += self.step
        return super().process_task(options, manager, task)


class FakeSlave:
    """In-process slave that runs slave mode on its first poll."""

    def __init__(
        self,
        worker: BatchProcessor,
        manager: LeaseManager,
        options: MasterOptions,
        *,
        hang: bool = False,
        crash: bool = False,
    ) -> None:
        self.worker = worker
        self.manager = manager
        self.options = options
        self.hang = hang
        self.crash = crash
        self.abandoned = False
        self.polls = 0
        self._result: Any = None
        self._done = False

    @property
    def session_id(self) -> str:
        return self.manager.session_id

    def terminated(self) -> bool:
        if self.hang:
            return False
        if not self._done and not self.crash:
            self._result = self.worker.slave(
                SlaveOptions(policy=self.options.policy, lease_id=self.session_id),
            )
        self._done = True
        return True

    def timed_out(self) -> bool:
        self.polls += 1
        return self.hang and self.polls >= 2

    def result(self) -> Any:
        if self.crash:
            raise SlaveError(self.session_id, "exited with status 1")
        return self._result

    def abandon(self) -> None:
        self.abandoned = True


class FakeSlaveFactory:
    def __init__(
        self,
        store: TaskStore,
        processor: QueueProcessor,
        *,
        hang_first: bool = False,
        crash: bool = False,
    ) -> None:
        self.store = store
        self.processor = processor
        self.hang_first = hang_first
        self.crash = crash
        self.slaves: list[FakeSlave] = []

    def __call__(self, manager: LeaseManager, options: MasterOptions) -> FakeSlave:
        worker = BatchProcessor(store=self.store, processor=self.processor, sleep=_no_sleep)
        slave = FakeSlave(
            worker,
            manager,
            options,
            hang=self.hang_first and not self.slaves,
            crash=self.crash,
        )
        self.slaves.append(slave)
        return slave


def _no_sleep(_: float) -> None:
    return None


def _engine(store: TaskStore, processor: QueueProcessor, **kwargs: Any) -> BatchProcessor:
    kwargs.setdefault("sleep", _no_sleep)
    return BatchProcessor(store=store, processor=processor, **kwargs)


def _tasks(store: TaskStore, processor: QueueProcessor) -> list[QueueTaskView]:
    return store.list_tasks(queue_name=processor.queue_name, parameters=processor.partition_key())


def test_run_processes_every_task_once(store: TaskStore) -> None:
    processor = EchoProcessor({"count": "5"})
    engine = _engine(store, processor)

    result = engine.execute(build_mode_options("run", max_attempts=1))

    assert result == {"succeeded": 5, "failed": 0}
    assert engine.status() == StatusTally(success=5, failure=0, pending=0)
    assert engine.state is ProcessorState.IDLE
    assert all(task.attempts == 1 for task in _tasks(store, processor))


def test_run_retries_failed_task_until_success(store: TaskStore) -> None:
    keys = ",".join(task_key(index) for index in range(3))
    processor = EchoProcessor({"count": "3", "fail_keys": keys, "fail_times": "1"})
    engine = _engine(store, processor)

    result = engine.execute(build_mode_options("run", max_attempts=2))

    assert result == {"succeeded": 3, "failed": 3}
    tasks = _tasks(store, processor)
    assert [task.status for task in tasks] == [TaskStatus.SUCCESS] * 3
    assert [task.attempts for task in tasks] == [2, 2, 2]


def test_run_records_permanent_failures(store: TaskStore, caplog) -> None:
    keys = ",".join(task_key(index) for index in range(4))
    processor = EchoProcessor({"count": "4", "fail_keys": keys, "fail_times": "99"})
    engine = _engine(store, processor)

    with caplog.at_level(logging.ERROR):
        result = engine.execute(build_mode_options("run", max_attempts=1, batch_size=2))

    assert result == {"succeeded": 0, "failed": 4}
    assert engine.status() == StatusTally(success=0, failure=4, pending=0)
    for task in _tasks(store, processor):
        assert task.status is TaskStatus.FAILURE
        assert task.attempts == 1
        assert task.error_status == "EchoFailure"
        assert task.error_message is not None
        assert "scripted failure" in task.error_message
    assert any(record.levelno == logging.CRITICAL for record in caplog.records)


def test_master_recovers_tasks_of_timed_out_slave(store: TaskStore, fast_settings) -> None:
    processor = EchoProcessor({"count": "10"})
    factory = FakeSlaveFactory(store, processor, hang_first=True)
    engine = _engine(store, processor, settings=fast_settings, slave_factory=factory)

    result = engine.execute(build_mode_options("master", max_attempts=3, slave_count=2, batch_size=3))

    assert result == {"succeeded": 10, "failed": 0}
    assert engine.status() == StatusTally(success=10, failure=0, pending=0)
    hung = factory.slaves[0]
    assert hung.abandoned is True
    assert store.get_session(session_id=hung.session_id) is None
    summary = engine.last_master_summary
    assert summary is not None
    assert summary.slaves_timed_out == 1
    assert summary.slaves_failed == 0
    attempts = sorted(task.attempts for task in _tasks(store, processor))
    assert attempts == [1] * 7 + [2] * 3
    assert engine.state is ProcessorState.IDLE


def test_master_raises_when_every_slave_fails(store: TaskStore, fast_settings) -> None:
    processor = EchoProcessor({"count": "4"})
    factory = FakeSlaveFactory(store, processor, crash=True)
    engine = _engine(store, processor, settings=fast_settings, slave_factory=factory)

    with pytest.raises(BatchQueueError, match="All slaves failed"):
        engine.execute(build_mode_options("master", max_attempts=1, slave_count=2, batch_size=3))

    assert len(factory.slaves) == 2
    assert engine.status() == StatusTally(success=0, failure=4, pending=0)
    assert engine.state is ProcessorState.IDLE


def test_master_retries_spawn_next_round(store: TaskStore, fast_settings) -> None:
    processor = EchoProcessor({"count": "3"})
    slaves = FakeSlaveFactory(store, processor)
    failed_sessions: list[str] = []

    def flaky_factory(manager: LeaseManager, options: MasterOptions) -> FakeSlave:
        if not failed_sessions:
            failed_sessions.append(manager.session_id)
            raise SpawnError("no processes left")
        return slaves(manager, options)

    engine = _engine(store, processor, settings=fast_settings, slave_factory=flaky_factory)

    result = engine.execute(build_mode_options("master", max_attempts=1, slave_count=1))

    assert result == {"succeeded": 3, "failed": 0}
    assert engine.status() == StatusTally(success=3, failure=0, pending=0)
    assert store.get_session(session_id=failed_sessions[0]) is None
    assert all(task.attempts == 1 for task in _tasks(store, processor))
    summary = engine.last_master_summary
    assert summary is not None
    assert summary.spawn_failures == 1
    assert summary.slaves_completed >= 1


def test_master_gives_up_after_repeated_spawn_failures(store: TaskStore, fast_settings) -> None:
    processor = EchoProcessor({"count": "3"})
    calls: list[str] = []

    def failing_factory(manager: LeaseManager, options: MasterOptions) -> FakeSlave:
        calls.append(manager.session_id)
        raise SpawnError("no processes left")

    settings = replace(fast_settings, master=replace(fast_settings.master, max_spawn_failure_rounds=3))
    engine = _engine(store, processor, settings=settings, slave_factory=failing_factory)

    with pytest.raises(BatchQueueError, match="All slaves failed"):
        engine.execute(build_mode_options("master", max_attempts=1, slave_count=2))

    assert len(calls) == 3
    assert all(store.get_session(session_id=session_id) is None for session_id in calls)
    tasks = _tasks(store, processor)
    assert all(task.status is TaskStatus.PENDING for task in tasks)
    assert all(task.attempts == 0 and task.lease_id is None for task in tasks)


def test_master_abandons_running_slaves_when_store_fails(
    store: TaskStore,
    fast_settings,
    monkeypatch,
) -> None:
    processor = EchoProcessor({"count": "2"})
    factory = FakeSlaveFactory(store, processor, hang_first=True)
    engine = _engine(store, processor, settings=fast_settings, slave_factory=factory)
    release_orphaned = store.release_orphaned
    sweeps: list[str] = []

    def locked_on_second_sweep(*, queue_name: str) -> int:
        sweeps.append(queue_name)
        if len(sweeps) == 2:
            raise StoreError("database is locked")
        return release_orphaned(queue_name=queue_name)

    monkeypatch.setattr(store, "release_orphaned", locked_on_second_sweep)

    with pytest.raises(StoreError, match="database is locked"):
        engine.execute(build_mode_options("master", max_attempts=1, slave_count=1))

    assert len(factory.slaves) == 1
    assert factory.slaves[0].abandoned is True
    assert engine.state is ProcessorState.IDLE


def test_process_batch_keeps_lease_alive_past_its_lifetime(store: TaskStore, monkeypatch) -> None:
    clock = {"now": utc_now()}
    monkeypatch.setattr("batch_queue.store.repository.utc_now", lambda: clock["now"])
    processor = TickingProcessor(["a", "b", "c", "d"], clock=clock, step=timedelta(seconds=6))
    settings = Settings(db_path=store.db_path, master=MasterSettings(lease_lifetime_seconds=10, touch_period=1))
    engine = _engine(store, processor, settings=settings)
    engine.create(build_mode_options("create", max_attempts=1))
    manager = LeaseManager(
        store=store,
        queue_name=processor.queue_name,
        policy=RetryPolicy(max_attempts=1),
        lease_lifetime_seconds=10,
    )
    manager.claim_tasks(4)
    started = clock["now"]

    engine.process_batch(build_mode_options("run", max_attempts=1), manager, manager.load_tasks())

    assert clock["now"] - started == timedelta(seconds=24)
    assert manager.lease_expired() is False
    lease = store.get_session(session_id=manager.session_id)
    assert lease is not None
    assert lease.expires_at == clock["now"] + timedelta(seconds=10)
    assert processor.processed == ["a", "b", "c", "d"]


def test_lease_lapses_without_touch(store: TaskStore, monkeypatch) -> None:
    clock = {"now": utc_now()}
    monkeypatch.setattr("batch_queue.store.repository.utc_now", lambda: clock["now"])
    processor = TickingProcessor(["a", "b", "c"], clock=clock, step=timedelta(seconds=6))
    settings = Settings(db_path=store.db_path, master=MasterSettings(lease_lifetime_seconds=10, touch_period=20))
    engine = _engine(store, processor, settings=settings)
    engine.create(build_mode_options("create", max_attempts=1))
    manager = LeaseManager(
        store=store,
        queue_name=processor.queue_name,
        policy=RetryPolicy(max_attempts=1),
        lease_lifetime_seconds=10,
    )
    manager.claim_tasks(3)

    engine.process_batch(build_mode_options("run", max_attempts=1), manager, manager.load_tasks())

    assert manager.lease_expired() is True
    assert manager.touch_session() is False


def test_terminate_deletes_partition_in_mixed_states(store: TaskStore) -> None:
    processor = EchoProcessor({"count": "7"})
    engine = _engine(store, processor)
    assert engine.execute(build_mode_options("create", max_attempts=2)) == 7
    manager = LeaseManager(
        store=store,
        queue_name=processor.queue_name,
        parameters=processor.partition_key(),
        policy=RetryPolicy(max_attempts=2),
    )
    manager.claim_tasks(3)
    first, second, _ = manager.load_tasks()
    manager.update_task_status(first, TaskOutcome.SUCCESS)
    manager.update_task_status(second, TaskOutcome.FAILURE, TaskError(second.task_key, "x"))
    other = EchoProcessor({"count": "2"})
    _engine(store, other).execute(build_mode_options("create", max_attempts=1))

    assert engine.execute(build_mode_options("terminate")) == 7

    assert engine.execute(build_mode_options("status")) == StatusTally()
    assert engine.status().total == 0
    assert store.count_tasks(queue_name="echo", parameters=other.partition_key()) == 2


def test_create_only_populates_empty_partition(store: TaskStore) -> None:
    processor = RecordingProcessor(["a", "b"])
    engine = _engine(store, processor)

    assert engine.create(build_mode_options("create", max_attempts=1)) == 2
    assert engine.create(build_mode_options("create", max_attempts=1)) == 0
    assert store.count_tasks(queue_name="recording", parameters="") == 2


def test_run_honors_claim_filters(store: TaskStore) -> None:
    processor = EchoProcessor({"count": "6"})
    engine = _engine(store, processor)

    result = engine.execute(build_mode_options("run", max_attempts=1, batch_size=4, data1="even"))

    assert result == {"succeeded": 3, "failed": 0}
    assert engine.status() == StatusTally(success=3, failure=0, pending=3)


def test_shuffle_and_sleep_between_tasks(store: TaskStore, monkeypatch) -> None:
    processor = RecordingProcessor(["a", "b", "c"])
    sleeps: list[float] = []
    engine = _engine(store, processor, sleep=sleeps.append)
    monkeypatch.setattr("batch_queue.processor.random.shuffle", lambda items: items.reverse())

    result = engine.execute(build_mode_options("run", max_attempts=1, batch_size=3, shuffle=True, sleep_ms=25))

    assert processor.processed == ["c", "b", "a"]
    assert result == ["c", "b", "a"]
    assert sleeps == [0.025, 0.025, 0.025]
    assert engine.execute(build_mode_options("status")) == {"done": 3, "left": 0}


def test_process_task_contains_callback_errors(store: TaskStore) -> None:
    processor = EchoProcessor({"count": "1", "fail_keys": task_key(0), "fail_times": "5"})
    engine = _engine(store, processor)
    engine.create(build_mode_options("create", max_attempts=3))
    manager = LeaseManager(
        store=store,
        queue_name=processor.queue_name,
        parameters=processor.partition_key(),
        policy=RetryPolicy(max_attempts=2),
    )
    manager.claim_tasks(1)
    (task,) = manager.load_tasks()

    result = engine.process_task(build_mode_options("run", max_attempts=3), manager, task)

    assert isinstance(result, TaskError)
    assert result.task_key == task_key(0)
    assert result.error_status == "EchoFailure"
    stored = _tasks(store, processor)[0]
    assert stored.status is TaskStatus.PENDING
    assert stored.attempts == 1


def test_clear_releases_claimed_tasks(store: TaskStore) -> None:
    processor = EchoProcessor({"count": "4"})
    engine = _engine(store, processor)
    engine.create(build_mode_options("create", max_attempts=3))
    manager = LeaseManager(
        store=store,
        queue_name=processor.queue_name,
        parameters=processor.partition_key(),
        policy=RetryPolicy(max_attempts=2),
    )
    manager.claim_tasks(3)

    assert engine.execute(build_mode_options("clear")) == 3
    assert manager.load_tasks() == []


def test_slave_mode_processes_only_its_lease(store: TaskStore) -> None:
    processor = EchoProcessor({"count": "5"})
    engine = _engine(store, processor)
    engine.create(build_mode_options("create", max_attempts=2))
    manager = LeaseManager(
        store=store,
        queue_name=processor.queue_name,
        parameters=processor.partition_key(),
        policy=RetryPolicy(max_attempts=2),
    )
    manager.claim_tasks(2)

    result = engine.execute(build_mode_options("slave", max_attempts=2, lease_id=manager.session_id))

    assert result == {"succeeded": 2, "failed": 0}
    assert engine.status() == StatusTally(success=2, failure=0, pending=3)
    assert store.get_session(session_id=manager.session_id) is None


def test_state_returns_to_idle_after_error(store: TaskStore) -> None:
    processor = RecordingProcessor(["a"], explode_on_create=True)
    engine = _engine(store, processor)

    with pytest.raises(RuntimeError, match="cannot create"):
        engine.execute(build_mode_options("run", max_attempts=1))

    assert engine.state is ProcessorState.IDLE


def test_partition_key_is_sorted_json_of_params() -> None:
    assert EchoProcessor().partition_key() == ""
    assert EchoProcessor({"fail_times": "2", "count": "3"}).partition_key() == (
        '{"count":"3","fail_times":"2"}'
    )


def test_processor_params_are_validated() -> None:
    with pytest.raises(ValidationError, match="Unsupported echo param: colour"):
        EchoProcessor({"colour": "red"})
    with pytest.raises(ValidationError, match="Invalid count"):
        EchoProcessor({"count": "many"})


def test_processor_requires_queue_name() -> None:
    class Nameless(RecordingProcessor):
        queue_name = ""

    with pytest.raises(BatchQueueError, match="does not define queue_name"):
        Nameless(["a"])


def test_processor_without_hooks_cannot_be_instantiated() -> None:
    class CreateOnly(QueueProcessor):
        queue_name = "create-only"

        def create_tasks(self, options: ModeOptions, manager: LeaseManager) -> int:
            return 0

    with pytest.raises(TypeError, match="process_task"):
        CreateOnly()
