"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from batch_queue.config import MasterSettings, Settings
from batch_queue.models import QueueTaskCreate, RetryPolicy
from batch_queue.store import TaskStore


@pytest.fixture(autouse=True)
def _clean_queue_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("BATCH_QUEUE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def store(db_path: Path) -> Iterator[TaskStore]:
    repository = TaskStore(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def fast_settings(db_path: Path) -> Settings:
    """Settings with master intervals short enough for tests."""

    return Settings(
        db_path=db_path,
        master=MasterSettings(
            lease_lifetime_seconds=60,
            poll_interval_seconds=0.05,
            spawn_interval_seconds=0.0,
            spawn_attempts=2,
            spawn_backoff_seconds=0.0,
        ),
    )


@pytest.fixture()
def seed_tasks(store: TaskStore):
    """Insert ``count`` pending tasks keyed ``task-00``, ``task-01``, ..."""

    def _seed(
        *,
        count: int,
        queue_name: str = "echo",
        parameters: str = "",
        max_attempts: int = 1,
    ) -> list[int]:
        records = []
        for index in range(count):
            task = store.create_task(
                queue_name=queue_name,
                parameters=parameters,
                payload=QueueTaskCreate(
                    task_key=f"task-{index:02d}",
                    data1="even" if index % 2 == 0 else "odd",
                ),
                policy=RetryPolicy(max_attempts=max_attempts),
            )
            records.append(task.record_id)
        return records

    return _seed
