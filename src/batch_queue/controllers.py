"""Controllers for batch queue CLI commands."""

from __future__ import annotations

import dataclasses
import importlib
import json
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from batch_queue.config import Settings
from batch_queue.errors import BatchQueueError, TaskError, ValidationError
from batch_queue.models import StatusTally, TaskStatus
from batch_queue.options import Mode, build_mode_options
from batch_queue.processor import BatchProcessor, QueueProcessor
from batch_queue.store.common import utc_now
from batch_queue.store.repository import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueueCommand:
    """CLI input shared by every processor mode."""

    db_path: Path | None
    processor: str
    params: tuple[str, ...] = ()


@dataclass(slots=True)
class CreateCommand(QueueCommand):
    max_attempts: int | None = None
    lifetime: int | None = None
    shuffle: bool = False


@dataclass(slots=True)
class RunCommand(QueueCommand):
    """CLI input for in-process draining of a partition."""

    max_attempts: int | None = None
    lifetime: int | None = None
    batch_size: int | None = None
    sleep_ms: int | None = None
    shuffle: bool = False
    data1: tuple[str, ...] = ()
    data2: tuple[str, ...] = ()
    data3: tuple[str, ...] = ()


@dataclass(slots=True)
class MasterCommand(RunCommand):
    slave_count: int = 1


@dataclass(slots=True)
class SlaveCommand(QueueCommand):
    """CLI input for one slave process; ``lease_id`` comes from the master."""

    lease_id: str = ""
    max_attempts: int | None = None
    lifetime: int | None = None
    sleep_ms: int | None = None
    shuffle: bool = False


@dataclass(slots=True)
class PruneCommand(QueueCommand):
    """CLI input for deleting old tasks of the processor's queue."""

    days: int = 30
    statuses: tuple[str, ...] = ()


@dataclass(slots=True)
class SlaveRunResult:
    """Envelope to print on stdout and whether the slave succeeded."""

    envelope: str
    success: bool


class QueueCliController:
    """Builds options and runs the batch processor for each CLI command."""

    def create(self, command: CreateCommand) -> list[str]:
        created = self._execute(
            command,
            Mode.CREATE,
            max_attempts=command.max_attempts,
            lifetime=command.lifetime,
            shuffle=command.shuffle or None,
        )
        return [encode_json({"created": created})]

    def run(self, command: RunCommand) -> list[str]:
        result = self._execute(command, Mode.RUN, **_run_options(command))
        return [encode_json({"result": result})]

    def master(self, command: MasterCommand) -> list[str]:
        result = self._execute(
            command,
            Mode.MASTER,
            slave_count=command.slave_count,
            **_run_options(command),
        )
        return [encode_json({"result": result})]

    def slave(self, command: SlaveCommand) -> SlaveRunResult:
        try:
            result = self._execute(
                command,
                Mode.SLAVE,
                lease_id=command.lease_id,
                max_attempts=command.max_attempts,
                lifetime=command.lifetime,
                sleep_ms=command.sleep_ms,
                shuffle=command.shuffle or None,
            )
        except BatchQueueError as error:
            logger.error("Slave %s failed: %s", command.lease_id, error.message)
            return SlaveRunResult(
                envelope=encode_json(
                    {"status": "error", "error": {"code": error.code, "message": error.message}},
                ),
                success=False,
            )
        return SlaveRunResult(
            envelope=encode_json({"status": "success", "result": result}),
            success=True,
        )

    def status(self, command: QueueCommand) -> list[str]:
        return [encode_json(self._execute(command, Mode.STATUS))]

    def clear(self, command: QueueCommand) -> list[str]:
        return [encode_json({"released": self._execute(command, Mode.CLEAR)})]

    def terminate(self, command: QueueCommand) -> list[str]:
        return [encode_json({"deleted": self._execute(command, Mode.TERMINATE)})]

    def prune(self, command: PruneCommand) -> list[str]:
        settings = _settings(command.db_path)
        processor = load_processor(command.processor, parse_params(command.params))
        try:
            statuses = [TaskStatus(value.lower()) for value in command.statuses]
        except ValueError as error:
            raise ValidationError(f"Invalid status: {error}") from error
        older_than = utc_now() - timedelta(days=command.days)
        with _store(settings) as store:
            deleted = store.prune(
                queue_name=processor.queue_name,
                older_than=older_than,
                statuses=statuses,
            )
        logger.info("Queue %r: pruned %d tasks older than %d days", processor.queue_name, deleted, command.days)
        return [encode_json({"deleted": deleted})]

    def _execute(self, command: QueueCommand, mode: Mode, **raw: Any) -> Any:
        options = build_mode_options(mode, **raw)
        settings = _settings(command.db_path)
        processor = load_processor(command.processor, parse_params(command.params))
        with _store(settings) as store:
            engine = BatchProcessor(store=store, processor=processor, settings=settings)
            return engine.execute(options)


def load_processor(reference: str, params: Mapping[str, str]) -> QueueProcessor:
    """Import ``module:Class`` and instantiate it with processor params."""

    module_name, _, class_name = reference.partition(":")
    if not module_name or not class_name:
        raise ValidationError(f"Invalid processor reference {reference!r}; expected module:Class")
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ValidationError(f"Cannot import processor module {module_name!r}: {error}") from error
    processor_class = getattr(module, class_name, None)
    if not isinstance(processor_class, type) or not issubclass(processor_class, QueueProcessor):
        raise ValidationError(f"{reference!r} is not a QueueProcessor subclass")
    return processor_class(params)


def parse_params(values: tuple[str, ...]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise ValidationError(f"Invalid param {item!r}; expected key=value")
        params[key.strip()] = value
    return params


def encode_json(payload: Any) -> str:
    return json.dumps(payload, default=_json_default, sort_keys=True)


def _json_default(value: Any) -> Any:
    if isinstance(value, TaskError):
        return value.to_dict()
    if isinstance(value, StatusTally):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _run_options(command: RunCommand) -> dict[str, Any]:
    return {
        "max_attempts": command.max_attempts,
        "lifetime": command.lifetime,
        "batch_size": command.batch_size,
        "sleep_ms": command.sleep_ms,
        "shuffle": command.shuffle or None,
        "data1": command.data1 or None,
        "data2": command.data2 or None,
        "data3": command.data3 or None,
    }


def _settings(db_path: Path | None) -> Settings:
    try:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
    except ValueError as error:
        raise ValidationError(str(error)) from error
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
