"""CLI entrypoint for batch-queue."""

import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from batch_queue import __version__
from batch_queue.controllers import (
    CreateCommand,
    MasterCommand,
    PruneCommand,
    QueueCliController,
    QueueCommand,
    RunCommand,
    SlaveCommand,
)
from batch_queue.errors import BatchQueueError

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _queue_options(command: Callable[..., Any]) -> Callable[..., Any]:
    command = click.option(
        "--param",
        "params",
        multiple=True,
        help="Processor param as key=value. Can be repeated; params select the partition.",
    )(command)
    command = click.option(
        "--processor",
        required=True,
        help="Queue processor as module:Class, for example batch_queue.processors.echo:EchoProcessor.",
    )(command)
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path.",
    )(command)


def _policy_options(command: Callable[..., Any]) -> Callable[..., Any]:
    command = click.option(
        "--lifetime",
        type=click.IntRange(min=1),
        default=None,
        help="Seconds each task may keep being retried. Excludes --max-attempts.",
    )(command)
    return click.option(
        "--max-attempts",
        type=click.IntRange(min=1),
        default=None,
        help="Processing attempts per task. Excludes --lifetime.",
    )(command)


def _processing_options(command: Callable[..., Any]) -> Callable[..., Any]:
    command = click.option(
        "--shuffle/--no-shuffle",
        default=False,
        help="Process each batch in random order.",
    )(command)
    return click.option(
        "--sleep-ms",
        type=click.IntRange(min=0),
        default=None,
        help="Pause after each task, in milliseconds.",
    )(command)


def _claim_options(command: Callable[..., Any]) -> Callable[..., Any]:
    for name in ("data3", "data2", "data1"):
        command = click.option(
            f"--{name}",
            name,
            multiple=True,
            help=f"Only claim tasks whose {name} is one of these values. Can be repeated.",
        )(command)
    return click.option(
        "--batch-size",
        type=click.IntRange(min=1),
        default=None,
        help="Maximum tasks claimed per lease (default 1).",
    )(command)


@click.group()
@click.version_option(version=__version__, prog_name="batch-queue")
def batch_queue() -> None:
    """Distributed batch task queue CLI."""

    level = os.getenv("BATCH_QUEUE_LOG_LEVEL", "INFO").strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"
    logging.basicConfig(level=level, format=_LOG_FORMAT, stream=sys.stderr)


@batch_queue.command("create")
@_queue_options
@_policy_options
@click.option("--shuffle/--no-shuffle", default=False, help="Let the processor shuffle creation order.")
def create(  # noqa: PLR0913
    db_path: Path | None,
    processor: str,
    params: tuple[str, ...],
    max_attempts: int | None,
    lifetime: int | None,
    shuffle: bool,
) -> None:
    """Create the tasks of a partition if it is empty."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.create,
            CreateCommand(
                db_path=db_path,
                processor=processor,
                params=params,
                max_attempts=max_attempts,
                lifetime=lifetime,
                shuffle=shuffle,
            ),
        ),
    )


@batch_queue.command("run")
@_queue_options
@_policy_options
@_processing_options
@_claim_options
def run(  # noqa: PLR0913
    db_path: Path | None,
    processor: str,
    params: tuple[str, ...],
    max_attempts: int | None,
    lifetime: int | None,
    sleep_ms: int | None,
    shuffle: bool,
    batch_size: int | None,
    data1: tuple[str, ...],
    data2: tuple[str, ...],
    data3: tuple[str, ...],
) -> None:
    """Create tasks if needed, then drain the partition in this process."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.run,
            RunCommand(
                db_path=db_path,
                processor=processor,
                params=params,
                max_attempts=max_attempts,
                lifetime=lifetime,
                batch_size=batch_size,
                sleep_ms=sleep_ms,
                shuffle=shuffle,
                data1=data1,
                data2=data2,
                data3=data3,
            ),
        ),
    )


@batch_queue.command("master")
@_queue_options
@_policy_options
@_processing_options
@_claim_options
@click.option(
    "--slave-count",
    type=click.IntRange(min=1),
    required=True,
    help="Maximum number of concurrent slave processes.",
)
def master(  # noqa: PLR0913
    db_path: Path | None,
    processor: str,
    params: tuple[str, ...],
    max_attempts: int | None,
    lifetime: int | None,
    sleep_ms: int | None,
    shuffle: bool,
    batch_size: int | None,
    data1: tuple[str, ...],
    data2: tuple[str, ...],
    data3: tuple[str, ...],
    slave_count: int,
) -> None:
    """Create tasks if needed, then drain the partition with slave processes."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.master,
            MasterCommand(
                db_path=db_path,
                processor=processor,
                params=params,
                max_attempts=max_attempts,
                lifetime=lifetime,
                batch_size=batch_size,
                sleep_ms=sleep_ms,
                shuffle=shuffle,
                data1=data1,
                data2=data2,
                data3=data3,
                slave_count=slave_count,
            ),
        ),
    )


@batch_queue.command("slave")
@_queue_options
@_policy_options
@_processing_options
@click.option("--lease-id", required=True, help="Lease claimed by the master for this slave.")
@click.pass_context
def slave(  # noqa: PLR0913
    ctx: click.Context,
    db_path: Path | None,
    processor: str,
    params: tuple[str, ...],
    max_attempts: int | None,
    lifetime: int | None,
    sleep_ms: int | None,
    shuffle: bool,
    lease_id: str,
) -> None:
    """Process the tasks held by one lease and print a JSON result envelope.

    Started by `master`; not meant to be run by hand.
    """

    result = QUEUE_CONTROLLER.slave(
        SlaveCommand(
            db_path=db_path,
            processor=processor,
            params=params,
            lease_id=lease_id,
            max_attempts=max_attempts,
            lifetime=lifetime,
            sleep_ms=sleep_ms,
            shuffle=shuffle,
        ),
    )
    click.echo(result.envelope)
    if not result.success:
        ctx.exit(1)


@batch_queue.command("status")
@_queue_options
def status(db_path: Path | None, processor: str, params: tuple[str, ...]) -> None:
    """Print task counts of a partition by status."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.status,
            QueueCommand(db_path=db_path, processor=processor, params=params),
        ),
    )


@batch_queue.command("clear")
@_queue_options
def clear(db_path: Path | None, processor: str, params: tuple[str, ...]) -> None:
    """Release every claimed task of a partition back to the queue."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.clear,
            QueueCommand(db_path=db_path, processor=processor, params=params),
        ),
    )


@batch_queue.command("terminate")
@_queue_options
def terminate(db_path: Path | None, processor: str, params: tuple[str, ...]) -> None:
    """Delete every task of a partition."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.terminate,
            QueueCommand(db_path=db_path, processor=processor, params=params),
        ),
    )


@batch_queue.command("prune")
@_queue_options
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=30,
    show_default=True,
    help="Delete tasks created more than this many days ago.",
)
@click.option(
    "--status",
    "statuses",
    type=click.Choice(["pending", "success", "failure"], case_sensitive=False),
    multiple=True,
    help="Only delete tasks in this status. Can be repeated.",
)
def prune(  # noqa: PLR0913
    db_path: Path | None,
    processor: str,
    params: tuple[str, ...],
    days: int,
    statuses: tuple[str, ...],
) -> None:
    """Delete old tasks of the processor's queue across all partitions."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.prune,
            PruneCommand(
                db_path=db_path,
                processor=processor,
                params=params,
                days=days,
                statuses=statuses,
            ),
        ),
    )


def _invoke(handler: Callable[[Any], list[str]], command: Any) -> list[str]:
    try:
        return handler(command)
    except BatchQueueError as error:
        raise click.ClickException(f"[{error.code}] {error.message}") from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    batch_queue()
