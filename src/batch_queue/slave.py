"""Slave handles supervised by master mode."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from batch_queue.config import Settings
from batch_queue.errors import SlaveError, SpawnError
from batch_queue.lease import LeaseManager
from batch_queue.options import MasterOptions, slave_arguments

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2_000


class SlaveHandle(Protocol):
    """Narrow view of one running slave, independent of its transport."""

    @property
    def session_id(self) -> str: ...

    def terminated(self) -> bool: ...

    def timed_out(self) -> bool: ...

    def result(self) -> Any: ...

    def abandon(self) -> None: ...


SlaveFactory = Callable[[LeaseManager, MasterOptions], SlaveHandle]


class SubprocessSlave:
    """A slave running ``batch_queue.main slave`` in a child process."""

    def __init__(
        self,
        *,
        manager: LeaseManager,
        process: subprocess.Popen[str],
        workdir: Path,
    ) -> None:
        self.manager = manager
        self.process = process
        self.workdir = workdir

    @classmethod
    def spawn(  # noqa: PLR0913
        cls,
        *,
        manager: LeaseManager,
        argv: list[str],
        env: Mapping[str, str] | None = None,
        attempts: int = 5,
        backoff_seconds: float = 0.5,
        backoff_multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> SubprocessSlave:
        """Start the child, retrying with a growing backoff; raises ``SpawnError``."""

        delay = backoff_seconds
        last_error: OSError | None = None
        for attempt in range(1, attempts + 1):
            workdir = Path(tempfile.mkdtemp(prefix="batch-queue-slave-"))
            try:
                with (
                    (workdir / "stdout.json").open("w", encoding="utf-8") as stdout_handle,
                    (workdir / "stderr.log").open("w", encoding="utf-8") as stderr_handle,
                ):
                    process = subprocess.Popen(  # noqa: S603
                        argv,
                        env=dict(env) if env is not None else None,
                        stdin=subprocess.DEVNULL,
                        stdout=stdout_handle,
                        stderr=stderr_handle,
                        text=True,
                    )
            except OSError as error:
                shutil.rmtree(workdir, ignore_errors=True)
                last_error = error
                logger.warning(
                    "Slave %s failed to start (attempt %d/%d): %s",
                    manager.session_id,
                    attempt,
                    attempts,
                    error,
                )
                if attempt < attempts:
                    sleep(delay)
                    delay *= backoff_multiplier
                continue
            logger.info("Started slave %s (pid %d)", manager.session_id, process.pid)
            return cls(manager=manager, process=process, workdir=workdir)
        raise SpawnError(
            f"Failed to start slave {manager.session_id} after {attempts} attempts: {last_error}",
        )

    @property
    def session_id(self) -> str:
        return self.manager.session_id

    @property
    def stdout_path(self) -> Path:
        return self.workdir / "stdout.json"

    @property
    def stderr_path(self) -> Path:
        return self.workdir / "stderr.log"

    def terminated(self) -> bool:
        return self.process.poll() is not None

    def timed_out(self) -> bool:
        return self.manager.lease_expired()

    def result(self) -> Any:
        """Decode the result envelope written by the slave; raises ``SlaveError``."""

        returncode = self.process.wait()
        try:
            stdout = _read_text(self.stdout_path)
            stderr = _read_text(self.stderr_path)
        finally:
            self._cleanup()

        envelope = _parse_envelope(stdout)
        if envelope is not None and envelope.get("status") == "error":
            raise SlaveError(self.session_id, f"reported error: {envelope.get('error')}")
        if returncode != 0:
            raise SlaveError(
                self.session_id,
                f"exited with status {returncode}: {stderr[-_STDERR_TAIL_CHARS:].strip()}",
            )
        if envelope is None or envelope.get("status") != "success" or "result" not in envelope:
            raise SlaveError(self.session_id, f"malformed output: {stdout[:200]!r}")
        return envelope["result"]

    def abandon(self) -> None:
        _terminate_process(self.process)
        self._cleanup()

    def _cleanup(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)


@dataclass(slots=True)
class SubprocessSlaveFactory:
    """Builds ``SubprocessSlave`` instances for one processor and database."""

    processor_ref: str
    db_path: Path
    params: Mapping[str, str] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)
    python: str = sys.executable

    def __call__(self, manager: LeaseManager, options: MasterOptions) -> SubprocessSlave:
        master = self.settings.master
        return SubprocessSlave.spawn(
            manager=manager,
            argv=self.command(manager.session_id, options),
            env=self.environment(),
            attempts=master.spawn_attempts,
            backoff_seconds=master.spawn_backoff_seconds,
            backoff_multiplier=master.spawn_backoff_multiplier,
        )

    def command(self, lease_id: str, options: MasterOptions) -> list[str]:
        argv = [
            self.python,
            "-m",
            "batch_queue.main",
            "slave",
            "--db-path",
            str(self.db_path),
            "--processor",
            self.processor_ref,
        ]
        for key, value in sorted(self.params.items()):
            argv.extend(["--param", f"{key}={value}"])
        for name, value in slave_arguments(options, lease_id).items():
            flag = "--" + name.replace("_", "-")
            if name == "shuffle":
                argv.append(flag)
            else:
                argv.extend([flag, value])
        return argv

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env["BATCH_QUEUE_SQLITE_BUSY_TIMEOUT_MS"] = str(self.settings.sqlite_busy_timeout_ms)
        env["BATCH_QUEUE_LOG_LEVEL"] = self.settings.log_level
        env["BATCH_QUEUE_LEASE_LIFETIME_SECONDS"] = str(self.settings.master.lease_lifetime_seconds)
        env["BATCH_QUEUE_TOUCH_PERIOD"] = str(self.settings.master.touch_period)
        return env


def _parse_envelope(stdout: str) -> dict[str, Any] | None:
    text = stdout.strip()
    if not text:
        return None
    try:
        payload = json.loads(text.splitlines()[-1])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8")
    except FileNotFoundError:
        return ""


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
