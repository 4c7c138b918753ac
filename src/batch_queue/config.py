"""Runtime configuration for the batch queue."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class MasterSettings:
    """Slave supervision settings used by master mode."""

    lease_lifetime_seconds: int = 3_600
    poll_interval_seconds: float = 1.0
    spawn_interval_seconds: float = 1.0
    spawn_attempts: int = 5
    spawn_backoff_seconds: float = 0.5
    spawn_backoff_multiplier: float = 2.0
    max_spawn_failure_rounds: int = 10
    touch_period: int = 20


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".batch_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    master: MasterSettings = field(default_factory=MasterSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        return cls(
            db_path=db_path or Path(os.getenv("BATCH_QUEUE_DB_PATH", ".batch_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("BATCH_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("BATCH_QUEUE_LOG_LEVEL", "INFO").strip().upper(),
            master=MasterSettings(
                lease_lifetime_seconds=int(
                    os.getenv("BATCH_QUEUE_LEASE_LIFETIME_SECONDS", "3600"),
                ),
                poll_interval_seconds=float(
                    os.getenv("BATCH_QUEUE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                spawn_interval_seconds=float(
                    os.getenv("BATCH_QUEUE_SPAWN_INTERVAL_SECONDS", "1.0"),
                ),
                spawn_attempts=int(os.getenv("BATCH_QUEUE_SPAWN_ATTEMPTS", "5")),
                spawn_backoff_seconds=float(
                    os.getenv("BATCH_QUEUE_SPAWN_BACKOFF_SECONDS", "0.5"),
                ),
                spawn_backoff_multiplier=float(
                    os.getenv("BATCH_QUEUE_SPAWN_BACKOFF_MULTIPLIER", "2.0"),
                ),
                max_spawn_failure_rounds=int(
                    os.getenv("BATCH_QUEUE_MAX_SPAWN_FAILURE_ROUNDS", "10"),
                ),
                touch_period=int(os.getenv("BATCH_QUEUE_TOUCH_PERIOD", "20")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BATCH_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid BATCH_QUEUE_LOG_LEVEL: {self.log_level!r}")
        if self.master.lease_lifetime_seconds <= 0:
            raise ValueError("BATCH_QUEUE_LEASE_LIFETIME_SECONDS must be > 0.")
        if self.master.poll_interval_seconds < 0:
            raise ValueError("BATCH_QUEUE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.master.spawn_interval_seconds < 0:
            raise ValueError("BATCH_QUEUE_SPAWN_INTERVAL_SECONDS must be >= 0.")
        if self.master.spawn_attempts <= 0:
            raise ValueError("BATCH_QUEUE_SPAWN_ATTEMPTS must be > 0.")
        if self.master.spawn_backoff_seconds < 0:
            raise ValueError("BATCH_QUEUE_SPAWN_BACKOFF_SECONDS must be >= 0.")
        if self.master.spawn_backoff_multiplier < 1.0:
            raise ValueError("BATCH_QUEUE_SPAWN_BACKOFF_MULTIPLIER must be >= 1.0.")
        if self.master.max_spawn_failure_rounds <= 0:
            raise ValueError("BATCH_QUEUE_MAX_SPAWN_FAILURE_ROUNDS must be > 0.")
        if self.master.touch_period <= 0:
            raise ValueError("BATCH_QUEUE_TOUCH_PERIOD must be > 0.")
