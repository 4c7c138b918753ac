from pathlib import Path

import allure
import pytest

from batch_queue.config import Settings

pytestmark = [
    allure.epic("Batch Queue"),
    allure.feature("Configuration"),
]


def test_settings_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".batch_queue.db")
    assert settings.sqlite_busy_timeout_ms == 5000
    assert settings.log_level == "INFO"
    assert settings.master.lease_lifetime_seconds == 3600
    assert settings.master.poll_interval_seconds == 1.0
    assert settings.master.spawn_interval_seconds == 1.0
    assert settings.master.spawn_attempts == 5
    assert settings.master.spawn_backoff_seconds == 0.5
    assert settings.master.spawn_backoff_multiplier == 2.0
    assert settings.master.max_spawn_failure_rounds == 10
    assert settings.master.touch_period == 20
    settings.validate()


def test_settings_read_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCH_QUEUE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("BATCH_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "250")
    monkeypatch.setenv("BATCH_QUEUE_LOG_LEVEL", " debug ")
    monkeypatch.setenv("BATCH_QUEUE_LEASE_LIFETIME_SECONDS", "30")
    monkeypatch.setenv("BATCH_QUEUE_POLL_INTERVAL_SECONDS", "0.2")
    monkeypatch.setenv("BATCH_QUEUE_SPAWN_ATTEMPTS", "2")
    monkeypatch.setenv("BATCH_QUEUE_TOUCH_PERIOD", "5")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.sqlite_busy_timeout_ms == 250
    assert settings.log_level == "DEBUG"
    assert settings.master.lease_lifetime_seconds == 30
    assert settings.master.poll_interval_seconds == 0.2
    assert settings.master.spawn_attempts == 2
    assert settings.master.touch_period == 5


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCH_QUEUE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("BATCH_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "0", "BUSY_TIMEOUT"),
        ("BATCH_QUEUE_LOG_LEVEL", "chatty", "LOG_LEVEL"),
        ("BATCH_QUEUE_LEASE_LIFETIME_SECONDS", "0", "LEASE_LIFETIME"),
        ("BATCH_QUEUE_SPAWN_ATTEMPTS", "0", "SPAWN_ATTEMPTS"),
        ("BATCH_QUEUE_SPAWN_BACKOFF_MULTIPLIER", "0.5", "BACKOFF_MULTIPLIER"),
        ("BATCH_QUEUE_MAX_SPAWN_FAILURE_ROUNDS", "0", "SPAWN_FAILURE_ROUNDS"),
        ("BATCH_QUEUE_TOUCH_PERIOD", "0", "TOUCH_PERIOD"),
    ],
)
def test_settings_validate_rejects_out_of_range_values(
    monkeypatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()
