"""Task store schema, migrated with the Alembic scripts shipped in this package."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def migration_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path``; needs no ``alembic.ini`` on disk."""

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    command.upgrade(migration_config(db_path), "head")


def head_revision() -> str | None:
    """Newest revision among the bundled migration scripts."""

    return ScriptDirectory(str(MIGRATIONS_DIR)).get_current_head()
