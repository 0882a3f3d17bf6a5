"""Programmatic Alembic upgrades for the orchard state database.

`alembic/` and `alembic.ini` are looked up beside `src/`, so migrations only
resolve from a source checkout or an editable install.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

PROJECT_DIR = Path(__file__).resolve().parents[3]
MIGRATIONS_DIR = PROJECT_DIR / "alembic"


def migrate_state_db(db_path: Path, revision: str = "head") -> None:
    """Bring `db_path` up to `revision`, creating the file when missing."""

    config = Config(str(PROJECT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    logger.debug("Migrating %s to %s", db_path, revision)
    command.upgrade(config, revision)
