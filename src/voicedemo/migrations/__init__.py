"""
Alembic migrations for the voicedemo schema.

There is no alembic.ini: the configuration is built in code so the
migrations run from an installed package as well as from a checkout.
"""

from pathlib import Path

from alembic import command
from alembic.config import Config

from voicedemo.config import get_settings

MIGRATIONS_DIR = Path(__file__).resolve().parent


def get_alembic_config(database_url: str | None = None) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", database_url or get_settings().database_url)
    return config


def upgrade_database(database_url: str | None = None, revision: str = "head") -> None:
    """Apply migrations up to ``revision``."""
    command.upgrade(get_alembic_config(database_url), revision)


def downgrade_database(database_url: str | None = None, revision: str = "base") -> None:
    command.downgrade(get_alembic_config(database_url), revision)
