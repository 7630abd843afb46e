"""Alembic environment for the ledger database.

The database URL comes from LEDGERSYNC_DATABASE_URL (a .env file is honored),
falling back to sqlalchemy.url in alembic.ini.
"""

from __future__ import annotations

from logging.config import fileConfig
import os

from dotenv import find_dotenv, load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context
from ledgersync.adapters.db.models import Base

dotenv_path = find_dotenv(usecwd=True)
if dotenv_path:
    load_dotenv(dotenv_path=dotenv_path, override=False)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

db_url = os.getenv("LEDGERSYNC_DATABASE_URL") or config.get_main_option(
    "sqlalchemy.url"
)
if not db_url:
    raise RuntimeError(
        "LEDGERSYNC_DATABASE_URL is not set. Provide it via environment or set "
        "'sqlalchemy.url' in alembic.ini."
    )
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = db_url
    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
