import asyncio
import logging
import os
import sys
from logging.config import fileConfig

# backend/ holds the 'app' package
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_engine_from_config

import app.models  # noqa: F401
from alembic import context
from app.core.config import settings
from app.db.base import Base

MAX_CONNECT_ATTEMPTS = 5

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

# The database URL always comes from settings, never from alembic.ini
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,  # SQLite cannot ALTER most columns in place
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        for attempt in range(1, MAX_CONNECT_ATTEMPTS + 1):
            try:
                async with connectable.connect() as connection:
                    await connection.run_sync(do_run_migrations)
                return
            except OperationalError as exc:
                if attempt == MAX_CONNECT_ATTEMPTS:
                    raise
                delay = 2 ** (attempt - 1)
                logger.warning(
                    f"Database connection failed during migrations ({attempt}/{MAX_CONNECT_ATTEMPTS}): "
                    f"{exc}. Retrying in {delay}s"
                )
                await asyncio.sleep(delay)
    finally:
        await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
