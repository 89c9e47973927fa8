"""Alembic environment for the tbm_ schema.

The database URL comes from ``-x database_url=...`` when given, otherwise
from TBM_ROI_DATABASE_URL via Settings. Only tables carrying the tbm_ prefix
are compared during autogenerate, so the schema can share a database with
other services. SQLite runs in batch mode because it cannot ALTER columns.
"""

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from tbm_roi_engine.core import models  # noqa: F401  registers the tbm_ tables
from tbm_roi_engine.database import Base
from tbm_roi_engine.observability import get_logger
from tbm_roi_engine.settings import Settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = get_logger(__name__)

TABLE_PREFIX = "tbm_"
VERSION_TABLE = "tbm_alembic_version"

target_metadata = Base.metadata


def _database_url() -> str:
    return context.get_x_argument(as_dictionary=True).get("database_url") or Settings().database_url


def _include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    if type_ == "table":
        return name is not None and name.startswith(TABLE_PREFIX)
    return True


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=_include_object,
        version_table=VERSION_TABLE,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the tbm_ DDL as SQL without connecting."""
    url = _database_url()
    _configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Apply migrations over the service's async driver (asyncpg or aiosqlite)."""
    url = _database_url()
    connectable = create_async_engine(url)
    logger.info("tbm_migrations_started", dialect=connectable.dialect.name)
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
