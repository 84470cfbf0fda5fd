"""
Alembic environment for the billing schema.

WHY: Migrations run through the same async driver as the application, and
autogenerate compares against every billing model (subscriptions, plans,
processed webhook events, notifications).

The target database comes from settings.DATABASE_URL unless overridden on
the command line, e.g. ``alembic -x url=postgresql://... upgrade head``.
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

from billing_engine import models  # noqa: F401  (registers tables)
from billing_engine.core.config import settings
from billing_engine.models.base import Base


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url(async_driver: bool) -> str:
    url = context.get_x_argument(as_dictionary=True).get("url", settings.DATABASE_URL)
    if async_driver:
        return url.replace("postgresql://", "postgresql+asyncpg://")
    return url


def _configure(**kwargs) -> None:
    # Partial unique index predicates and enum types must be compared too
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for review instead of connecting."""
    _configure(
        url=_database_url(async_driver=False),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url(async_driver=True)
    connectable = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
