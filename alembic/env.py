"""Alembic environment for the custody schema.

Migrations run through the same async engine factory the service uses, so
`alembic upgrade head` accepts whatever DATABASE_URL the service accepts
(PostgreSQL via asyncpg, or SQLite via aiosqlite for local runs).
"""

from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import pool
from sqlalchemy.engine import Connection

from exchange_custody.storage.database import _normalize_async_database_url, create_async_db_engine
from exchange_custody.storage.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Same .env the service reads; real environment variables win.
load_dotenv(override=False)

target_metadata = Base.metadata


def _resolve_database_url() -> str:
    url = os.environ.get("SQLALCHEMY_DATABASE_URL") or os.environ.get("DATABASE_URL")
    url = url or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot run custody migrations")
    return _normalize_async_database_url(os.path.expandvars(url))


def run_migrations_offline() -> None:
    """Emit SQL for the custody tables without connecting."""
    url = _resolve_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=url.startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def _do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place.
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def _run_migrations_online_async() -> None:
    engine = create_async_db_engine(_resolve_database_url(), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_do_run_migrations)
    finally:
        await engine.dispose()


def run_migrations_online() -> None:
    asyncio.run(_run_migrations_online_async())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
