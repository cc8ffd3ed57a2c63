from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from settings import settings


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Migrations are raw SQL (op.execute); there is no ORM metadata to diff.
target_metadata = None


def _database_url() -> str:
    url = (settings.DATABASE_URL or config.get_main_option("sqlalchemy.url") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table="alembic_version",
        transaction_per_migration=True,
        **kwargs,
    )


def run_offline() -> None:
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
