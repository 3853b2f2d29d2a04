"""Alembic environment for the build job schema.

The URL always comes from ``AppSettings`` rather than ``alembic.ini``; an
async ``DATABASE_URL`` override is rewritten to its psycopg2 equivalent.
"""

import pathlib
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url

from api_service.db.models import Base
from nightbuild.config.settings import AppSettings
from nightbuild.workflows.build_jobs import models as build_job_models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
migration_settings = AppSettings(_env_file=PROJECT_ROOT / ".env")

target_metadata = Base.metadata


def _sync_database_url() -> str:
    if not migration_settings.database_url:
        return migration_settings.database.POSTGRES_URL_SYNC
    url = make_url(migration_settings.database_url)
    if url.drivername == "postgresql+asyncpg":
        url = url.set(drivername="postgresql+psycopg2")
    return url.render_as_string(hide_password=False)


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    """Emit SQL to the script output without a DBAPI connection."""

    _configure(
        url=_sync_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )


def run_migrations_online() -> None:
    section = dict(config.get_section(config.config_ini_section) or {})
    section["sqlalchemy.url"] = _sync_database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        _configure(connection=connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
