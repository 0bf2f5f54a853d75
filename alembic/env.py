from __future__ import annotations

from logging.config import fileConfig
import os

from alembic import context

from globalsched.db.base import Base
from globalsched.db.config import get_db_settings
from globalsched.db.engine import make_engine

# Registers the scheduling tables on Base.metadata.
from globalsched.db import models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    # The store runs upgrades in-process; its loggers must survive.
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def _database_url() -> str:
    # DATABASE_URL wins so `alembic upgrade head` targets the same database as the services.
    return (
        (os.environ.get("DATABASE_URL") or "").strip()
        or (config.get_main_option("sqlalchemy.url") or "").strip()
        or get_db_settings().database_url
    )


def run_migrations_offline() -> None:
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _database_url()
    engine = make_engine(url, settings=get_db_settings(), pooled=False)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
