"""Alembic environment for the rentdesk schema. Runs with a sync driver (psycopg2)."""
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

from rentdesk.config import settings
from rentdesk.db.base import Base
import rentdesk.models  # noqa: F401 - register users, subscriptions, ledger and webhook inbox

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# `alembic -x db_url=postgresql://...` overrides the configured database
db_url = context.get_x_argument(as_dictionary=True).get("db_url") or settings.sync_database_url
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


def _configure_kwargs() -> dict:
    # Numeric precision and partial index predicates matter for the billing tables
    return {"target_metadata": target_metadata, "compare_type": True}


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            render_as_batch=connection.dialect.name == "sqlite",
            **_configure_kwargs(),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
