"""Alembic environment for the tenant billing schema.

Only the billing tables listed in db.SCHEMA_TABLES are managed here, and the
revision bookkeeping goes to its own version table, so the schema can live in
a PostgreSQL database shared with other services.
"""

import os
import sys
from logging.config import fileConfig

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from alembic import context

# db loads .env and resolves TENANT_BILLING_POSTGRES_DSN / DATABASE_URL
from db import ALEMBIC_VERSION_TABLE, POSTGRES_DSN, SCHEMA_TABLES

config = context.config

dsn = POSTGRES_DSN or config.get_main_option("sqlalchemy.url")
if not dsn.startswith("postgresql"):
    raise RuntimeError(
        "tenant billing migrations target PostgreSQL; SQLite builds its schema in db.py"
    )
# psycopg3 driver, not psycopg2
if dsn.startswith("postgresql://"):
    dsn = dsn.replace("postgresql://", "postgresql+psycopg://", 1)
config.set_main_option("sqlalchemy.url", dsn)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def include_name(name, type_, parent_names):
    if type_ == "table":
        return name in SCHEMA_TABLES
    return True


def _configure(**kw):
    context.configure(
        target_metadata=None,
        version_table=ALEMBIC_VERSION_TABLE,
        include_name=include_name,
        **kw,
    )


def run_migrations_offline():
    """Emit the billing DDL as SQL without a database connection."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    from sqlalchemy import create_engine

    engine = create_engine(config.get_main_option("sqlalchemy.url"))

    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()

    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
