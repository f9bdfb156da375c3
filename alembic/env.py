"""
env.py — Alembic migration environment for SheetSync

Loads DATABASE_URL from sheetsync config and imports every model so
autogenerate sees the full schema.

Business Rules:
- Always use transaction-per-migration
- The messages table is shared with the channel ingester: only add
  columns there, never rename or drop

Called by: alembic CLI
Depends on: sheetsync.models (Base + all tables), sheetsync.config (Settings)
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from sheetsync.config import Settings
from sheetsync.models import Base  # noqa: F401  registers all tables on Base.metadata

config = context.config

# URL comes from settings, not alembic.ini
settings = Settings()
config.set_main_option("sqlalchemy.url", settings.database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL without connecting."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
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
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
