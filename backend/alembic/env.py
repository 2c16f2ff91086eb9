from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from omniverify.db import Base
from omniverify.config import settings
import omniverify.models  # noqa: F401  (registers tables on Base.metadata)

# Alembic Config
config = context.config

# Override sqlalchemy.url using settings (sync URL required)
config.set_main_option(
    "sqlalchemy.url",
    str(settings.DATABASE_URL).replace("+asyncpg", "").replace("+aiosqlite", "")
)

# Logging
if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline():
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")

    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
