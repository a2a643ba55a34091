import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

from webhook_retry.database import normalize_database_url
from webhook_retry.models import metadata

# Load .env file
load_dotenv()

# Alembic Config object
config = context.config

# Load DB URI from environment and override config
# Check DATABASE_URL first, then POSTGRES_URI, then default to local SQLite
_db_url = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI")
database_url: str = normalize_database_url(_db_url) if _db_url else "sqlite:///./webhook_retry.db"

# Print the URL without credentials
if '@' in database_url:
    scheme = database_url.split('@')[0].split('://')[0]
    host = database_url.split('@')[1]
    url_for_display = f"{scheme}://***@{host}"
else:
    url_for_display = database_url
print(f"[Alembic] DATABASE_URL: {url_for_display}")

config.set_main_option("sqlalchemy.url", database_url)

# Set up logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Metadata for `--autogenerate`
target_metadata = metadata


def run_migrations_offline() -> None:
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


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section)
    if not configuration:
        raise Exception("No config section for Alembic")
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


# Entry point
if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
