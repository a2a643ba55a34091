import logging
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from webhook_retry import config

log = logging.getLogger(__name__)


def normalize_database_url(connection_url: str) -> str:
    """Rewrite hosted Postgres URLs into a form SQLAlchemy's psycopg2 driver accepts."""
    # Hosts hand out postgres:// URLs, which SQLAlchemy no longer recognises
    if connection_url.startswith("postgres://"):
        connection_url = connection_url.replace("postgres://", "postgresql+psycopg2://", 1)

    # Convert postgresql+psycopg:// to postgresql+psycopg2:// for compatibility
    if "postgresql+psycopg:" in connection_url and "postgresql+psycopg2:" not in connection_url:
        connection_url = connection_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")

    # Add SSL mode for Supabase if not already present
    if "supabase.com" in connection_url and "sslmode=" not in connection_url:
        separator = "&" if "?" in connection_url else "?"
        connection_url = f"{connection_url}{separator}sslmode=require"

    return connection_url


def create_db_engine(connection_url: str | None = None, **kwargs) -> Engine:
    """Create an engine for the given URL (defaults to the configured database)."""
    if connection_url is None:
        connection_url = config.get_settings().POSTGRES_URI
    connection_url = normalize_database_url(connection_url)

    if connection_url.startswith("sqlite"):
        return create_engine(connection_url, **kwargs)

    options = {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": 3,
        "max_overflow": 7,  # 10 connections total max
        "pool_recycle": 300,  # Recycle connections after 5 minutes
        "echo": False,  # Set to True for SQL debugging
    }
    options.update(kwargs)
    engine = create_engine(connection_url, **options)
    log.info(f"[Database] SQLAlchemy engine created with pool_size={options['pool_size']}, max_overflow={options['max_overflow']}")
    return engine


@lru_cache()
def get_engine() -> Engine:
    return create_db_engine()
