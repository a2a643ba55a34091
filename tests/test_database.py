"""Tests for database URL handling"""
from webhook_retry.database import create_db_engine, normalize_database_url


def test_postgres_scheme_rewritten():
    assert normalize_database_url("postgres://u:p@host/db") == "postgresql+psycopg2://u:p@host/db"


def test_psycopg3_driver_rewritten():
    assert normalize_database_url("postgresql+psycopg://u:p@host/db") == "postgresql+psycopg2://u:p@host/db"


def test_supabase_gets_sslmode():
    url = normalize_database_url("postgresql://u:p@db.abc.supabase.com:5432/postgres")
    assert url.endswith("?sslmode=require")

    url = normalize_database_url("postgresql://u:p@db.abc.supabase.com/postgres?application_name=x")
    assert url.endswith("&sslmode=require")


def test_plain_url_untouched():
    assert normalize_database_url("postgresql://u:p@localhost:5432/db") == "postgresql://u:p@localhost:5432/db"


def test_sqlite_engine_skips_pool_options():
    engine = create_db_engine("sqlite://")
    try:
        assert engine.dialect.name == "sqlite"
    finally:
        engine.dispose()
