from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker, declarative_base
import os

from config.settings import get_settings

SQLALCHEMY_DATABASE_URL = (os.getenv("DATABASE_URL") or get_settings().database_url or "").strip()

# Special case for local testing/CI
IS_TEST = os.getenv("PYTEST_CURRENT_TEST") is not None or os.getenv("ENVIRONMENT") == "testing"

if (not SQLALCHEMY_DATABASE_URL or not SQLALCHEMY_DATABASE_URL.startswith("postgresql")) and not IS_TEST:
    raise RuntimeError(
        "CRITICAL: DATABASE_URL must be a valid PostgreSQL connection string. "
        "SQLite is only supported for the test suite."
    )

if IS_TEST and not SQLALCHEMY_DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test_router.db"

if SQLALCHEMY_DATABASE_URL.startswith("postgresql"):
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_size=20,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
else:
    # SQLite for testing
    engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def run_migrations():
    """Bootstrap the database schema. Schema provisioning proper lives outside this service."""
    from app.core import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=engine)


def upsert(table):
    """Return a dialect-specific INSERT supporting ``on_conflict_do_update``.

    Both PostgreSQL and SQLite support row-level upserts with the same API,
    so repositories never need a read-modify-write cycle.
    """
    if engine.dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)
