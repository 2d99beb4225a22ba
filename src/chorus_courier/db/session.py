"""Database engine and session factory for the queue tables."""

from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from chorus_courier.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated for Alembic.
import chorus_courier.models  # noqa: E402,F401

DATABASE_URL = settings.effective_database_url

# Overlapping ticks share one SQLite file; wait on its write lock instead of failing.
SQLITE_CONNECT_ARGS = {"check_same_thread": False, "timeout": 30}

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    echo=settings.sql_debug,
    connect_args=SQLITE_CONNECT_ARGS if DATABASE_URL.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
