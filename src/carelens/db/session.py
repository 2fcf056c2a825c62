"""Database session management."""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carelens.config import get_settings

settings = get_settings()


def create_db_engine(database_url: str, store_timeout_seconds: Optional[float] = None) -> Engine:
    """Create an engine whose lock and pool waits are bounded.

    SQLite gets a busy timeout and, for in-memory databases, a single shared
    connection so every session sees the same data.
    """
    timeout = store_timeout_seconds if store_timeout_seconds is not None else settings.store_timeout_seconds

    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=timeout,
        echo=False,  # Set to True for SQL query logging
    )


engine = create_db_engine(settings.database_url)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Initialize database (create all tables).

    Note: In production, use Alembic migrations instead.
    This is only for testing and development.
    """
    from carelens.db.models import Base

    Base.metadata.create_all(bind=bind or engine)


def drop_db(bind: Optional[Engine] = None) -> None:
    """Drop all tables.

    WARNING: This will delete all data!
    Only use in testing.
    """
    from carelens.db.models import Base

    Base.metadata.drop_all(bind=bind or engine)
