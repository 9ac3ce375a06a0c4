"""
Storage - Database Engine and Sessions.

============================================================
RESPONSIBILITY
============================================================
Manages database connections and sessions.

- Builds the SQLAlchemy engine from configuration
- Provides a session factory for repositories and services
- Explicit transaction boundaries (commit or roll back)
- Table creation for a fresh database

============================================================
DESIGN PRINCIPLES
============================================================
- Repositories never commit; the transaction scope does
- Every bucket rewrite happens inside one transaction
- Hard failures on persistence errors
- PostgreSQL in production, SQLite file for tests

============================================================
"""

import logging
import os
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storage.models import Base

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

DEFAULT_DATABASE_URL = "sqlite:///water_production.db"


# =============================================================
# EXCEPTIONS
# =============================================================


class DatabasePersistenceError(Exception):
    """A unit of work could not be committed."""


class DatabaseConnectionError(Exception):
    """The database is unreachable."""


# =============================================================
# DATABASE ENGINE
# =============================================================

_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def create_database_engine(
    url: Optional[str] = None,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite engines are created without pool sizing and with
    cross-thread access enabled, since jobs run repository code in
    worker threads.

    Args:
        url: Database URL (default: from environment)
        pool_size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        pool_recycle: Recycle connections after N seconds
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    database_url = url or get_database_url()

    logger.info(f"Creating database engine for: {database_url.split('@')[-1]}")

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def on_sqlite_connect(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = create_engine(
            database_url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
            echo=echo,
        )

    @event.listens_for(engine, "checkout")
    def on_checkout(dbapi_conn, connection_record, connection_proxy):
        logger.debug("Database connection checked out from pool")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Build a session factory bound to an engine."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def get_engine() -> Engine:
    """Get the process-wide engine, creating if necessary."""
    global _engine
    if _engine is None:
        _engine = create_database_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """Get the process-wide session factory, creating if necessary."""
    global _SessionFactory
    if _SessionFactory is None:
        _SessionFactory = create_session_factory(get_engine())
    return _SessionFactory


def configure_database(url: str, echo: bool = False) -> sessionmaker:
    """
    Replace the process-wide engine.

    Used by the CLI after configuration is loaded.
    """
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = create_database_engine(url=url, echo=echo)
    _SessionFactory = create_session_factory(_engine)
    return _SessionFactory


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@contextmanager
def transaction_scope(
    session_factory: Optional[SessionFactory] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception.

    Usage:
        with transaction_scope(factory) as session:
            SnapshotRepository(session).insert(...)
            # Commits automatically at end

    Raises:
        DatabasePersistenceError: If the commit fails
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise DatabasePersistenceError(f"Transaction failed: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================


def verify_database_connection(engine: Optional[Engine] = None) -> bool:
    """
    Verify database connection is working.

    Raises:
        DatabaseConnectionError: If connection fails
    """
    engine = engine or get_engine()

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified successfully")
            return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise DatabaseConnectionError(f"Cannot connect to database: {e}") from e


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """Create all tables defined in ORM models."""
    engine = engine or get_engine()
    Base.metadata.create_all(engine)
    logger.info(f"Ensured {len(Base.metadata.tables)} tables exist")


__all__ = [
    "SessionFactory",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "get_database_url",
    "create_database_engine",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "configure_database",
    "transaction_scope",
    "verify_database_connection",
    "create_all_tables",
]
