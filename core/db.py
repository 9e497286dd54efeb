# core/db.py
"""
Database management for the commission engine.
Single database, SQLite by default.
"""
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models.base import Base

logger = logging.getLogger(__name__)

# Database engines
_engine = None
_SessionFactory = None


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let pysqlite honour SAVEPOINT.

    The driver defers BEGIN on its own, which breaks nested transactions.
    The ledger relies on SAVEPOINT to turn unique-key collisions into no-ops.
    """

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine, applying the SQLite fix where needed."""
    engine = create_engine(database_url, echo=False, **kwargs)
    if engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(engine)
    return engine


def get_engine():
    """Get or create database engine."""
    global _engine
    if _engine is None:
        database_url = Config.get(Config.DATABASE_URL, "sqlite:///commission_engine.db")
        _engine = build_engine(database_url, pool_pre_ping=True)
        logger.info(f"Database engine created: {database_url}")
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = sessionmaker(bind=engine)
        logger.info("Session factory created")
    return _SessionFactory


def get_session() -> Session:
    """
    Get a new database session.

    Returns:
        Session instance
    """
    factory = get_session_factory()
    return factory()


@contextmanager
def get_db_session_ctx():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session_ctx() as session:
            member = session.query(Member).first()
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        session.close()


def setup_database():
    """Initialize database - create all tables."""
    # Register every model on Base.metadata
    import models  # noqa: F401

    logger.info("Setting up database...")
    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info("Database setup completed")


def drop_all_tables():
    """Drop all tables - USE WITH CAUTION!"""
    logger.warning("Dropping all tables...")
    engine = get_engine()
    Base.metadata.drop_all(engine)
    logger.info("All tables dropped")
