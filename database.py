"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the duel wagering service.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError, ProgrammingError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

# Database engine with connection pooling
if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # Local runs and tests: one file, many connections, writers wait on the lock
    engine = create_engine(
        Config.DATABASE_URL,
        echo=Config.DATABASE_ECHO,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()
else:
    engine = create_engine(
        Config.DATABASE_URL,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=Config.DATABASE_ECHO,
        connect_args={
            "connect_timeout": 10,
            "application_name": "duel_ledger_core",  # For monitoring in pg_stat_activity
        },
    )

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)


def create_tables() -> bool:
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        try:
            Base.metadata.create_all(bind=engine, checkfirst=True)
        except ProgrammingError as e:
            # Indexes that already exist are expected on restarts
            if "already exists" in str(e):
                logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")
            else:
                raise

        existing_tables = inspect(engine).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def drop_tables():
    """Drop every table - used by tests and local resets only"""
    Base.metadata.drop_all(bind=engine)


def test_connection() -> bool:
    """Run a trivial query to confirm the database is reachable"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except OperationalError as e:
        logger.error(f"❌ DATABASE_CONNECTION_FAILED: {e}")
        return False


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()
