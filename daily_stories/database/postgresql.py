import logging
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from ..core.config import settings

# Configure logging
logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite:///./daily_stories.db"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE rules unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def resolve_database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    logger.warning("PostgreSQL connection info incomplete. Using SQLite instead.")
    return SQLITE_FALLBACK_URL


def build_engine(database_url: str) -> Engine:
    """Create an engine with parameters suited to the database type."""
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory database
            sqlite_engine = create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        else:
            sqlite_engine = create_engine(database_url, connect_args=connect_args)
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=(settings.LOG_LEVEL == "DEBUG")
    )


DATABASE_URL = resolve_database_url()
engine = build_engine(DATABASE_URL)
logger.info(f"Using {engine.dialect.name} database")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create declarative base
Base = declarative_base()


def init_db(bind: Engine = None) -> None:
    """Initialize database and create tables"""
    # Registers every mapped class on Base.metadata
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created successfully")


def get_db() -> Iterator[Session]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def test_database_connection() -> bool:
    """Test the database connection by executing a simple query"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection error: {str(e)}")
        return False
