"""
Database configuration and session management with dual database support.
Supports SQLite (default) and PostgreSQL (optional override).
"""
import logging
import os
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from app.core.config import settings, PROJECT_ROOT
from app.core.logging_config import _sanitize_data

logger = logging.getLogger(__name__)

# Get effective database URL and type
database_url = settings.effective_database_url
database_type = settings.database_type

logger.info(f"Using {database_type} database: {_sanitize_data(database_url)}")

if database_type == "sqlite":
    url = make_url(database_url)
    is_sqlite_memory = url.database in (None, "", ":memory:")

    if not is_sqlite_memory:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine_kwargs = {
        "echo": False,
        "connect_args": {"check_same_thread": False},
    }
    if is_sqlite_memory:
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_kwargs)
    logger.info(f"Configured SQLite engine ({'in-memory' if is_sqlite_memory else 'file-based'})")

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Set SQLite-specific pragma settings."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not is_sqlite_memory:
            cursor.execute("PRAGMA journal_mode=WAL")  # Concurrent API + worker writers
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.close()

elif database_type in {"postgres", "postgresql"}:
    engine_kwargs = {
        "echo": False,
        "pool_pre_ping": True,
        "pool_size": 20,
        "max_overflow": 10,
        "pool_recycle": 3600,  # Recycle connections every hour
    }

    engine = create_engine(database_url, **engine_kwargs)
    logger.info("Configured PostgreSQL engine with connection pooling")

else:
    engine = create_engine(database_url, echo=False, pool_pre_ping=True)
    logger.warning(
        f"Using unsupported database type '{database_type}'. "
        "Install the appropriate DB driver for production use."
    )


def create_db_and_tables():
    """Create database tables using Alembic migrations."""
    skip_db_init = os.getenv("SKIP_DB_INIT", "false").lower() in ("true", "1", "yes")
    if skip_db_init:
        logger.info("Skipping database initialization (SKIP_DB_INIT set)")
        return

    # Register every table on SQLModel.metadata before create_all
    import app.models  # noqa: F401

    try:
        logger.info("Running database migrations...")
        from alembic import command
        from alembic.config import Config

        alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
        alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", database_url)

        command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations completed successfully")

    except Exception as exc:
        logger.error(exc)
        logger.info("Falling back to SQLModel create_all...")
        SQLModel.metadata.create_all(engine)
        logger.info("Database tables created successfully (fallback)")


def get_session():
    """Get database session."""
    with Session(engine) as session:
        yield session


def get_session_context():
    """
    Get database session as context manager.

    Use this for background tasks and non-request contexts.

    Example:
        with get_session_context() as session:
            # use session
            pass
    """
    return Session(engine)


def init_db():
    """Initialize database tables."""
    logger.info("Initializing database...")
    create_db_and_tables()
    logger.info("Database initialization completed")
