"""
SQLite database setup for playlists, channels, EPG links and work items.
"""
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR, env_settings

logger = logging.getLogger(__name__)

# Database file location
DB_FILE = CONFIG_DIR / "playlists.db"

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the database URL (DATABASE_URL overrides the SQLite file)."""
    return env_settings.database_url or f"sqlite:///{DB_FILE}"


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str):
    """Create an engine with the SQLite settings the app relies on."""
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,  # Set to True for SQL debugging
    )
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def init_db(database_url: str | None = None) -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)

        database_url = database_url or get_database_url()
        logger.info(f"Initializing database at {database_url}")

        _engine = create_db_engine(database_url)
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        import models  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


def set_session_factory(session_factory) -> None:
    """Replace the session factory (used by tests to bind an in-memory engine)."""
    global _SessionLocal
    _SessionLocal = session_factory


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    """Get the database engine."""
    if _engine is None:
        logger.error("Attempted to get database engine before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine
