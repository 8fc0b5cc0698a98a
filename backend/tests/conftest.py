"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/playlist_sync_test_config"

# Ensure test config directory exists
Path("/tmp/playlist_sync_test_config").mkdir(parents=True, exist_ok=True)

import database  # noqa: E402
import notifications  # noqa: E402
from config import ImportSettings, clear_settings_cache  # noqa: E402
from database import Base, create_db_engine  # noqa: E402
import models  # noqa: E402,F401  registers tables
from storage import LocalStorage, reset_storage  # noqa: E402


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_db_engine("sqlite://")
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """
    Session factory bound to the test engine, installed as the app's factory.

    Production code calls database.get_session() directly, so every
    pipeline module and notify() share the in-memory database.
    """
    # expire_on_commit=False allows accessing object attributes after commit/close
    factory = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    original = database._SessionLocal
    database.set_session_factory(factory)
    yield factory
    database.set_session_factory(original)


@pytest.fixture(scope="function")
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def storage(tmp_path):
    """Storage rooted in a per-test temporary directory."""
    reset_storage()
    yield LocalStorage(tmp_path / "storage")
    reset_storage()


@pytest.fixture(scope="function")
def import_settings():
    """Small chunks so tests exercise multi-item batching."""
    return ImportSettings(chunk_size=2, jobs_per_stage=2, map_chunk_size=2, epg_auto_match_threshold=80)


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(scope="function")
def sync_signals():
    """Collects playlist ids passed to the sync-completed signal."""
    received: list[int] = []
    notifications.on_sync_completed(received.append)
    yield received
    notifications.remove_sync_completed_listener(received.append)


@pytest.fixture(scope="function")
async def async_client(session_factory):
    """
    Create an async test client for the FastAPI app.

    The lifespan (database init, background engine) is not run; endpoints
    reach the test database through the installed session factory.
    """
    from httpx import AsyncClient, ASGITransport
    from main import app
    from task_engine import reset_engine

    reset_engine()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    reset_engine()
