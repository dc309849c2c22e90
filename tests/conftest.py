"""
Shared pytest fixtures and configuration
"""

import os
import sys
from pathlib import Path

# Set test environment variables before any application module reads the settings
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["BASE_URL"] = "http://testserver"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["TELEGRAM_BOT_USERNAME"] = "hook_test_bot"
os.environ["TELEGRAM_BOT_TOKENS"] = "12345:test-bot-token"
os.environ["PLUGINS_AUTO_DISCOVER"] = "false"

# Add the project root to Python path to make imports work
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from context import WebhookContext
from database import Base, get_db
from plugins import register_service_plugin, unregister_service_plugin

# Create in-memory SQLite database for testing
engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def test_db():
    """
    Create all tables in the test database and provide a new session for testing.
    Tear down the tables after the test is complete.
    """
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(test_db):
    """Session factory bound to the test database, for code that opens its own sessions."""
    return TestingSessionLocal


@pytest.fixture(scope="function")
def app(test_db, session_factory, monkeypatch) -> FastAPI:
    """
    Create a FastAPI app for testing with DB dependency override.
    """
    from main import app as main_app
    import oauth_routes

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    main_app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(oauth_routes, "SessionLocal", session_factory)

    yield main_app

    main_app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(app):
    """
    Test client without lifespan handling, so the service registry stays
    writable and tests can register their own services.
    """
    return TestClient(app)


@pytest.fixture(scope="function")
def raw_dump_dir(tmp_path, monkeypatch):
    """Point the raw delivery dumps at a temporary directory."""
    dump_dir = tmp_path / "raw"
    monkeypatch.setattr(get_settings(), "RAW_DUMP_DIR", str(dump_dir))
    return dump_dir


@pytest.fixture
def register_service():
    """
    Register service plugins for the duration of one test.
    """
    registered = []

    def register(service):
        instance = register_service_plugin(service)
        registered.append(instance.service_name)
        return instance

    yield register

    for service_name in registered:
        unregister_service_plugin(service_name)


@pytest.fixture
def make_wctx():
    """Build an inbound delivery without going through HTTP."""
    def make(body=b'{"event": "push"}', headers=None, query=None):
        return WebhookContext(
            request_id="a1b2c3d4e5",
            path="/test",
            headers=headers or {"content-type": "application/json"},
            query=query or {},
            body=body,
        )
    return make
