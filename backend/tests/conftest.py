"""Pytest configuration and fixtures."""

import os
import time
import pytest
from typing import Generator
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from dotenv import load_dotenv
import fakeredis

# Load .env file
load_dotenv()

# Set test environment before importing app
os.environ["APP_ENV"] = "testing"
os.environ["SUPABASE_URL"] = "https://test.supabase.co"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "service-role-key"
os.environ["SUPABASE_PUBLISHABLE_KEY"] = "publishable-key"
os.environ["PLAID_CLIENT_ID"] = "plaid-client-id"
os.environ["PLAID_SECRET"] = "plaid-secret"
os.environ["PLAID_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["ENABLE_CRON_JOBS"] = "false"
os.environ["RUN_WORKERS"] = "false"

from tests.fakes import FakeClock, InMemoryDatabase, ScriptedFetcher  # noqa: E402

TEST_USER = {"id": "user-1", "email": "test@example.com", "display_name": "Test User"}


@pytest.fixture
def settings():
    """Settings built from the test environment."""
    from app.config import get_settings

    return get_settings()


@pytest.fixture
def redis_client():
    """Isolated fake Redis with Lua scripting."""
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock(time.time())


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def fetcher():
    return ScriptedFetcher()


@pytest.fixture
def engine(settings, redis_client, db, fetcher, clock):
    """Fully wired engine on fake Redis and the in-memory database."""
    from app.engine import SyncEngine

    return SyncEngine(settings, redis_client, db, fetcher, clock=clock)


@pytest.fixture
def store(engine):
    return engine.store


@pytest.fixture
def connection(db):
    """A connected item that has never synced."""
    return db.add_connection(user_id=TEST_USER["id"])


@pytest.fixture
def app(engine, db):
    """Test application wired to the test engine, with auth stubbed out."""
    from app.main import app
    from app.dependencies import get_current_user, get_database

    app.state.engine = engine
    app.dependency_overrides[get_current_user] = lambda: TEST_USER
    app.dependency_overrides[get_database] = lambda: db
    yield app
    app.dependency_overrides.clear()
    del app.state.engine


@pytest.fixture
def client(app) -> Generator:
    """Create test client (lifespan not run; the engine is injected)."""
    yield TestClient(app)


@pytest.fixture
def cron_headers():
    return {"Authorization": "Bearer test-cron-secret"}
