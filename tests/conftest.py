"""Shared fixtures for the Prompt Studio test suite.

Provides:
- Temporary SQLite database per test (unit tests) and per session (API tests)
- FastAPI async test client via httpx.AsyncClient
- Authenticated test user fixtures
- A deterministic run provider in place of the random mock
"""

import tempfile
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

from providers import MockFixedProvider, ModelCatalog, DEFAULT_MODELS

# Every API-created run reports these numbers
FIXED_LATENCY_MS = 1234
FIXED_TOKENS = 400


# ---------------------------------------------------------------------------
# Unit test fixtures -- temp DB per test
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_db(tmp_path, monkeypatch):
    """Patch db.DB_PATH to a temp file and initialise all tables."""
    import db
    temp_db = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", temp_db)
    await db.init_db()
    return temp_db


@pytest_asyncio.fixture
async def user(test_db):
    """A user created straight in the DB."""
    import db
    return await db.create_user("test@example.com", "hashed_pw_123", full_name="Test User")


@pytest_asyncio.fixture
async def other_user(test_db):
    """A second user for isolation tests."""
    import db
    return await db.create_user("other@example.com", "hashed_pw_456")


@pytest.fixture
def session(user):
    from auth import Session
    return Session.from_user(user)


@pytest.fixture
def other_session(other_user):
    from auth import Session
    return Session.from_user(other_user)


@pytest.fixture
def catalog():
    return ModelCatalog(DEFAULT_MODELS)


@pytest.fixture
def fixed_provider():
    return MockFixedProvider(latency_ms=FIXED_LATENCY_MS, tokens=FIXED_TOKENS)


# ---------------------------------------------------------------------------
# API / Integration test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def _temp_db_dir():
    """Create a temporary directory for the test database."""
    with tempfile.TemporaryDirectory(prefix="prompt_studio_test_") as tmpdir:
        yield tmpdir


@pytest.fixture(scope="session")
def _patch_db_path(_temp_db_dir):
    """Point db.DB_PATH at a temporary database for all API tests.

    Must be applied before the app lifespan runs init_db.
    """
    import db as db_module
    original = db_module.DB_PATH
    db_module.DB_PATH = Path(_temp_db_dir) / "test_prompt_studio.db"
    yield db_module.DB_PATH
    db_module.DB_PATH = original


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def app_client(_patch_db_path):
    """httpx.AsyncClient wired to the FastAPI app through ASGITransport.

    The run provider is swapped for MockFixedProvider so runs finish
    instantly with known numbers.
    """
    import httpx
    from app import app, lifespan
    from routers.runs import get_run_provider

    app.dependency_overrides[get_run_provider] = lambda: MockFixedProvider(
        latency_ms=FIXED_LATENCY_MS, tokens=FIXED_TOKENS,
    )
    async with lifespan(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=30.0,
        ) as client:
            yield client
    app.dependency_overrides.clear()


async def register(app_client, email: str | None = None, password: str = "TestPass123!", **extra) -> tuple[dict, dict]:
    """Register a fresh user. Returns (user, auth headers)."""
    email = email or f"user-{uuid.uuid4().hex[:10]}@studiotest.local"
    resp = await app_client.post("/api/auth/register", json={"email": email, "password": password, **extra})
    assert resp.status_code == 200, f"User registration failed: {resp.text}"
    data = resp.json()
    return data["user"], {"Authorization": f"Bearer {data['access_token']}"}


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def test_user(app_client):
    """Register the shared test user. Returns (user, headers)."""
    return await register(app_client, "testuser@studiotest.local", full_name="Test User")


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def auth_headers(test_user):
    """Authorization headers for the shared test user."""
    _, headers = test_user
    return headers


@pytest_asyncio.fixture(loop_scope="session")
async def fresh_user(app_client):
    """A brand new user per test, for assertions that need an empty history."""
    return await register(app_client)
