"""
Global pytest configuration and fixtures.
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LEARNING_SCHEDULER_ENABLED", "false")

from datetime import date
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from finpulse.config import Settings
from finpulse.infrastructure import set_document_store
from finpulse.infrastructure.memory import InMemoryDocumentStore
from finpulse.services.locks import UserLockRegistry

TODAY = date(2024, 6, 15)
USER_ID = "user_123"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Test settings configuration."""
    return Settings(
        app_name="finpulse-api-test",
        version="1.0.0-test",
        debug=True,
        environment="testing",
        storage_backend="memory",
        api_prefix="/api/v1",
        log_level="DEBUG",
        learning_scheduler_enabled=False,
    )


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def user_id() -> str:
    return USER_ID


@pytest.fixture
def memory_store() -> Generator[InMemoryDocumentStore, None, None]:
    """Fresh in-memory document store installed as the global store."""
    store = InMemoryDocumentStore(batch_size=25)
    set_document_store(store)
    yield store
    set_document_store(None)


@pytest.fixture
def locks() -> UserLockRegistry:
    return UserLockRegistry()


@pytest.fixture
def app(memory_store):
    """FastAPI app backed by the in-memory store."""
    from finpulse.main import create_app
    return create_app()


@pytest.fixture
def client(app) -> TestClient:
    """Synchronous test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app):
    """Async test client for tests that also seed the store."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers(user_id) -> dict:
    return {"X-User-ID": user_id}
