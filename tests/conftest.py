"""
Pytest configuration and shared fixtures.
"""
import pytest
from httpx import AsyncClient, ASGITransport

from src.api.main import app
from src.config import IngestionSettings
from src.infrastructure.gateways.local_mock import InMemoryRecordSource
from factories import SleepRecorder


@pytest.fixture
async def client():
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def source():
    return InMemoryRecordSource()


@pytest.fixture
def settings():
    """Production values; delays are recorded by the `sleep` fixture, not awaited."""
    return IngestionSettings()
