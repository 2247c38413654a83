"""Shared test fixtures and configuration."""
import os
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing the application
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BREADCRUMBS_ENABLED", "false")

from bridge.db.database import create_session_factory
from bridge.db.models import Base
from bridge.services.persistence.conversations import ConversationPersistenceService
from bridge.services.runtime import build_runtime
from tests.fakes import FakeRealtimeService, supervisor_response


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def persistence(test_db_engine):
    """Persistence service on the test database."""
    return ConversationPersistenceService(create_session_factory(test_db_engine))


@pytest.fixture
def realtime_service():
    """Scripted upstream realtime service."""
    return FakeRealtimeService()


@pytest.fixture
def mock_openai():
    """Mock OpenAI client for the supervisor."""
    mock_client = Mock()
    mock_client.responses.create = AsyncMock(return_value=supervisor_response("Supervisor answer"))
    return mock_client


@pytest.fixture
async def runtime(test_db_engine, mock_openai, realtime_service):
    """Fully wired runtime on the test database and fake upstream."""
    runtime = build_runtime(engine=test_db_engine, openai_client=mock_openai, connection_factory=realtime_service)
    yield runtime
    await runtime.shutdown()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test"
    )
