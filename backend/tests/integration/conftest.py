from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.main import app
# Importing Base from app.models registers every table on the metadata
from app.models import Base
from app.db.session import get_db
from app.services.pulsemcp_client import PulseMCPClient, get_pulsemcp_client

from sample_data import MOCK_DIRECTORY_SIZE, FakeGitHubService, sample_github_details

# Use in-memory SQLite for fast integration tests
DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean database session for each test by recreating tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    # Drop all tables after each test to ensure isolation
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def fake_github() -> FakeGitHubService:
    return FakeGitHubService(sample_github_details())


@pytest.fixture
def mock_pulsemcp() -> PulseMCPClient:
    """PulseMCP client serving a small generated directory."""
    return PulseMCPClient(mock_mode=True, mock_server_count=MOCK_DIRECTORY_SIZE)


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, mock_pulsemcp: PulseMCPClient) -> AsyncGenerator[AsyncClient, None]:
    """Provide an AsyncClient for the FastAPI app with DB and PulseMCP overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pulsemcp_client] = lambda: mock_pulsemcp

    # Use ASGITransport for testing FastAPI apps
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.clear()
