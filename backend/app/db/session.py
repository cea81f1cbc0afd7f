from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from app.core.config import settings
from app.db.base import Base
import logging

logger = logging.getLogger(__name__)


def _connect_args(database_url: str) -> dict:
    # aiosqlite hands the connection between event loop tasks
    if make_url(database_url).drivername.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


# One engine per process, shared by the API, the CLI and the background tasks
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    connect_args=_connect_args(settings.DATABASE_URL),
)

# Orchestrators read rows back after committing, so nothing expires on commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Routes that write commit explicitly; the session is closed either way.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return
    if not url.database or url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


async def init_db() -> None:
    """
    Create all tables that do not exist yet.

    Used by the CLI and by the API lifespan when AUTO_CREATE_TABLES is set.
    Production deployments run alembic migrations instead.
    """
    import app.models  # noqa: F401  (registers every model on Base.metadata)

    _ensure_sqlite_directory(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
