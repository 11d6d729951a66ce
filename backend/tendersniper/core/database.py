"""Async database layer for Tender Sniper.

Uses SQLAlchemy 2.x async engine: asyncpg against PostgreSQL in production,
aiosqlite for local runs and the test suite. Uniqueness guarantees (one
opportunity per client/tender pair, one tender per external id, one open
fulfillment ticket per opportunity) live in the schema, not in application
locks, so overlapping batch runs stay safe.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from tendersniper.core.config import get_settings

logger = logging.getLogger(__name__)

_engine = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def _normalise_url(url: str) -> str:
    # Hosted Postgres connection strings often start with postgres://
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def make_engine(url: str, echo: bool = False):
    url = _normalise_url(url)
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across sessions
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


async def create_schema(engine) -> None:
    """Create all tables that do not exist yet."""
    # Import so ORM models are registered with Base.metadata
    import tendersniper.models.db_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: Optional[str] = None) -> bool:
    """
    Create all tables (if they don't exist) and initialise the session factory.

    Returns True if the database is available, False if DATABASE_URL is not set
    or the connection failed. Without a database the HTTP surface answers 503
    and the scheduler does not start.
    """
    settings = get_settings()
    url = url or settings.database_url
    if not url:
        logger.info("DATABASE_URL not set, persistence disabled")
        return False

    global _engine, _session_factory
    try:
        _engine = make_engine(url, echo=settings.debug)
        await create_schema(_engine)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("Database initialised successfully")
        return True
    except Exception as e:
        logger.error(f"Database init failed: {e}")
        _engine = None
        _session_factory = None
        return False


def get_session_factory() -> Optional[async_sessionmaker]:
    return _session_factory


async def close_db() -> None:
    """Dispose the engine on shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
