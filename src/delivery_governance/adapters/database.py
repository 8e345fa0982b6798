"""Primary database engine and session factory.

Holds runs, steps, issues and lawbook versions. The audit trail lives on a
separate engine managed by adapters/audit_wall.py.

Key exports:
- create_engine_for(...)     — async engine with pool settings suited to the URL
- init_database(...)         — create the primary engine and session factory
- create_primary_schema(...) — create primary tables (metadata.create_all)
- close_database()           — dispose the primary engine
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from delivery_governance.core.models import Base
from delivery_governance.observability import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_for(
    url: str,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_timeout: int = 30,
) -> AsyncEngine:
    """Create an async engine with pool settings appropriate to the backend.

    SQLite ignores pool sizing. In-memory SQLite shares a single connection
    (StaticPool) so every session sees the same database.

    Args:
        url: SQLAlchemy async URL (postgresql+asyncpg:// or sqlite+aiosqlite://).
        pool_size: Connection pool size for server databases.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.

    Returns:
        The AsyncEngine.
    """
    kwargs: dict[str, Any] = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def create_primary_schema(engine: AsyncEngine) -> None:
    """Create all primary tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_database(database_url: str, pool_size: int = 10) -> async_sessionmaker[AsyncSession]:
    """Initialize the primary engine, create its schema, and return a session factory.

    Args:
        database_url: SQLAlchemy async URL for the primary database.
        pool_size: Connection pool size.

    Returns:
        The session factory bound to the primary engine.
    """
    global _engine, _session_factory  # noqa: PLW0603

    logger.info("Initializing primary database engine", pool_size=pool_size)
    _engine = create_engine_for(database_url, pool_size=pool_size)
    await create_primary_schema(_engine)
    _session_factory = make_session_factory(_engine)
    logger.info("Primary database engine initialized")
    return _session_factory


async def close_database() -> None:
    """Dispose the primary engine."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing primary database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None
