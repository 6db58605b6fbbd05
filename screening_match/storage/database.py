"""Database configuration and session management."""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker

from screening_match.config.settings import get_settings
from screening_match.config.logging_config import get_logger

logger = get_logger(__name__)

# Engine and session factory (initialized lazily)
_engine: Optional[AsyncEngine] = None
_async_session_factory = None


def normalize_database_url(db_url: str) -> str:
    """Point plain Postgres URLs at the asyncpg driver."""
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with driver-appropriate options."""
    db_url = normalize_database_url(db_url)
    url = make_url(db_url)
    backend = url.get_backend_name()

    if backend == "sqlite":
        database = url.database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(db_url, echo=echo, future=True)

    connect_args = {}
    if url.drivername == "postgresql+asyncpg":
        # Disable asyncpg prepared statement cache to avoid
        # InvalidCachedStatementError after schema changes.
        connect_args["statement_cache_size"] = 0
    return create_async_engine(
        db_url,
        echo=echo,
        future=True,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = settings.external_database_url or settings.database_url
        _engine = build_engine(db_url, echo=settings.app_env == "debug")
        logger.info("Database engine created", db_type=_engine.url.get_backend_name())
    return _engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


def get_session_factory() -> async_sessionmaker:
    """Get or create the session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine())
    return _async_session_factory


# Alias for convenience
AsyncSessionLocal = get_session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Initialize the database, creating all tables."""
    from screening_match.storage.models import Base as ModelsBase

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(ModelsBase.metadata.create_all)
    logger.info("Database initialized")


async def drop_db(engine: Optional[AsyncEngine] = None) -> None:
    """Drop all database tables (use with caution)."""
    from screening_match.storage.models import Base as ModelsBase

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(ModelsBase.metadata.drop_all)
    logger.warning("Database tables dropped")


async def dispose_engine() -> None:
    """Close pooled connections and forget the cached engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.

    Usage:
        async with get_db() as db:
            result = await db.execute(query)
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error("Database session error", error=str(e))
            raise
        finally:
            await session.close()
