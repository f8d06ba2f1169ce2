from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import text
from sqlalchemy.orm import declarative_base
import contextlib
import logging
from typing import AsyncIterator, Optional
from mailsync.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def create_optimized_async_engine() -> AsyncEngine:
    """Create the asyncpg engine with pool settings for a webhook-heavy workload."""
    connect_args = {
        "server_settings": {
            "application_name": f"{settings.app_name}_api",
            "jit": "off",
        },
        "command_timeout": 60,
        "statement_cache_size": 0,  # avoids prepared statement clashes behind pgbouncer
    }

    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args=connect_args,
        pool_size=10,
        max_overflow=15,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine, _session_factory
    if _engine is None:
        _engine = create_optimized_async_engine()
        _session_factory = async_sessionmaker(_engine, autoflush=False, expire_on_commit=False)
    return _engine


def session_factory() -> AsyncSession:
    """Factory function to create async sessions."""
    get_engine()
    return _session_factory()


@contextlib.asynccontextmanager
async def get_session_context() -> AsyncIterator[AsyncSession]:
    """
    Context manager for async database sessions.

    Callers commit explicitly; anything raised inside rolls back.
    """
    session = session_factory()
    try:
        yield session
    except Exception as e:
        await session.rollback()
        logger.error(f"Session context error: {e}")
        raise
    finally:
        await session.close()


async def check_database_health() -> bool:
    """Check database connectivity and health."""
    try:
        async with get_session_context() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


async def create_tables():
    """Create all tables."""
    import mailsync.db.models  # noqa: F401  registers the models on Base
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    """Close pooled connections on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
