"""
Lead Reminders — Database client.
Async SQLAlchemy engine + session factory for the SQL reminder stores.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.core.config import settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_session_factory(database_url: str, echo: bool = False) -> async_sessionmaker[AsyncSession]:
    """Build an engine + session factory for a database URL."""
    kwargs: dict = {"pool_pre_ping": True, "echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=5)
    engine = create_async_engine(database_url, **kwargs)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory built from settings.DATABASE_URL."""
    global _engine, _session_factory
    if _session_factory is None:
        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not configured")
        _session_factory = create_session_factory(settings.DATABASE_URL, echo=settings.DEBUG)
        _engine = _session_factory.kw["bind"]
    return _session_factory


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
