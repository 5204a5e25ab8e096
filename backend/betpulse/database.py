"""Async SQLAlchemy engine, session factory and declarative base."""

from sqlalchemy.ext.asyncio import (
    AsyncAttrs,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from betpulse.config import settings


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models with async attribute support."""
    pass


def build_engine(database_url: str) -> AsyncEngine:
    """Create an engine for ``database_url``.

    SQLite connections are not pooled so that every unit of work gets its own
    connection and its own lock on the database file.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
    return create_async_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


async def init_models(bind: AsyncEngine = engine) -> None:
    """Create any missing tables."""
    # Import models so they register on Base.metadata
    import betpulse.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory services run their units of work on."""
    return SessionLocal

