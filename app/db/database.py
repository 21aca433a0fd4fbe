"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from app.core.config import settings


def _engine_options(url: str, *, pooled: bool) -> dict[str, Any]:
    """Engine kwargs; SQLite (local runs, tests) takes no pool sizing."""
    options: dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if pooled and not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10)
    return options


engine = create_async_engine(
    settings.DATABASE_URL,
    **_engine_options(settings.DATABASE_URL, pooled=False),
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def init_models(bind: AsyncEngine | None = None) -> None:
    """Create missing tables for every registered model"""
    # Registers outbound_messages and dead_letters on Base.metadata
    import app.db.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Create a fresh database session for Celery tasks and the CLI.

    Each call builds an engine bound to the current event loop, avoiding the
    "attached to a different loop" error that occurs when a module-level engine
    is reused across the event loops of successive Celery tasks.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        **_engine_options(settings.DATABASE_URL, pooled=True),
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()
