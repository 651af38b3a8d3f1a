"""Database engine setup for workers and scripts."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.config.settings import Settings


def create_task_engine(settings: Settings) -> AsyncEngine:
    """
    Create an engine for use inside worker threads.

    NullPool keeps connections from leaking between the per-thread event
    loops the dramatiq actors run on.
    """
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        poolclass=NullPool,
    )


def create_task_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session maker bound to ``engine``."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
