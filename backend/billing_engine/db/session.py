"""
Database engine and session factories.

WHY: Request handlers, the webhook endpoint, the notifier and the
reconciliation sweeps all open sessions. They must agree on session
options: with ``autoflush`` off, a compare-and-swap UPDATE is the only
write a conditional check can observe, and with ``expire_on_commit`` off,
rows returned by services stay readable after the route commits.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from billing_engine.core.config import settings


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory with the options every billing session uses."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# pool_pre_ping: the scheduler holds the process open for days between sweeps
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
)

AsyncSessionLocal = make_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session.

    Routes commit explicitly before dispatching notifications; anything
    left uncommitted when the request fails is rolled back here.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
