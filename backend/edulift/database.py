"""Async engine, session factory and declarative base.

The invitation engine relies on the store for all coordination between
concurrent requests, so the request-scoped session below is the single
transactional boundary of every HTTP call.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from edulift.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_kwargs(settings.DATABASE_URL),
)

async_session = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for the membership and invitation tables."""
    pass


async def get_db() -> AsyncGenerator[AsyncSession]:
    """FastAPI dependency yielding a session.

    Services commit their own transitions; anything left pending when the
    request finishes is committed here, and any fault rolls back.
    """
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
