"""Shared FastAPI dependencies: database sessions and external capabilities.

Capabilities are built once at startup (see ``photovault.main``) and kept on
``app.state``; handlers receive them through the getters below so tests can
swap in the in-memory backends.
"""

from collections.abc import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from photovault.config import settings
from photovault.services.payments import PaymentProvider
from photovault.services.storage import ArchiveStorage

engine = create_async_engine(settings.database_url, pool_pre_ping=True)
session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield a session; commit on success, roll back on any error."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_storage(request: Request) -> ArchiveStorage:
    return request.app.state.storage


def get_payments(request: Request) -> PaymentProvider:
    return request.app.state.payments


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None
