"""Shared test fixtures: in-memory SQLite DB, async session, test client, capabilities."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("PAYMENT_BACKEND", "memory")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from photovault.core.auth import create_access_token, register_user
from photovault.dependencies import get_db
from photovault.main import app
from photovault.models.base import Base
from photovault.models.user import User
from photovault.services import subscription_service
from photovault.services.payments import InMemoryPaymentProvider
from photovault.services.storage import InMemoryArchiveStorage

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)


# pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@event.listens_for(test_engine.sync_engine, "begin")
def _do_begin(conn):
    conn.exec_driver_sql("BEGIN")


test_session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """Yield a test DB session."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def storage() -> InMemoryArchiveStorage:
    backend = InMemoryArchiveStorage()
    app.state.storage = backend
    return backend


@pytest.fixture
def payments() -> InMemoryPaymentProvider:
    provider = InMemoryPaymentProvider(webhook_secret="whsec_test")
    app.state.payments = provider
    return provider


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    storage: InMemoryArchiveStorage,
    payments: InMemoryPaymentProvider,
) -> AsyncClient:
    """Yield an httpx AsyncClient wired to the test DB and in-memory capabilities."""

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def user(db_session: AsyncSession) -> User:
    """A registered user with no subscription."""
    user = await register_user(
        db_session, email="owner@example.com", password="SecurePass123!", name="Owner"
    )
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def trialing_user(
    db_session: AsyncSession, user: User, payments: InMemoryPaymentProvider
) -> User:
    """``user`` after card setup: trialing, card on file, paid storage ceiling."""
    await subscription_service.initialize_subscription(db_session, payments, user)
    await subscription_service.confirm_card_and_start_trial(
        db_session, payments, user=user, payment_method_id="pm_card_visa"
    )
    await db_session.commit()
    return user


@pytest.fixture
def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}
