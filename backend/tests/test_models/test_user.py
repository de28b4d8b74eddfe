import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.models.user import FREE_STORAGE_LIMIT_BYTES, User, UserStatus


@pytest.mark.asyncio
async def test_create_and_read_user(db_session: AsyncSession):
    """Round-trip: create user -> read user -> fields match."""
    user = User(email="test@example.com", password_hash="fakehash123")
    db_session.add(user)
    await db_session.commit()

    result = await db_session.execute(select(User).where(User.email == "test@example.com"))
    fetched = result.scalar_one()

    assert fetched.id is not None
    assert fetched.password_hash == "fakehash123"
    assert fetched.status == UserStatus.active
    assert fetched.created_at is not None
    assert fetched.scheduled_deletion_at is None


@pytest.mark.asyncio
async def test_user_billing_defaults(db_session: AsyncSession):
    """New accounts start on the free ceiling with no card on file."""
    user = User(email="free@example.com", password_hash="hash")
    db_session.add(user)
    await db_session.commit()

    assert user.has_payment_method is False
    assert user.storage_limit_bytes == FREE_STORAGE_LIMIT_BYTES
    assert user.first_payment_failed_at is None


@pytest.mark.asyncio
async def test_user_unique_email(db_session: AsyncSession):
    db_session.add(User(email="dup@example.com", password_hash="a"))
    await db_session.commit()

    db_session.add(User(email="dup@example.com", password_hash="b"))
    with pytest.raises(IntegrityError):
        await db_session.commit()
