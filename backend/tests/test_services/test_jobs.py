from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault import jobs
from photovault.models.photo import Photo
from photovault.models.usage import StorageUsageDaily
from photovault.models.user import User
from photovault.services.payments import InMemoryPaymentProvider
from photovault.services.storage import InMemoryArchiveStorage


@pytest.mark.asyncio
async def test_daily_usage_job(db_session: AsyncSession, user: User):
    db_session.add(Photo(
        user_id=user.id, storage_key=f"{user.id}/a", original_name="a",
        mime_type="image/png", size=2048,
    ))
    await db_session.commit()

    assert await jobs.run_daily_usage(db_session) == 0
    row = (await db_session.execute(select(StorageUsageDaily))).scalar_one()
    assert row.storage_bytes == 2048


@pytest.mark.asyncio
async def test_monthly_billing_job_without_cards(db_session: AsyncSession, user: User):
    assert await jobs.run_monthly_billing(db_session, InMemoryPaymentProvider()) == 0


@pytest.mark.asyncio
async def test_cleanup_job_reports_failures(db_session: AsyncSession, user: User):
    user.scheduled_deletion_at = datetime.now(timezone.utc) - timedelta(days=1)
    await db_session.commit()
    storage = InMemoryArchiveStorage()
    storage.fail_next("delete_prefix")

    assert await jobs.run_cleanup(db_session, storage) == 1
    assert await jobs.run_cleanup(db_session, storage) == 0


@pytest.mark.asyncio
async def test_cleanup_job_cancels_subscription(
    db_session: AsyncSession, trialing_user: User, payments: InMemoryPaymentProvider
):
    trialing_user.scheduled_deletion_at = datetime.now(timezone.utc) - timedelta(days=1)
    await db_session.commit()

    assert await jobs.run_cleanup(db_session, InMemoryArchiveStorage(), payments) == 0
    assert [s.status for s in payments.subscriptions.values()] == ["canceled"]
    assert (await db_session.execute(select(User))).first() is None


def test_unknown_job_is_rejected():
    with pytest.raises(SystemExit):
        jobs.main(["reindex"])
