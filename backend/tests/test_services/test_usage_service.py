"""Usage accounting: cost formulas, daily snapshots, monthly billing run."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.auth import register_user
from photovault.models.billing import Invoice
from photovault.models.photo import Photo
from photovault.models.usage import StorageUsageDaily
from photovault.models.user import User
from photovault.services import subscription_service, usage_service
from photovault.services.payments import InMemoryPaymentProvider
from photovault.services.usage_service import GIB


def _photo(user: User, name: str, size: int) -> Photo:
    return Photo(
        user_id=user.id,
        storage_key=f"{user.id}/{name}",
        original_name=name,
        mime_type="image/jpeg",
        size=size,
    )


async def _daily_rows(db: AsyncSession, user: User, days: list[date], cost: str) -> None:
    for day in days:
        db.add(StorageUsageDaily(
            user_id=user.id,
            usage_date=day,
            storage_bytes=GIB,
            file_count=1,
            calculated_cost=Decimal(cost),
        ))
    await db.commit()


async def _card_user(db: AsyncSession, payments, email: str) -> User:
    user = await register_user(db, email=email, password="SecurePass123!")
    await subscription_service.initialize_subscription(db, payments, user)
    await subscription_service.confirm_card_and_start_trial(
        db, payments, user=user, payment_method_id=f"pm_{email}"
    )
    await db.commit()
    return user


def test_cost_formulas():
    assert usage_service.daily_storage_cost(GIB) == Decimal("0.333333")
    assert usage_service.daily_storage_cost(0) == Decimal("0")
    assert usage_service.restore_cost(GIB, "Standard") == Decimal("5")
    assert usage_service.restore_cost(2 * GIB, "Bulk") == Decimal("2")
    assert usage_service.upload_cost(1000) == Decimal("1")


def test_previous_month():
    assert usage_service.previous_month(date(2026, 3, 5)) == (date(2026, 2, 1), date(2026, 2, 28))
    assert usage_service.previous_month(date(2026, 1, 1)) == (date(2025, 12, 1), date(2025, 12, 31))


@pytest.mark.asyncio
async def test_record_daily_usage_is_idempotent(db_session: AsyncSession, user: User):
    db_session.add(_photo(user, "a.jpg", GIB))
    await db_session.commit()
    day = date(2026, 10, 1)

    await usage_service.record_daily_usage(db_session, usage_date=day)
    db_session.add(_photo(user, "b.jpg", GIB))
    await db_session.flush()
    report = await usage_service.record_daily_usage(db_session, usage_date=day)
    await db_session.commit()

    assert report.users_recorded == 1
    rows = await db_session.execute(
        select(StorageUsageDaily).where(StorageUsageDaily.user_id == user.id)
    )
    (row,) = rows.scalars().all()
    assert row.storage_bytes == 2 * GIB
    assert row.file_count == 2
    assert row.calculated_cost == Decimal("0.666667")


@pytest.mark.asyncio
async def test_usage_summary(db_session: AsyncSession, user: User):
    db_session.add(_photo(user, "a.jpg", 1234))
    await db_session.commit()

    summary = await usage_service.get_usage_summary(db_session, user)
    assert summary["storage_bytes"] == 1234
    assert summary["file_count"] == 1
    assert summary["has_payment_method"] is False
    assert summary["total_cost"] == (
        summary["storage_cost"] + summary["restore_cost"] + summary["api_cost"]
    )


@pytest.mark.asyncio
async def test_estimate_projects_storage_to_month_end(db_session: AsyncSession, user: User):
    db_session.add(_photo(user, "a.jpg", 3 * GIB))
    await db_session.commit()

    estimate = await usage_service.estimate_current_month(
        db_session, user.id, today=date(2026, 9, 20)
    )
    assert estimate["period_start"] == date(2026, 9, 1)
    assert estimate["period_end"] == date(2026, 9, 30)
    # 10 remaining days at 1 yen/day for 3 GiB
    assert estimate["storage_cost"] == Decimal("10")


@pytest.mark.asyncio
async def test_monthly_billing_invoices_previous_month(db_session: AsyncSession):
    payments = InMemoryPaymentProvider()
    user = await _card_user(db_session, payments, "bill@example.com")
    await _daily_rows(db_session, user, [date(2026, 2, d) for d in range(1, 29)], "0.5")

    report = await usage_service.execute_monthly_billing(
        db_session, payments, today=date(2026, 3, 1)
    )
    await db_session.commit()

    assert (report.processed, report.invoiced, report.skipped) == (1, 1, 0)
    assert report.errors == []
    (invoice,) = await _invoices(db_session, user)
    assert invoice.billing_period_start == date(2026, 2, 1)
    assert invoice.billing_period_end == date(2026, 2, 28)
    assert invoice.storage_cost == Decimal("14")
    provider_invoice = payments.invoices[invoice.provider_invoice_id]
    assert provider_invoice["total"] == 14
    assert [line.amount for line in provider_invoice["lines"]] == [14]


@pytest.mark.asyncio
async def test_monthly_billing_rerun_skips(db_session: AsyncSession):
    payments = InMemoryPaymentProvider()
    user = await _card_user(db_session, payments, "rerun@example.com")
    await _daily_rows(db_session, user, [date(2026, 2, 1)], "20")

    await usage_service.execute_monthly_billing(db_session, payments, today=date(2026, 3, 2))
    report = await usage_service.execute_monthly_billing(
        db_session, payments, today=date(2026, 3, 2)
    )
    await db_session.commit()

    assert report.skipped == 1
    assert report.invoiced == 0
    assert len(payments.invoices) == 1


@pytest.mark.asyncio
async def test_fifty_sen_month_is_not_invoiced(db_session: AsyncSession):
    payments = InMemoryPaymentProvider()
    user = await _card_user(db_session, payments, "tiny@example.com")
    await _daily_rows(db_session, user, [date(2026, 2, 1)], "0.5")

    report = await usage_service.execute_monthly_billing(
        db_session, payments, today=date(2026, 3, 1)
    )
    assert report.skipped == 1
    assert payments.invoices == {}
    assert await _invoices(db_session, user) == []


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_run(db_session: AsyncSession):
    payments = InMemoryPaymentProvider()
    first = await _card_user(db_session, payments, "one@example.com")
    second = await _card_user(db_session, payments, "two@example.com")
    for u in (first, second):
        await _daily_rows(db_session, u, [date(2026, 2, 10)], "30")
    payments.fail_next("create_invoice")

    report = await usage_service.execute_monthly_billing(
        db_session, payments, today=date(2026, 3, 1)
    )
    await db_session.commit()

    assert report.processed == 2
    assert report.invoiced == 1
    assert len(report.errors) == 1
    count = await db_session.execute(select(func.count(Invoice.id)))
    assert count.scalar() == 1


@pytest.mark.asyncio
async def test_users_without_card_are_not_billed(db_session: AsyncSession, user: User):
    payments = InMemoryPaymentProvider()
    await _daily_rows(db_session, user, [date(2026, 2, 1)], "100")

    report = await usage_service.execute_monthly_billing(
        db_session, payments, today=date(2026, 3, 1)
    )
    assert report.processed == 0
    assert payments.invoices == {}


async def _invoices(db: AsyncSession, user: User) -> list[Invoice]:
    result = await db.execute(select(Invoice).where(Invoice.user_id == user.id))
    return list(result.scalars().all())
