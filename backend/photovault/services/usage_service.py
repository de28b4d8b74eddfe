"""Usage accounting: per-action logs, daily storage snapshots, monthly billing run.

Pricing (yen):
- storage: 10 / GiB / month, accrued daily as 1/30 of the monthly rate
- restore: 5 / GiB Standard, 1 / GiB Bulk
- API: 1 per 1,000 upload requests; downloads are free

All amounts are Decimal end to end. The monthly run bills the previous
calendar month for users with a registered payment method and skips totals
under the minimum billable amount.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.models.billing import Invoice, PaymentMethod
from photovault.models.photo import Photo
from photovault.models.usage import StorageUsageDaily, UsageAction, UsageLog
from photovault.models.user import User
from photovault.services import billing_service
from photovault.services.payments import PaymentProvider

logger = logging.getLogger("photovault.usage")

GIB = 1024 ** 3
_COST_PLACES = Decimal("0.000001")


@dataclass(frozen=True)
class UsageCosts:
    storage: Decimal
    restore: Decimal
    api: Decimal

    @property
    def total(self) -> Decimal:
        return self.storage + self.restore + self.api


@dataclass
class DailyUsageReport:
    usage_date: date
    users_recorded: int = 0


@dataclass
class BillingRunReport:
    period_start: date
    period_end: date
    processed: int = 0
    invoiced: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def _decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _gib(size_bytes: int) -> Decimal:
    return Decimal(size_bytes) / Decimal(GIB)


def daily_storage_cost(size_bytes: int) -> Decimal:
    monthly = _gib(size_bytes) * Decimal(str(settings.storage_price_per_gb_month))
    return (monthly / Decimal(settings.billing_days_in_month)).quantize(_COST_PLACES)


def restore_cost(size_bytes: int, tier: str) -> Decimal:
    if tier == "Bulk":
        per_gib = Decimal(str(settings.bulk_restore_price_per_gb))
    else:
        per_gib = Decimal(str(settings.standard_restore_price_per_gb))
    return (_gib(size_bytes) * per_gib).quantize(_COST_PLACES)


def upload_cost(file_count: int) -> Decimal:
    per_request = Decimal(str(settings.api_price_per_thousand_requests)) / Decimal(1000)
    return (Decimal(file_count) * per_request).quantize(_COST_PLACES)


# ---------------------------------------------------------------------------
# Per-action logs
# ---------------------------------------------------------------------------

async def _log(db: AsyncSession, **values) -> UsageLog:
    entry = UsageLog(**values)
    db.add(entry)
    await db.flush()
    return entry


async def log_upload(
    db: AsyncSession, *, user_id: uuid.UUID, size: int, file_count: int = 1
) -> UsageLog:
    return await _log(
        db,
        user_id=user_id,
        action_type=UsageAction.upload,
        bytes_transferred=size,
        file_count=file_count,
        cost=upload_cost(file_count),
    )


async def log_restore(
    db: AsyncSession, *, user_id: uuid.UUID, size: int, tier: str
) -> UsageLog:
    return await _log(
        db,
        user_id=user_id,
        action_type=UsageAction.restore,
        bytes_transferred=size,
        file_count=1,
        cost=restore_cost(size, tier),
        detail={"tier": tier},
    )


async def log_download(db: AsyncSession, *, user_id: uuid.UUID, size: int) -> UsageLog:
    return await _log(
        db,
        user_id=user_id,
        action_type=UsageAction.download,
        bytes_transferred=size,
        file_count=1,
        cost=Decimal("0"),
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

async def current_storage(db: AsyncSession, user_id: uuid.UUID) -> tuple[int, int]:
    """(total bytes, file count) currently stored for the user."""
    result = await db.execute(
        select(func.coalesce(func.sum(Photo.size), 0), func.count(Photo.id))
        .where(Photo.user_id == user_id)
    )
    total, count = result.one()
    return int(total), int(count)


async def record_daily_usage(
    db: AsyncSession, *, usage_date: date | None = None
) -> DailyUsageReport:
    """Snapshot every user's stored bytes for ``usage_date`` (default today, UTC).

    Re-running for the same day overwrites that day's rows.
    """
    usage_date = usage_date or datetime.now(timezone.utc).date()
    report = DailyUsageReport(usage_date=usage_date)

    totals = await db.execute(
        select(Photo.user_id, func.sum(Photo.size), func.count(Photo.id))
        .group_by(Photo.user_id)
    )
    for user_id, total_bytes, file_count in totals.all():
        total_bytes = int(total_bytes or 0)
        cost = daily_storage_cost(total_bytes)

        result = await db.execute(
            select(StorageUsageDaily).where(
                StorageUsageDaily.user_id == user_id,
                StorageUsageDaily.usage_date == usage_date,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            db.add(StorageUsageDaily(
                user_id=user_id,
                usage_date=usage_date,
                storage_bytes=total_bytes,
                file_count=int(file_count),
                calculated_cost=cost,
            ))
        else:
            row.storage_bytes = total_bytes
            row.file_count = int(file_count)
            row.calculated_cost = cost
        report.users_recorded += 1

    await db.flush()
    logger.info("daily usage recorded date=%s users=%d", usage_date, report.users_recorded)
    return report


def _day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Half-open UTC datetime range covering the whole days ``start``..``end``."""
    lower = datetime.combine(start, time.min, tzinfo=timezone.utc)
    upper = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return lower, upper


async def period_costs(
    db: AsyncSession, user_id: uuid.UUID, start: date, end: date
) -> UsageCosts:
    storage = await db.execute(
        select(func.sum(StorageUsageDaily.calculated_cost)).where(
            StorageUsageDaily.user_id == user_id,
            StorageUsageDaily.usage_date >= start,
            StorageUsageDaily.usage_date <= end,
        )
    )
    lower, upper = _day_bounds(start, end)
    logs = await db.execute(
        select(UsageLog.action_type, func.sum(UsageLog.cost))
        .where(
            UsageLog.user_id == user_id,
            UsageLog.created_at >= lower,
            UsageLog.created_at < upper,
        )
        .group_by(UsageLog.action_type)
    )
    by_action = {action: _decimal(total) for action, total in logs.all()}
    restore = by_action.get(UsageAction.restore, Decimal("0"))
    api = sum(
        (v for k, v in by_action.items() if k != UsageAction.restore), Decimal("0")
    )
    return UsageCosts(storage=_decimal(storage.scalar()), restore=restore, api=api)


def previous_month(today: date) -> tuple[date, date]:
    first_this_month = today.replace(day=1)
    period_end = first_this_month - timedelta(days=1)
    return period_end.replace(day=1), period_end


def _month_bounds(today: date) -> tuple[date, date]:
    start = today.replace(day=1)
    next_month = (start + timedelta(days=32)).replace(day=1)
    return start, next_month - timedelta(days=1)


async def get_usage_summary(
    db: AsyncSession, user: User, *, today: date | None = None
) -> dict:
    """Current footprint plus the month-to-date cost breakdown."""
    today = today or datetime.now(timezone.utc).date()
    total_bytes, file_count = await current_storage(db, user.id)
    month_start, _ = _month_bounds(today)
    costs = await period_costs(db, user.id, month_start, today)
    return {
        "storage_bytes": total_bytes,
        "file_count": file_count,
        "storage_limit_bytes": user.storage_limit_bytes,
        "has_payment_method": user.has_payment_method,
        "period_start": month_start,
        "period_end": today,
        "storage_cost": costs.storage,
        "restore_cost": costs.restore,
        "api_cost": costs.api,
        "total_cost": costs.total,
    }


async def estimate_current_month(
    db: AsyncSession, user_id: uuid.UUID, *, today: date | None = None
) -> dict:
    """Month-to-date costs plus today's storage rate carried to month end."""
    today = today or datetime.now(timezone.utc).date()
    month_start, month_end = _month_bounds(today)
    costs = await period_costs(db, user_id, month_start, today)
    total_bytes, _ = await current_storage(db, user_id)
    remaining_days = (month_end - today).days
    projected_storage = costs.storage + daily_storage_cost(total_bytes) * remaining_days
    return {
        "period_start": month_start,
        "period_end": month_end,
        "storage_cost": projected_storage,
        "restore_cost": costs.restore,
        "api_cost": costs.api,
        "total_cost": projected_storage + costs.restore + costs.api,
        "storage_bytes": total_bytes,
    }


# ---------------------------------------------------------------------------
# Monthly billing run
# ---------------------------------------------------------------------------

async def _bill_user(
    db: AsyncSession,
    payments: PaymentProvider,
    user_id: uuid.UUID,
    period_start: date,
    period_end: date,
    report: BillingRunReport,
) -> None:
    existing = await db.execute(
        select(Invoice.id).where(
            Invoice.user_id == user_id,
            Invoice.billing_period_start == period_start,
        )
    )
    if existing.scalar_one_or_none() is not None:
        logger.info("billing skip user=%s period=%s already invoiced", user_id, period_start)
        report.skipped += 1
        return

    costs = await period_costs(db, user_id, period_start, period_end)
    invoice = await billing_service.create_invoice(
        db,
        payments,
        user_id=user_id,
        period_start=period_start,
        period_end=period_end,
        storage_cost=costs.storage,
        restore_cost=costs.restore,
        api_cost=costs.api,
    )
    if invoice is None:
        report.skipped += 1
    else:
        report.invoiced += 1


async def execute_monthly_billing(
    db: AsyncSession, payments: PaymentProvider, *, today: date | None = None
) -> BillingRunReport:
    """Invoice the previous calendar month for every user with a card on file.

    One user's failure is recorded in the report and does not stop the run.
    """
    today = today or datetime.now(timezone.utc).date()
    period_start, period_end = previous_month(today)
    report = BillingRunReport(period_start=period_start, period_end=period_end)

    result = await db.execute(
        select(PaymentMethod).where(PaymentMethod.provider_payment_method_id.is_not(None))
    )
    methods = list(result.scalars().all())
    logger.info("monthly billing period=%s..%s users=%d", period_start, period_end, len(methods))

    for method in methods:
        user_id = method.user_id
        report.processed += 1
        try:
            async with db.begin_nested():
                await _bill_user(db, payments, user_id, period_start, period_end, report)
        except Exception as e:
            logger.exception("billing failed user=%s", user_id)
            report.errors.append(f"user {user_id}: {e}")

    logger.info(
        "monthly billing done processed=%d invoiced=%d skipped=%d errors=%d",
        report.processed, report.invoiced, report.skipped, len(report.errors),
    )
    return report
