"""Billing orchestration: provider invoices, invoice status mirroring, stale-account cleanup."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.core.errors import BillingFailure, ConflictError
from photovault.models.billing import Invoice, InvoiceStatus, Subscription
from photovault.models.user import User
from photovault.services import audit_service, delete_service
from photovault.services.payments import InvoiceLine, PaymentProvider, PaymentProviderError
from photovault.services.storage import ArchiveStorage

logger = logging.getLogger("photovault.billing")


@dataclass
class CleanupReport:
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _whole_units(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def allocate_whole_units(costs: list[Decimal]) -> list[int]:
    """Split the rounded total across ``costs`` by largest remainder.

    The result sums to the half-up rounded total of ``costs``; ties go to
    the earlier component.
    """
    floors = [int(cost) for cost in costs]
    remainder = _whole_units(sum(costs, Decimal("0"))) - sum(floors)
    by_fraction = sorted(range(len(costs)), key=lambda i: costs[i] - floors[i], reverse=True)
    for i in by_fraction[:remainder]:
        floors[i] += 1
    return floors


def _invoice_status(value: str | None) -> InvoiceStatus:
    try:
        return InvoiceStatus(value)
    except ValueError:
        return InvoiceStatus.open


async def create_invoice(
    db: AsyncSession,
    payments: PaymentProvider,
    *,
    user_id: uuid.UUID,
    period_start: date,
    period_end: date,
    storage_cost: Decimal,
    restore_cost: Decimal,
    api_cost: Decimal,
) -> Invoice | None:
    """Bill one period. Returns None when the total is under the minimum.

    The total is rounded once to whole units and split across the non-zero
    components, one provider line each; the invoice is finalized so the
    provider charges the card on file.
    """
    total = storage_cost + restore_cost + api_cost
    if total < Decimal(str(settings.minimum_billable_amount)):
        logger.info("invoice skip user=%s period=%s total=%s below minimum",
                    user_id, period_start, total)
        return None

    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    subscription = result.scalar_one_or_none()
    if subscription is None or not subscription.provider_customer_id:
        raise ConflictError("No billing customer for user.", code="SUBSCRIPTION_NOT_INITIALIZED")

    period = f"{period_start.isoformat()} - {period_end.isoformat()}"
    components = [
        (storage_cost, f"Storage ({period})"),
        (restore_cost, f"Restores ({period})"),
        (api_cost, f"API requests ({period})"),
    ]
    components = [(cost, description) for cost, description in components if cost > 0]
    amounts = allocate_whole_units([cost for cost, _ in components])
    lines = [
        InvoiceLine(amount=amount, description=description)
        for amount, (_, description) in zip(amounts, components)
    ]
    billed = sum(amounts)

    try:
        provider_invoice = await payments.create_invoice(subscription.provider_customer_id, lines)
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to create invoice: {e}") from e

    invoice = Invoice(
        user_id=user_id,
        provider_invoice_id=provider_invoice.id,
        billing_period_start=period_start,
        billing_period_end=period_end,
        storage_cost=storage_cost,
        restore_cost=restore_cost,
        api_cost=api_cost,
        total_amount=total,
        billed_amount=billed,
        status=_invoice_status(provider_invoice.status),
    )
    db.add(invoice)
    await db.flush()

    await audit_service.log_event(
        db,
        user_id=user_id,
        event_type="billing.invoice_created",
        entity_type="Invoice",
        entity_id=invoice.id,
        action="create",
        detail={"period_start": period_start.isoformat(), "total": str(total), "billed": billed},
    )
    logger.info("invoice created user=%s provider_id=%s total=%s billed=%d",
                user_id, provider_invoice.id, total, billed)
    return invoice


async def _find_invoice(db: AsyncSession, provider_invoice_id: str | None) -> Invoice | None:
    if not provider_invoice_id:
        return None
    result = await db.execute(
        select(Invoice).where(Invoice.provider_invoice_id == provider_invoice_id)
    )
    return result.scalar_one_or_none()


async def mark_invoice_paid(db: AsyncSession, provider_invoice_id: str | None) -> Invoice | None:
    invoice = await _find_invoice(db, provider_invoice_id)
    if invoice is None:
        return None
    invoice.status = InvoiceStatus.paid
    invoice.paid_at = datetime.now(timezone.utc)
    await db.flush()
    return invoice


async def mark_invoice_failed(db: AsyncSession, provider_invoice_id: str | None) -> Invoice | None:
    invoice = await _find_invoice(db, provider_invoice_id)
    if invoice is None:
        return None
    invoice.status = InvoiceStatus.failed
    await db.flush()
    return invoice


async def list_invoices(db: AsyncSession, user_id: uuid.UUID) -> list[Invoice]:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.user_id == user_id)
        .order_by(Invoice.billing_period_start.desc())
    )
    return list(result.scalars().all())


async def users_due_for_deletion(db: AsyncSession, now: datetime) -> list[uuid.UUID]:
    result = await db.execute(
        select(User.id).where(
            User.scheduled_deletion_at.is_not(None),
            User.scheduled_deletion_at <= now,
        )
    )
    return list(result.scalars().all())


async def cleanup_scheduled_deletions(
    db: AsyncSession,
    storage: ArchiveStorage,
    *,
    payments: PaymentProvider | None = None,
    now: datetime | None = None,
) -> CleanupReport:
    """Delete every account whose payment grace period has run out.

    With ``payments`` the provider subscription is cancelled first. Each
    account is removed inside its own savepoint; a failure is recorded and
    the next account is processed.
    """
    now = now or datetime.now(timezone.utc)
    report = CleanupReport()
    user_ids = await users_due_for_deletion(db, now)
    logger.info("cleanup candidates=%d", len(user_ids))

    for user_id in user_ids:
        try:
            async with db.begin_nested():
                await delete_service.delete_account(
                    db, storage, user_id, reason="payment_grace_expired", payments=payments
                )
            report.deleted += 1
        except Exception as e:
            logger.exception("cleanup failed user=%s", user_id)
            report.errors.append(f"Failed to delete data for user {user_id}: {e}")

    logger.info("cleanup done deleted=%d errors=%d", report.deleted, len(report.errors))
    return report
