"""Coupon validation, provider mapping and usage counting."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.errors import BillingFailure
from photovault.models.base import as_utc
from photovault.models.billing import Coupon
from photovault.services.payments import PaymentProvider, PaymentProviderError

logger = logging.getLogger("photovault.coupons")


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_usable(coupon: Coupon, now: datetime) -> bool:
    if not coupon.is_active:
        return False
    valid_until = as_utc(coupon.valid_until)
    if valid_until is not None and valid_until < now:
        return False
    if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
        return False
    return True


async def validate_coupon(
    db: AsyncSession, code: str | None, *, now: datetime | None = None
) -> Coupon | None:
    """Return the coupon if it can be applied right now, else None."""
    if not code or not code.strip():
        return None
    now = now or datetime.now(timezone.utc)
    result = await db.execute(select(Coupon).where(Coupon.code == normalize_code(code)))
    coupon = result.scalar_one_or_none()
    if coupon is None or not is_usable(coupon, now):
        return None
    return coupon


async def get_or_create_provider_coupon(
    db: AsyncSession, payments: PaymentProvider, coupon: Coupon
) -> str:
    """Provider coupon id for ``coupon``, created on first use and cached on the row."""
    if coupon.provider_coupon_id:
        return coupon.provider_coupon_id
    try:
        provider_id = await payments.create_coupon(
            coupon.code,
            percent_off=coupon.discount_percent,
            amount_off=None if coupon.discount_percent is not None else coupon.discount_amount,
        )
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to create coupon: {e}") from e
    coupon.provider_coupon_id = provider_id
    await db.flush()
    logger.info("provider coupon created code=%s provider_id=%s", coupon.code, provider_id)
    return provider_id


async def increment_usage(db: AsyncSession, coupon_id: uuid.UUID) -> bool:
    """Add one use in a single UPDATE. False if the coupon filled up meanwhile."""
    result = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            (Coupon.max_uses.is_(None)) | (Coupon.current_uses < Coupon.max_uses),
        )
        .values(current_uses=Coupon.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
