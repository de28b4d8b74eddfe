"""Subscription lifecycle: setup, trial start, validity, webhook transitions, cancellation.

States: incomplete -> trialing -> active <-> past_due, any -> canceled.
Status moves only on explicit user actions (card confirmation, cancellation)
and on payment-provider webhooks. Trial expiry is judged at read time;
an expired trial keeps its stored ``trialing`` status.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.core.errors import BillingFailure, ConflictError, NotFoundError
from photovault.models.base import as_utc
from photovault.models.billing import PaymentMethod, Subscription, SubscriptionStatus
from photovault.models.user import User
from photovault.services import audit_service, coupon_service
from photovault.services.payments import PaymentProvider, PaymentProviderError

logger = logging.getLogger("photovault.subscriptions")

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class SetupIntentResult:
    client_secret: str
    customer_id: str


@dataclass(frozen=True)
class SubscriptionCheck:
    valid: bool
    status: str
    trial_days_remaining: int | None = None
    reason_code: str | None = None


async def get_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def get_payment_method(db: AsyncSession, user_id: uuid.UUID) -> PaymentMethod | None:
    result = await db.execute(select(PaymentMethod).where(PaymentMethod.user_id == user_id))
    return result.scalar_one_or_none()


def _billing_email(user: User) -> str:
    # OAuth-created accounts may have no usable address.
    return user.email or f"{user.id}@glacier-vault.local"


async def initialize_subscription(
    db: AsyncSession, payments: PaymentProvider, user: User
) -> SetupIntentResult:
    """Start card collection: reuse the customer if one exists, else create it."""
    subscription = await get_subscription(db, user.id)
    try:
        if subscription is not None and subscription.provider_customer_id:
            secret = await payments.create_setup_intent(subscription.provider_customer_id)
            return SetupIntentResult(secret, subscription.provider_customer_id)

        customer_id = await payments.create_customer(str(user.id), _billing_email(user), user.name)
        secret = await payments.create_setup_intent(customer_id)
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to start card setup: {e}") from e

    if subscription is None:
        subscription = Subscription(
            user_id=user.id,
            provider_customer_id=customer_id,
            status=SubscriptionStatus.incomplete,
        )
        db.add(subscription)
    else:
        subscription.provider_customer_id = customer_id
    await db.flush()
    logger.info("subscription initialized user=%s customer=%s", user.id, customer_id)
    return SetupIntentResult(secret, customer_id)


async def _record_payment_method(db: AsyncSession, user: User, card) -> PaymentMethod:
    method = await get_payment_method(db, user.id)
    if method is None:
        method = PaymentMethod(user_id=user.id)
        db.add(method)
    method.provider_payment_method_id = card.payment_method_id
    method.card_brand = card.brand
    method.card_last4 = card.last4
    method.is_default = True

    user.has_payment_method = True
    user.storage_limit_bytes = settings.paid_storage_limit_bytes
    await db.flush()
    return method


async def confirm_card_and_start_trial(
    db: AsyncSession,
    payments: PaymentProvider,
    *,
    user: User,
    payment_method_id: str,
    coupon_code: str | None = None,
    now: datetime | None = None,
    ip_address: str | None = None,
) -> Subscription:
    """Attach the card and open a trial. Invalid coupon codes are ignored."""
    subscription = await get_subscription(db, user.id)
    if subscription is None or not subscription.provider_customer_id:
        raise ConflictError(
            "Subscription not initialized. Request a setup intent first.",
            code="SUBSCRIPTION_NOT_INITIALIZED",
        )
    if (
        subscription.provider_subscription_id
        or subscription.status != SubscriptionStatus.incomplete
    ):
        raise ConflictError(
            f"Subscription already started (status: {subscription.status.value}).",
            code="SUBSCRIPTION_ALREADY_STARTED",
        )
    now = now or datetime.now(timezone.utc)
    customer_id = subscription.provider_customer_id

    try:
        card = await payments.attach_payment_method(customer_id, payment_method_id)
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to attach payment method: {e}") from e
    await _record_payment_method(db, user, card)

    provider_coupon_id = None
    coupon = await coupon_service.validate_coupon(db, coupon_code, now=now)
    if coupon is not None and await coupon_service.increment_usage(db, coupon.id):
        provider_coupon_id = await coupon_service.get_or_create_provider_coupon(db, payments, coupon)
    elif coupon is not None:
        logger.info("coupon exhausted user=%s code=%s", user.id, coupon.code)
        coupon = None
    elif coupon_code:
        logger.info("coupon ignored user=%s code=%s", user.id, coupon_code)

    try:
        provider_sub = await payments.create_subscription(
            customer_id, settings.trial_days, provider_coupon_id
        )
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to create subscription: {e}") from e

    trial_end = now + timedelta(days=settings.trial_days)
    subscription.provider_subscription_id = provider_sub.id
    subscription.status = SubscriptionStatus.trialing
    subscription.trial_start = now
    subscription.trial_end = trial_end
    subscription.current_period_start = now
    subscription.current_period_end = trial_end
    await db.flush()

    await audit_service.log_event(
        db,
        user_id=user.id,
        event_type="billing.trial_started",
        entity_type="Subscription",
        entity_id=subscription.id,
        action="start_trial",
        detail={"coupon": coupon.code if coupon else None, "trial_end": trial_end.isoformat()},
        ip_address=ip_address,
    )
    logger.info("trial started user=%s subscription=%s", user.id, provider_sub.id)
    return subscription


async def has_valid_subscription(
    db: AsyncSession, user_id: uuid.UUID, *, now: datetime | None = None
) -> SubscriptionCheck:
    subscription = await get_subscription(db, user_id)
    if subscription is None:
        return SubscriptionCheck(False, "none", reason_code="SUBSCRIPTION_REQUIRED")

    now = now or datetime.now(timezone.utc)
    if subscription.status == SubscriptionStatus.trialing:
        trial_end = as_utc(subscription.trial_end)
        if trial_end is not None and now > trial_end:
            return SubscriptionCheck(False, "trial_expired", reason_code="TRIAL_EXPIRED")
        remaining = 0
        if trial_end is not None:
            remaining = math.ceil((trial_end - now).total_seconds() / SECONDS_PER_DAY)
        return SubscriptionCheck(True, "trialing", trial_days_remaining=remaining)

    if subscription.status == SubscriptionStatus.active:
        return SubscriptionCheck(True, "active")

    return SubscriptionCheck(False, subscription.status.value, reason_code="SUBSCRIPTION_INACTIVE")


async def _by_customer(db: AsyncSession, customer_id: str | None) -> Subscription | None:
    if not customer_id:
        return None
    result = await db.execute(
        select(Subscription).where(Subscription.provider_customer_id == customer_id)
    )
    return result.scalar_one_or_none()


async def _user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def handle_payment_success(
    db: AsyncSession, payments: PaymentProvider, customer_id: str, subscription_id: str
) -> Subscription | None:
    """Mark the subscription active, refresh its period, and stop the deletion clock."""
    subscription = await _by_customer(db, customer_id)
    if subscription is None:
        logger.warning("payment success for unknown customer=%s", customer_id)
        return None

    try:
        provider_sub = await payments.retrieve_subscription(subscription_id)
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to retrieve subscription: {e}") from e

    subscription.status = SubscriptionStatus.active
    if provider_sub.current_period_start is not None:
        subscription.current_period_start = provider_sub.current_period_start
        subscription.current_period_end = provider_sub.current_period_end

    user = await _user(db, subscription.user_id)
    if user is not None:
        user.first_payment_failed_at = None
        user.scheduled_deletion_at = None
    await db.flush()
    logger.info("payment succeeded user=%s", subscription.user_id)
    return subscription


async def handle_payment_failure(
    db: AsyncSession, customer_id: str, *, now: datetime | None = None
) -> Subscription | None:
    """Move to past_due. The deletion clock starts on the first failure only."""
    subscription = await _by_customer(db, customer_id)
    if subscription is None:
        logger.warning("payment failure for unknown customer=%s", customer_id)
        return None

    now = now or datetime.now(timezone.utc)
    subscription.status = SubscriptionStatus.past_due
    user = await _user(db, subscription.user_id)
    if user is not None:
        if user.first_payment_failed_at is None:
            user.first_payment_failed_at = now
        if user.scheduled_deletion_at is None:
            user.scheduled_deletion_at = (
                as_utc(user.first_payment_failed_at)
                + timedelta(days=settings.deletion_grace_days)
            )
    await db.flush()
    logger.warning("payment failed user=%s deletion_at=%s",
                   subscription.user_id, user.scheduled_deletion_at if user else None)
    return subscription


async def handle_subscription_canceled(
    db: AsyncSession, subscription_id: str, *, now: datetime | None = None
) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.provider_subscription_id == subscription_id)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        logger.warning("cancellation for unknown subscription=%s", subscription_id)
        return None
    if subscription.status == SubscriptionStatus.canceled:
        return subscription

    subscription.status = SubscriptionStatus.canceled
    subscription.canceled_at = now or datetime.now(timezone.utc)
    await db.flush()
    logger.info("subscription canceled user=%s", subscription.user_id)
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    payments: PaymentProvider,
    user_id: uuid.UUID,
    *,
    ip_address: str | None = None,
) -> Subscription:
    subscription = await get_subscription(db, user_id)
    if subscription is None or not subscription.provider_subscription_id:
        raise NotFoundError("No active subscription found.", code="SUBSCRIPTION_NOT_FOUND")

    try:
        await payments.cancel_subscription(subscription.provider_subscription_id)
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to cancel subscription: {e}") from e

    if subscription.status != SubscriptionStatus.canceled:
        subscription.status = SubscriptionStatus.canceled
        subscription.canceled_at = datetime.now(timezone.utc)
    await db.flush()

    await audit_service.log_event(
        db,
        user_id=user_id,
        event_type="billing.subscription_canceled",
        entity_type="Subscription",
        entity_id=subscription.id,
        action="cancel",
        ip_address=ip_address,
    )
    return subscription


async def detach_payment_method(
    db: AsyncSession,
    payments: PaymentProvider,
    user: User,
    *,
    ip_address: str | None = None,
) -> bool:
    """Remove the card on file and drop back to the free ceiling. False if none."""
    method = await get_payment_method(db, user.id)
    if method is None or not method.provider_payment_method_id:
        return False

    try:
        await payments.detach_payment_method(method.provider_payment_method_id)
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to detach payment method: {e}") from e

    method.provider_payment_method_id = None
    method.card_brand = None
    method.card_last4 = None
    user.has_payment_method = False
    user.storage_limit_bytes = settings.free_storage_limit_bytes
    await db.flush()

    await audit_service.log_event(
        db,
        user_id=user.id,
        event_type="billing.payment_method_removed",
        entity_type="PaymentMethod",
        entity_id=method.id,
        action="detach",
        ip_address=ip_address,
    )
    return True
