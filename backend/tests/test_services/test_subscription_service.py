"""Subscription lifecycle: card setup, trial gating, webhook transitions."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.core.errors import BillingFailure, ConflictError, NotFoundError
from photovault.models.base import as_utc
from photovault.models.billing import Coupon, SubscriptionStatus
from photovault.models.user import User
from photovault.services import subscription_service
from photovault.services.payments import InMemoryPaymentProvider


@pytest.mark.asyncio
async def test_initialize_reuses_customer(db_session: AsyncSession, user: User):
    payments = InMemoryPaymentProvider()

    first = await subscription_service.initialize_subscription(db_session, payments, user)
    second = await subscription_service.initialize_subscription(db_session, payments, user)
    await db_session.commit()

    assert first.customer_id == second.customer_id
    assert len(payments.customers) == 1
    assert first.client_secret.endswith("_secret")
    subscription = await subscription_service.get_subscription(db_session, user.id)
    assert subscription.status == SubscriptionStatus.incomplete


@pytest.mark.asyncio
async def test_confirm_requires_initialization(db_session: AsyncSession, user: User):
    with pytest.raises(ConflictError) as exc_info:
        await subscription_service.confirm_card_and_start_trial(
            db_session, InMemoryPaymentProvider(), user=user, payment_method_id="pm_1"
        )
    assert exc_info.value.code == "SUBSCRIPTION_NOT_INITIALIZED"


@pytest.mark.asyncio
async def test_confirm_card_starts_trial(db_session: AsyncSession, user: User):
    payments = InMemoryPaymentProvider()
    await subscription_service.initialize_subscription(db_session, payments, user)
    now = datetime(2026, 10, 1, tzinfo=timezone.utc)

    subscription = await subscription_service.confirm_card_and_start_trial(
        db_session, payments, user=user, payment_method_id="pm_1", now=now
    )
    await db_session.commit()

    assert subscription.status == SubscriptionStatus.trialing
    assert as_utc(subscription.trial_end) == now + timedelta(days=30)
    assert subscription.provider_subscription_id in payments.subscriptions
    assert user.has_payment_method is True
    assert user.storage_limit_bytes == settings.paid_storage_limit_bytes

    method = await subscription_service.get_payment_method(db_session, user.id)
    assert (method.card_brand, method.card_last4) == ("visa", "4242")


@pytest.mark.asyncio
async def test_confirm_card_applies_coupon(db_session: AsyncSession, user: User):
    payments = InMemoryPaymentProvider()
    coupon = Coupon(code="WELCOME20", discount_percent=20, max_uses=5)
    db_session.add(coupon)
    await db_session.commit()
    await subscription_service.initialize_subscription(db_session, payments, user)

    await subscription_service.confirm_card_and_start_trial(
        db_session, payments, user=user, payment_method_id="pm_1", coupon_code=" welcome20 "
    )
    await db_session.commit()
    await db_session.refresh(coupon)

    assert coupon.current_uses == 1
    assert coupon.provider_coupon_id in payments.coupons
    assert payments.coupons[coupon.provider_coupon_id]["percent_off"] == 20


@pytest.mark.asyncio
async def test_invalid_coupon_is_ignored(db_session: AsyncSession, user: User):
    payments = InMemoryPaymentProvider()
    await subscription_service.initialize_subscription(db_session, payments, user)

    subscription = await subscription_service.confirm_card_and_start_trial(
        db_session, payments, user=user, payment_method_id="pm_1", coupon_code="NOPE"
    )
    assert subscription.status == SubscriptionStatus.trialing
    assert payments.coupons == {}


@pytest.mark.asyncio
async def test_coupon_filled_before_increment_is_not_applied(
    db_session: AsyncSession, user: User, monkeypatch
):
    payments = InMemoryPaymentProvider()
    coupon = Coupon(code="LAST1", discount_percent=50, max_uses=1)
    db_session.add(coupon)
    await db_session.commit()
    await subscription_service.initialize_subscription(db_session, payments, user)

    async def already_full(db, coupon_id):
        return False

    monkeypatch.setattr(subscription_service.coupon_service, "increment_usage", already_full)
    subscription = await subscription_service.confirm_card_and_start_trial(
        db_session, payments, user=user, payment_method_id="pm_1", coupon_code="LAST1"
    )

    assert subscription.status == SubscriptionStatus.trialing
    assert payments.coupons == {}


@pytest.mark.asyncio
async def test_confirm_twice_is_conflict(
    db_session: AsyncSession, trialing_user: User, payments: InMemoryPaymentProvider
):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    first_id = subscription.provider_subscription_id

    with pytest.raises(ConflictError) as exc_info:
        await subscription_service.confirm_card_and_start_trial(
            db_session, payments, user=trialing_user, payment_method_id="pm_2"
        )
    assert exc_info.value.code == "SUBSCRIPTION_ALREADY_STARTED"
    assert list(payments.subscriptions) == [first_id]
    assert subscription.provider_subscription_id == first_id


@pytest.mark.asyncio
async def test_expired_trial_cannot_be_restarted(db_session: AsyncSession, trialing_user: User):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    now = as_utc(subscription.trial_start) + timedelta(days=40)

    with pytest.raises(ConflictError):
        await subscription_service.confirm_card_and_start_trial(
            db_session, InMemoryPaymentProvider(), user=trialing_user,
            payment_method_id="pm_2", now=now,
        )
    check = await subscription_service.has_valid_subscription(db_session, trialing_user.id, now=now)
    assert check.reason_code == "TRIAL_EXPIRED"


@pytest.mark.asyncio
async def test_provider_failure_on_attach(db_session: AsyncSession, user: User):
    payments = InMemoryPaymentProvider()
    await subscription_service.initialize_subscription(db_session, payments, user)
    payments.fail_next("attach_payment_method")

    with pytest.raises(BillingFailure):
        await subscription_service.confirm_card_and_start_trial(
            db_session, payments, user=user, payment_method_id="pm_1"
        )
    assert user.has_payment_method is False


@pytest.mark.asyncio
async def test_no_subscription_is_invalid(db_session: AsyncSession, user: User):
    check = await subscription_service.has_valid_subscription(db_session, user.id)
    assert check.valid is False
    assert check.status == "none"
    assert check.reason_code == "SUBSCRIPTION_REQUIRED"


@pytest.mark.asyncio
async def test_trial_expired_one_millisecond_ago(db_session: AsyncSession, trialing_user: User):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    now = datetime.now(timezone.utc)
    subscription.trial_end = now - timedelta(milliseconds=1)
    await db_session.commit()

    check = await subscription_service.has_valid_subscription(db_session, trialing_user.id, now=now)
    assert check.valid is False
    assert check.status == "trial_expired"
    assert check.reason_code == "TRIAL_EXPIRED"
    # Expiry is judged at read time; the stored status is untouched.
    assert subscription.status == SubscriptionStatus.trialing


@pytest.mark.asyncio
async def test_trial_with_one_day_left(db_session: AsyncSession, trialing_user: User):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    now = datetime.now(timezone.utc)
    subscription.trial_end = now + timedelta(days=1)
    await db_session.commit()

    check = await subscription_service.has_valid_subscription(db_session, trialing_user.id, now=now)
    assert check.valid is True
    assert check.status == "trialing"
    assert check.trial_days_remaining == 1


@pytest.mark.asyncio
async def test_partial_trial_day_rounds_up(db_session: AsyncSession, trialing_user: User):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    now = datetime.now(timezone.utc)
    subscription.trial_end = now + timedelta(days=2, hours=1)

    check = await subscription_service.has_valid_subscription(db_session, trialing_user.id, now=now)
    assert check.trial_days_remaining == 3


@pytest.mark.asyncio
async def test_past_due_is_inactive(db_session: AsyncSession, trialing_user: User):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    subscription.status = SubscriptionStatus.past_due

    check = await subscription_service.has_valid_subscription(db_session, trialing_user.id)
    assert check.valid is False
    assert check.reason_code == "SUBSCRIPTION_INACTIVE"


@pytest.mark.asyncio
async def test_payment_failure_clock_is_monotonic(db_session: AsyncSession, trialing_user: User):
    """Only the first failure starts the deletion clock."""
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    customer = subscription.provider_customer_id
    first = datetime(2026, 3, 1, tzinfo=timezone.utc)

    await subscription_service.handle_payment_failure(db_session, customer, now=first)
    await subscription_service.handle_payment_failure(
        db_session, customer, now=first + timedelta(days=10)
    )
    await db_session.commit()

    assert subscription.status == SubscriptionStatus.past_due
    assert as_utc(trialing_user.first_payment_failed_at) == first
    assert as_utc(trialing_user.scheduled_deletion_at) == first + timedelta(days=60)


@pytest.mark.asyncio
async def test_payment_success_clears_clock(
    db_session: AsyncSession, trialing_user: User, payments: InMemoryPaymentProvider
):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    await subscription_service.handle_payment_failure(db_session, subscription.provider_customer_id)
    payments.activate_subscription(subscription.provider_subscription_id)

    await subscription_service.handle_payment_success(
        db_session, payments, subscription.provider_customer_id,
        subscription.provider_subscription_id,
    )
    await db_session.commit()

    assert subscription.status == SubscriptionStatus.active
    assert trialing_user.first_payment_failed_at is None
    assert trialing_user.scheduled_deletion_at is None
    check = await subscription_service.has_valid_subscription(db_session, trialing_user.id)
    assert check.valid is True
    assert check.trial_days_remaining is None


@pytest.mark.asyncio
async def test_unknown_customer_is_ignored(db_session: AsyncSession):
    assert await subscription_service.handle_payment_failure(db_session, "cus_unknown") is None


@pytest.mark.asyncio
async def test_cancel_webhook_is_idempotent(db_session: AsyncSession, trialing_user: User):
    subscription = await subscription_service.get_subscription(db_session, trialing_user.id)
    first = datetime(2026, 4, 1, tzinfo=timezone.utc)

    await subscription_service.handle_subscription_canceled(
        db_session, subscription.provider_subscription_id, now=first
    )
    await subscription_service.handle_subscription_canceled(
        db_session, subscription.provider_subscription_id, now=first + timedelta(days=1)
    )
    assert subscription.status == SubscriptionStatus.canceled
    assert as_utc(subscription.canceled_at) == first


@pytest.mark.asyncio
async def test_cancel_subscription(
    db_session: AsyncSession, trialing_user: User, payments: InMemoryPaymentProvider
):
    subscription = await subscription_service.cancel_subscription(
        db_session, payments, trialing_user.id
    )
    assert subscription.status == SubscriptionStatus.canceled
    assert payments.subscriptions[subscription.provider_subscription_id].status == "canceled"


@pytest.mark.asyncio
async def test_cancel_without_subscription(db_session: AsyncSession, user: User):
    with pytest.raises(NotFoundError) as exc_info:
        await subscription_service.cancel_subscription(
            db_session, InMemoryPaymentProvider(), user.id
        )
    assert exc_info.value.code == "SUBSCRIPTION_NOT_FOUND"


@pytest.mark.asyncio
async def test_detach_payment_method(
    db_session: AsyncSession, trialing_user: User, payments: InMemoryPaymentProvider
):
    assert await subscription_service.detach_payment_method(db_session, payments, trialing_user)
    assert trialing_user.has_payment_method is False
    assert trialing_user.storage_limit_bytes == settings.free_storage_limit_bytes
    assert payments.payment_methods == {}
    assert not await subscription_service.detach_payment_method(db_session, payments, trialing_user)
