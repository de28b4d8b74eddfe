"""Billing routes: card setup, trial start, subscription, coupons, usage, invoices.

Endpoints:
- POST /billing/setup-intent: start card collection
- POST /billing/confirm-card: attach card, apply coupon, start the trial
- GET /billing/subscription: stored subscription plus live validity
- POST /billing/coupon/validate: check a coupon code without using it
- POST /billing/cancel: cancel the subscription
- GET /billing/payment-method, DELETE /billing/payment-method
- GET /billing/usage: month-to-date usage and costs
- GET /billing/estimate: projected total for the current month
- GET /billing/invoices: invoice history
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.auth import get_current_user
from photovault.dependencies import client_ip, get_db, get_payments
from photovault.models.user import User
from photovault.schemas.billing import (
    ConfirmCardRequest, CouponValidateRead, CouponValidateRequest, EstimateRead, InvoiceRead,
    PaymentMethodRead, SetupIntentRead, SubscriptionRead, SubscriptionStatusRead, UsageRead,
)
from photovault.services import billing_service, coupon_service, subscription_service, usage_service
from photovault.services.payments import PaymentProvider

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/setup-intent", response_model=SetupIntentRead)
async def setup_intent(
    db: AsyncSession = Depends(get_db),
    payments: PaymentProvider = Depends(get_payments),
    current_user: User = Depends(get_current_user),
):
    result = await subscription_service.initialize_subscription(db, payments, current_user)
    await db.commit()
    return SetupIntentRead(client_secret=result.client_secret, customer_id=result.customer_id)


@router.post("/confirm-card", response_model=SubscriptionRead)
async def confirm_card(
    body: ConfirmCardRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentProvider = Depends(get_payments),
    current_user: User = Depends(get_current_user),
):
    subscription = await subscription_service.confirm_card_and_start_trial(
        db,
        payments,
        user=current_user,
        payment_method_id=body.payment_method_id,
        coupon_code=body.coupon_code,
        ip_address=client_ip(request),
    )
    await db.commit()
    return SubscriptionRead.model_validate(subscription)


@router.get("/subscription", response_model=SubscriptionStatusRead)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    subscription = await subscription_service.get_subscription(db, current_user.id)
    check = await subscription_service.has_valid_subscription(db, current_user.id)
    return SubscriptionStatusRead(
        subscription=SubscriptionRead.model_validate(subscription) if subscription else None,
        valid=check.valid,
        status=check.status,
        trial_days_remaining=check.trial_days_remaining,
        reason_code=check.reason_code,
    )


@router.post("/coupon/validate", response_model=CouponValidateRead)
async def validate_coupon(
    body: CouponValidateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    coupon = await coupon_service.validate_coupon(db, body.code)
    if coupon is None:
        return CouponValidateRead(valid=False, code=coupon_service.normalize_code(body.code))
    return CouponValidateRead(
        valid=True,
        code=coupon.code,
        discount_percent=coupon.discount_percent,
        discount_amount=coupon.discount_amount,
    )


@router.post("/cancel", response_model=SubscriptionRead)
async def cancel(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentProvider = Depends(get_payments),
    current_user: User = Depends(get_current_user),
):
    subscription = await subscription_service.cancel_subscription(
        db, payments, current_user.id, ip_address=client_ip(request)
    )
    await db.commit()
    return SubscriptionRead.model_validate(subscription)


@router.get("/payment-method", response_model=PaymentMethodRead)
async def get_payment_method(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    method = await subscription_service.get_payment_method(db, current_user.id)
    if method is None or not method.provider_payment_method_id:
        return PaymentMethodRead(has_payment_method=False)
    return PaymentMethodRead(
        has_payment_method=True,
        card_brand=method.card_brand,
        card_last4=method.card_last4,
    )


@router.delete("/payment-method", status_code=204)
async def delete_payment_method(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentProvider = Depends(get_payments),
    current_user: User = Depends(get_current_user),
):
    await subscription_service.detach_payment_method(
        db, payments, current_user, ip_address=client_ip(request)
    )
    await db.commit()


@router.get("/usage", response_model=UsageRead)
async def usage(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await usage_service.get_usage_summary(db, current_user)


@router.get("/estimate", response_model=EstimateRead)
async def estimate(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await usage_service.estimate_current_month(db, current_user.id)


@router.get("/invoices", response_model=list[InvoiceRead])
async def invoices(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = await billing_service.list_invoices(db, current_user.id)
    return [InvoiceRead.model_validate(i) for i in rows]
