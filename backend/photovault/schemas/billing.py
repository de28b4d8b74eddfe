"""Billing schemas: subscription, card setup, coupons, usage, invoices."""

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class SetupIntentRead(BaseModel):
    client_secret: str
    customer_id: str


class ConfirmCardRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1, max_length=255)
    coupon_code: str | None = Field(None, max_length=64)


class SubscriptionRead(BaseModel):
    id: uuid.UUID
    status: str
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None

    model_config = {"from_attributes": True}


class SubscriptionStatusRead(BaseModel):
    """Stored subscription (if any) plus the live validity judgment."""

    subscription: SubscriptionRead | None = None
    valid: bool
    status: str
    trial_days_remaining: int | None = None
    reason_code: str | None = None


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class CouponValidateRead(BaseModel):
    valid: bool
    code: str
    discount_percent: int | None = None
    discount_amount: int | None = None


class PaymentMethodRead(BaseModel):
    has_payment_method: bool
    card_brand: str | None = None
    card_last4: str | None = None


class UsageRead(BaseModel):
    storage_bytes: int
    file_count: int
    storage_limit_bytes: int
    has_payment_method: bool
    period_start: date
    period_end: date
    storage_cost: Decimal
    restore_cost: Decimal
    api_cost: Decimal
    total_cost: Decimal


class EstimateRead(BaseModel):
    period_start: date
    period_end: date
    storage_bytes: int
    storage_cost: Decimal
    restore_cost: Decimal
    api_cost: Decimal
    total_cost: Decimal


class InvoiceRead(BaseModel):
    id: uuid.UUID
    provider_invoice_id: str
    billing_period_start: date
    billing_period_end: date
    storage_cost: Decimal
    restore_cost: Decimal
    api_cost: Decimal
    total_amount: Decimal
    billed_amount: int
    status: str
    paid_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}
