"""Payment provider abstraction.

Services talk to the payment provider only through ``PaymentProvider``.
Two backends:

- ``StripePaymentProvider``: Stripe SDK. The SDK is blocking, so every call
  runs on the threadpool. Webhook signatures are verified by the SDK.
- ``InMemoryPaymentProvider``: tests and local development. Signs webhook
  payloads with HMAC-SHA256 over the configured secret.
"""

import hashlib
import hmac
import itertools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import stripe
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger("photovault.payments")


class PaymentProviderError(Exception):
    """Any failure reported by the payment provider."""


class WebhookSignatureError(PaymentProviderError):
    """Webhook payload did not carry a valid signature."""


@dataclass(frozen=True)
class CardDetails:
    payment_method_id: str
    brand: str | None
    last4: str | None


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    customer_id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None


@dataclass(frozen=True)
class InvoiceLine:
    amount: int
    description: str


@dataclass(frozen=True)
class ProviderInvoice:
    id: str
    status: str


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: dict = field(default_factory=dict)


class PaymentProvider(ABC):
    """Capability interface for the payment provider.

    Amounts are integers in the smallest unit of ``currency``; for JPY that
    is whole yen.
    """

    currency: str = "jpy"

    @abstractmethod
    async def create_customer(self, user_id: str, email: str, name: str | None = None) -> str:
        ...

    @abstractmethod
    async def create_setup_intent(self, customer_id: str) -> str:
        """Returns the client secret for card collection."""
        ...

    @abstractmethod
    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> CardDetails:
        """Attach and make the default method for invoices."""
        ...

    @abstractmethod
    async def detach_payment_method(self, payment_method_id: str) -> None:
        ...

    @abstractmethod
    async def create_subscription(self, customer_id: str, trial_days: int,
                                  coupon_id: str | None = None) -> ProviderSubscription:
        ...

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    @abstractmethod
    async def create_coupon(self, code: str, *, percent_off: int | None = None,
                            amount_off: int | None = None) -> str:
        ...

    @abstractmethod
    async def create_invoice(self, customer_id: str, lines: list[InvoiceLine]) -> ProviderInvoice:
        """Create one item per line, then create and finalize the invoice."""
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Verify the signature and parse the event. Raises WebhookSignatureError."""
        ...


def _from_timestamp(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _get(obj, key: str):
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


class StripePaymentProvider(PaymentProvider):
    def __init__(self, secret_key: str, webhook_secret: str, price_id: str,
                 currency: str = "jpy"):
        stripe.api_key = secret_key
        self._webhook_secret = webhook_secret
        self._price_id = price_id
        self.currency = currency

    async def _call(self, fn, *args, **kwargs):
        try:
            return await run_in_threadpool(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.warning("stripe call %s failed: %s", getattr(fn, "__name__", fn), e)
            raise PaymentProviderError(str(e)) from e

    async def create_customer(self, user_id: str, email: str, name: str | None = None) -> str:
        customer = await self._call(
            stripe.Customer.create, email=email, name=name, metadata={"user_id": user_id}
        )
        return customer.id

    async def create_setup_intent(self, customer_id: str) -> str:
        intent = await self._call(
            stripe.SetupIntent.create, customer=customer_id, payment_method_types=["card"]
        )
        return intent.client_secret

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> CardDetails:
        method = await self._call(
            stripe.PaymentMethod.attach, payment_method_id, customer=customer_id
        )
        await self._call(
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
        card = _get(method, "card")
        return CardDetails(
            payment_method_id=payment_method_id,
            brand=_get(card, "brand"),
            last4=_get(card, "last4"),
        )

    async def detach_payment_method(self, payment_method_id: str) -> None:
        await self._call(stripe.PaymentMethod.detach, payment_method_id)

    def _to_subscription(self, sub) -> ProviderSubscription:
        start = _get(sub, "current_period_start")
        end = _get(sub, "current_period_end")
        if start is None:
            # Newer API versions carry the period on the subscription items.
            items = _get(_get(sub, "items"), "data") or []
            if items:
                start = _get(items[0], "current_period_start")
                end = _get(items[0], "current_period_end")
        return ProviderSubscription(
            id=sub.id,
            customer_id=_get(sub, "customer"),
            status=_get(sub, "status"),
            current_period_start=_from_timestamp(start),
            current_period_end=_from_timestamp(end),
        )

    async def create_subscription(self, customer_id: str, trial_days: int,
                                  coupon_id: str | None = None) -> ProviderSubscription:
        params = {
            "customer": customer_id,
            "items": [{"price": self._price_id}],
            "trial_period_days": trial_days,
        }
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        sub = await self._call(stripe.Subscription.create, **params)
        return self._to_subscription(sub)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        sub = await self._call(stripe.Subscription.retrieve, subscription_id)
        return self._to_subscription(sub)

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        sub = await self._call(stripe.Subscription.cancel, subscription_id)
        return self._to_subscription(sub)

    async def create_coupon(self, code: str, *, percent_off: int | None = None,
                            amount_off: int | None = None) -> str:
        params = {"name": code, "duration": "once"}
        if percent_off is not None:
            params["percent_off"] = percent_off
        else:
            params["amount_off"] = amount_off
            params["currency"] = self.currency
        coupon = await self._call(stripe.Coupon.create, **params)
        return coupon.id

    async def create_invoice(self, customer_id: str, lines: list[InvoiceLine]) -> ProviderInvoice:
        for line in lines:
            await self._call(
                stripe.InvoiceItem.create,
                customer=customer_id,
                amount=line.amount,
                currency=self.currency,
                description=line.description,
            )
        invoice = await self._call(
            stripe.Invoice.create,
            customer=customer_id,
            auto_advance=True,
            collection_method="charge_automatically",
            pending_invoice_items_behavior="include",
        )
        invoice = await self._call(stripe.Invoice.finalize_invoice, invoice.id)
        return ProviderInvoice(id=invoice.id, status=_get(invoice, "status"))

    def construct_event(self, payload: bytes, signature: str | None) -> WebhookEvent:
        if not self._webhook_secret:
            raise PaymentProviderError("Webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(str(e)) from e
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e
        body = json.loads(payload)
        return WebhookEvent(id=body.get("id", ""), type=body["type"], data=body["data"]["object"])


class InMemoryPaymentProvider(PaymentProvider):
    """In-memory payment provider for testing. No network I/O.

    Every created object is kept in plain dicts so tests can assert on them.
    ``fail_next`` makes the next call of the named method raise
    ``PaymentProviderError``.
    """

    def __init__(self, webhook_secret: str = "whsec_test", currency: str = "jpy"):
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.customers: dict[str, dict] = {}
        self.payment_methods: dict[str, dict] = {}
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.coupons: dict[str, dict] = {}
        self.invoices: dict[str, dict] = {}
        self._ids = itertools.count(1)
        self._failures: dict[str, Exception] = {}

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids):06d}"

    def fail_next(self, method: str, error: Exception | None = None) -> None:
        self._failures[method] = error or PaymentProviderError(f"{method} unavailable")

    def _maybe_fail(self, method: str) -> None:
        error = self._failures.pop(method, None)
        if error is not None:
            raise error

    async def create_customer(self, user_id: str, email: str, name: str | None = None) -> str:
        self._maybe_fail("create_customer")
        customer_id = self._next_id("cus")
        self.customers[customer_id] = {"email": email, "name": name, "user_id": user_id}
        return customer_id

    async def create_setup_intent(self, customer_id: str) -> str:
        self._maybe_fail("create_setup_intent")
        if customer_id not in self.customers:
            raise PaymentProviderError(f"No such customer: {customer_id}")
        return f"{self._next_id('seti')}_secret"

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> CardDetails:
        self._maybe_fail("attach_payment_method")
        if customer_id not in self.customers:
            raise PaymentProviderError(f"No such customer: {customer_id}")
        self.payment_methods[payment_method_id] = {"customer": customer_id}
        self.customers[customer_id]["default_payment_method"] = payment_method_id
        return CardDetails(payment_method_id=payment_method_id, brand="visa", last4="4242")

    async def detach_payment_method(self, payment_method_id: str) -> None:
        self._maybe_fail("detach_payment_method")
        self.payment_methods.pop(payment_method_id, None)

    async def create_subscription(self, customer_id: str, trial_days: int,
                                  coupon_id: str | None = None) -> ProviderSubscription:
        self._maybe_fail("create_subscription")
        now = datetime.now(timezone.utc)
        sub = ProviderSubscription(
            id=self._next_id("sub"),
            customer_id=customer_id,
            status="trialing",
            current_period_start=now,
            current_period_end=now + timedelta(days=trial_days),
        )
        self.subscriptions[sub.id] = sub
        if coupon_id:
            self.coupons[coupon_id]["applied_to"] = sub.id
        return sub

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        self._maybe_fail("retrieve_subscription")
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise PaymentProviderError(f"No such subscription: {subscription_id}")
        return sub

    def activate_subscription(self, subscription_id: str, period_days: int = 30) -> ProviderSubscription:
        """Simulate the provider moving a subscription into a paid period."""
        now = datetime.now(timezone.utc)
        sub = ProviderSubscription(
            id=subscription_id,
            customer_id=self.subscriptions[subscription_id].customer_id,
            status="active",
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
        )
        self.subscriptions[subscription_id] = sub
        return sub

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        self._maybe_fail("cancel_subscription")
        sub = await self.retrieve_subscription(subscription_id)
        canceled = ProviderSubscription(
            id=sub.id,
            customer_id=sub.customer_id,
            status="canceled",
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
        )
        self.subscriptions[subscription_id] = canceled
        return canceled

    async def create_coupon(self, code: str, *, percent_off: int | None = None,
                            amount_off: int | None = None) -> str:
        self._maybe_fail("create_coupon")
        coupon_id = self._next_id("coupon")
        self.coupons[coupon_id] = {
            "name": code, "percent_off": percent_off, "amount_off": amount_off,
        }
        return coupon_id

    async def create_invoice(self, customer_id: str, lines: list[InvoiceLine]) -> ProviderInvoice:
        self._maybe_fail("create_invoice")
        invoice = ProviderInvoice(id=self._next_id("in"), status="open")
        self.invoices[invoice.id] = {
            "customer": customer_id,
            "lines": list(lines),
            "total": sum(line.amount for line in lines),
            "status": invoice.status,
        }
        return invoice

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def construct_event(self, payload: bytes, signature: str | None) -> WebhookEvent:
        if not signature or not hmac.compare_digest(signature, self.sign(payload)):
            raise WebhookSignatureError("Signature mismatch")
        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e
        return WebhookEvent(id=body.get("id", ""), type=body["type"], data=body["data"]["object"])


def build_payments(backend: str, *, secret_key: str, webhook_secret: str, price_id: str,
                   currency: str) -> PaymentProvider:
    if backend == "memory":
        return InMemoryPaymentProvider(webhook_secret=webhook_secret or "whsec_test",
                                       currency=currency)
    if backend == "stripe":
        return StripePaymentProvider(secret_key, webhook_secret, price_id, currency=currency)
    raise ValueError(f"Unknown payment backend: {backend}")
