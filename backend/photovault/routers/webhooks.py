"""Payment-provider webhooks.

The raw body is verified by the payment capability before anything is
dispatched. Handled events:

- invoice.payment_succeeded: invoice marked paid; subscription invoices
  also activate the subscription and stop the deletion clock
- invoice.payment_failed: invoice marked failed, subscription past_due
- customer.subscription.deleted: subscription canceled

Everything else is acknowledged and ignored.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.dependencies import get_db, get_payments
from photovault.services import billing_service, subscription_service
from photovault.services.payments import PaymentProvider, WebhookSignatureError

logger = logging.getLogger("photovault.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def invoice_subscription_id(invoice: dict) -> str | None:
    """Subscription id of an invoice, in either the legacy or the ``parent`` shape."""
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentProvider = Depends(get_payments),
):
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    payload = await request.body()
    try:
        event = payments.construct_event(payload, signature)
    except WebhookSignatureError as e:
        logger.warning("webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    logger.info("webhook received id=%s type=%s", event.id, event.type)
    obj = event.data

    if event.type == "invoice.payment_succeeded":
        await billing_service.mark_invoice_paid(db, obj.get("id"))
        subscription_id = invoice_subscription_id(obj)
        if subscription_id:
            await subscription_service.handle_payment_success(
                db, payments, obj.get("customer"), subscription_id
            )
    elif event.type == "invoice.payment_failed":
        await billing_service.mark_invoice_failed(db, obj.get("id"))
        await subscription_service.handle_payment_failure(db, obj.get("customer"))
    elif event.type == "customer.subscription.deleted":
        await subscription_service.handle_subscription_canceled(db, obj.get("id"))
    else:
        logger.info("webhook ignored type=%s", event.type)

    await db.commit()
    return {"received": True}
