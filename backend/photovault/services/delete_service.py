"""Account deletion: archived files, photo rows, billing rows and the user row.

The audit trail is kept but anonymized: ``user_id`` stays for the chain,
PII keys in ``detail`` and the IP address are scrubbed.
"""

import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.errors import BillingFailure, CapabilityFailure
from photovault.models.billing import Invoice, PaymentMethod, Subscription, SubscriptionStatus
from photovault.models.photo import Photo, PhotoTag
from photovault.models.session import RefreshToken
from photovault.models.usage import StorageUsageDaily, UsageLog
from photovault.models.user import User
from photovault.services import audit_service
from photovault.services.payments import PaymentProvider, PaymentProviderError
from photovault.services.storage import ArchiveStorage, StorageError, user_prefix

logger = logging.getLogger("photovault.delete")


async def _cancel_upstream(db: AsyncSession, payments: PaymentProvider, user_id: uuid.UUID) -> None:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    subscription = result.scalar_one_or_none()
    if (
        subscription is None
        or not subscription.provider_subscription_id
        or subscription.status == SubscriptionStatus.canceled
    ):
        return
    try:
        await payments.cancel_subscription(subscription.provider_subscription_id)
    except PaymentProviderError as e:
        raise BillingFailure(f"Failed to cancel subscription: {e}") from e


async def delete_account(
    db: AsyncSession,
    storage: ArchiveStorage,
    user_id: uuid.UUID,
    *,
    reason: str = "user_requested",
    payments: PaymentProvider | None = None,
    ip_address: str | None = None,
) -> bool:
    """Hard-delete a user and everything they own.

    Returns False if the user does not exist. Stored objects are removed
    from the archive before any row is touched, so a storage failure leaves
    the account intact.
    """
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        return False

    if payments is not None:
        await _cancel_upstream(db, payments, user_id)

    try:
        removed = await storage.delete_prefix(user_prefix(user_id))
    except StorageError as e:
        raise CapabilityFailure(f"Failed to delete stored files: {e}") from e

    await audit_service.log_event(
        db,
        user_id=user_id,
        event_type="user.account_deleted",
        entity_type="User",
        entity_id=user_id,
        action="delete",
        detail={"reason": reason, "objects_removed": removed},
        ip_address=ip_address,
    )

    photo_ids = select(Photo.id).where(Photo.user_id == user_id)
    await db.execute(delete(PhotoTag).where(PhotoTag.photo_id.in_(photo_ids)))
    for model in (Photo, UsageLog, StorageUsageDaily, Invoice, PaymentMethod,
                  Subscription, RefreshToken):
        await db.execute(delete(model).where(model.user_id == user_id))

    await audit_service.anonymize_user_events(db, user_id)

    await db.delete(user)
    await db.flush()
    logger.info("account deleted user=%s reason=%s objects=%d", user_id, reason, removed)
    return True
