"""Access gate decisions: subscription validity and storage ceiling.

Pure decisions over data the caller already loaded; the FastAPI wiring lives
in ``photovault.core.access``.
"""

from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.errors import AccessDenied
from photovault.models.user import User
from photovault.services import usage_service
from photovault.services.subscription_service import SubscriptionCheck

SUBSCRIPTION_MESSAGES = {
    "SUBSCRIPTION_REQUIRED": "A subscription is required to use this service.",
    "TRIAL_EXPIRED": "Your trial has ended. Register a payment method to keep using the service.",
    "SUBSCRIPTION_INACTIVE": "Your subscription is not active. Check your payment status.",
}


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    status_code: int = 200
    reason_code: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StorageCheck:
    current_usage: int
    storage_limit: int
    has_payment_method: bool


def subscription_decision(check: SubscriptionCheck) -> GateDecision:
    if not check.valid:
        return GateDecision(
            allowed=False,
            status_code=403,
            reason_code=check.reason_code or "SUBSCRIPTION_REQUIRED",
        )
    headers = {"X-Subscription-Status": check.status}
    if check.trial_days_remaining is not None:
        headers["X-Trial-Days-Remaining"] = str(check.trial_days_remaining)
    return GateDecision(allowed=True, headers=headers)


def deny_subscription(decision: GateDecision, status: str) -> AccessDenied:
    return AccessDenied(
        SUBSCRIPTION_MESSAGES.get(decision.reason_code, "Subscription check failed."),
        code=decision.reason_code,
        status_code=decision.status_code,
        extra={"status": status},
    )


def storage_decision(check: StorageCheck, incoming_bytes: int) -> GateDecision:
    if check.current_usage + incoming_bytes <= check.storage_limit:
        return GateDecision(allowed=True)
    if not check.has_payment_method:
        return GateDecision(allowed=False, status_code=402, reason_code="FREE_TIER_LIMIT_REACHED")
    return GateDecision(allowed=False, status_code=403, reason_code="STORAGE_LIMIT_REACHED")


async def enforce_storage_limit(db: AsyncSession, user: User, incoming_bytes: int) -> StorageCheck:
    """Raise AccessDenied if ``incoming_bytes`` would push the user past their ceiling."""
    current, _ = await usage_service.current_storage(db, user.id)
    check = StorageCheck(
        current_usage=current,
        storage_limit=user.storage_limit_bytes,
        has_payment_method=user.has_payment_method,
    )
    decision = storage_decision(check, incoming_bytes)
    if decision.allowed:
        return check

    if decision.reason_code == "FREE_TIER_LIMIT_REACHED":
        message = (
            "Free tier limit reached. Register a payment method to raise your storage ceiling."
        )
    else:
        message = "Storage limit reached. Delete files you no longer need or contact support."
    raise AccessDenied(
        message,
        code=decision.reason_code,
        status_code=decision.status_code,
        extra={
            "current_usage": check.current_usage,
            "incoming_bytes": incoming_bytes,
            "storage_limit": check.storage_limit,
            "has_payment_method": check.has_payment_method,
        },
    )
