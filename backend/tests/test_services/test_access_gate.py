"""Access gate decisions: subscription validity headers and the storage ceiling."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.errors import AccessDenied
from photovault.models.photo import Photo
from photovault.models.user import User
from photovault.services import access_gate
from photovault.services.access_gate import StorageCheck
from photovault.services.subscription_service import SubscriptionCheck


def test_trialing_exposes_days_remaining():
    decision = access_gate.subscription_decision(
        SubscriptionCheck(True, "trialing", trial_days_remaining=12)
    )
    assert decision.allowed
    assert decision.headers == {"X-Subscription-Status": "trialing", "X-Trial-Days-Remaining": "12"}


def test_active_has_no_trial_header():
    decision = access_gate.subscription_decision(SubscriptionCheck(True, "active"))
    assert decision.headers == {"X-Subscription-Status": "active"}


def test_denial_carries_reason_code():
    decision = access_gate.subscription_decision(
        SubscriptionCheck(False, "trial_expired", reason_code="TRIAL_EXPIRED")
    )
    assert not decision.allowed
    error = access_gate.deny_subscription(decision, "trial_expired")
    assert error.status_code == 403
    assert error.code == "TRIAL_EXPIRED"
    assert error.extra == {"status": "trial_expired"}


def test_storage_within_limit():
    check = StorageCheck(current_usage=60, storage_limit=100, has_payment_method=False)
    assert access_gate.storage_decision(check, 40).allowed


def test_free_tier_over_limit_is_402():
    check = StorageCheck(current_usage=60, storage_limit=100, has_payment_method=False)
    decision = access_gate.storage_decision(check, 41)
    assert (decision.status_code, decision.reason_code) == (402, "FREE_TIER_LIMIT_REACHED")


def test_paid_tier_over_limit_is_403():
    check = StorageCheck(current_usage=60, storage_limit=100, has_payment_method=True)
    decision = access_gate.storage_decision(check, 41)
    assert (decision.status_code, decision.reason_code) == (403, "STORAGE_LIMIT_REACHED")


@pytest.mark.asyncio
async def test_enforce_storage_limit_counts_stored_bytes(db_session: AsyncSession, user: User):
    user.storage_limit_bytes = 100
    db_session.add(Photo(
        user_id=user.id, storage_key=f"{user.id}/a", original_name="a",
        mime_type="image/png", size=90,
    ))
    await db_session.commit()

    check = await access_gate.enforce_storage_limit(db_session, user, 10)
    assert check.current_usage == 90

    with pytest.raises(AccessDenied) as exc_info:
        await access_gate.enforce_storage_limit(db_session, user, 11)
    assert exc_info.value.status_code == 402
    assert exc_info.value.extra["current_usage"] == 90
