"""Subscription gate as a FastAPI dependency.

Blocks with 403 and a reason code when the caller has no valid
subscription; otherwise exposes ``X-Subscription-Status`` (and
``X-Trial-Days-Remaining`` during a trial) on the response.
"""

from fastapi import Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.auth import get_current_user
from photovault.dependencies import get_db
from photovault.models.user import User
from photovault.services import access_gate, subscription_service


async def require_subscription(
    response: Response,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    check = await subscription_service.has_valid_subscription(db, current_user.id)
    decision = access_gate.subscription_decision(check)
    if not decision.allowed:
        raise access_gate.deny_subscription(decision, check.status)
    for name, value in decision.headers.items():
        response.headers[name] = value
    return current_user
