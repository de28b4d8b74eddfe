"""Audit trail: append-only records of auth, photo and billing actions.

Rows are never updated except by ``anonymize_user_events`` when the owning
account is deleted; ``user_id`` survives so the chain stays readable.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.models.audit import AuditLogEvent

PII_DETAIL_KEYS = frozenset(
    {"email", "ip_address", "user_agent", "password", "original_name", "name"}
)


async def log_event(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    event_type: str,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    detail: dict | None = None,
    ip_address: str | None = None,
) -> AuditLogEvent:
    event = AuditLogEvent(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        detail=detail,
        ip_address=ip_address,
    )
    db.add(event)
    await db.flush()
    return event


async def get_events_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    event_type: str | None = None,
    limit: int = 100,
) -> list[AuditLogEvent]:
    """Oldest first, optionally narrowed to one event type."""
    query = select(AuditLogEvent).where(AuditLogEvent.user_id == user_id)
    if event_type is not None:
        query = query.where(AuditLogEvent.event_type == event_type)
    query = query.order_by(AuditLogEvent.timestamp.asc()).limit(limit)
    return list((await db.execute(query)).scalars().all())


def scrub_detail(detail: dict | None) -> dict | None:
    if detail is None:
        return None
    return {k: v for k, v in detail.items() if k not in PII_DETAIL_KEYS}


async def anonymize_user_events(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Strip PII keys and IP addresses from every event of ``user_id``.

    Returns the number of events touched.
    """
    events = (
        await db.execute(select(AuditLogEvent).where(AuditLogEvent.user_id == user_id))
    ).scalars().all()
    for event in events:
        event.detail = scrub_detail(event.detail)
        event.ip_address = None
    return len(events)
