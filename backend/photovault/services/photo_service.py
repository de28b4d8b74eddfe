"""Photo lifecycle: upload, metadata, restore requests, status polling, downloads.

Archival states:

    archived -> restore_requested -> restoring -> restored -> (expiry) archived
                       any -> failed (object missing at the provider)

Key rules:
- Bytes are stored in the archive before any row is written.
- A restore request on a restored photo is a no-op.
- "Restore already in progress" from the provider resolves to ``restoring``.
- Downloads always re-check status and require ``restored``.
- Tier timing (Standard ~12 h, Bulk ~48 h) is advisory only.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.core.errors import (
    CapabilityFailure, NotFoundError, NotRestoredError, RetrievalFailure, ValidationFailure,
)
from photovault.models.base import as_utc
from photovault.models.photo import ArchivalStatus, Photo, PhotoTag
from photovault.services import audit_service, usage_service
from photovault.services.storage import (
    ARCHIVAL_STORAGE_CLASSES, ArchiveStorage, ObjectMissing, RestoreAlreadyInProgress,
    StorageError, generate_storage_key,
)

logger = logging.getLogger("photovault.photos")

RESTORE_TIER_HOURS = {"Standard": 12, "Bulk": 48}

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_TAGS = 50
MAX_TAG_LENGTH = 50
ALLOWED_MIME_PREFIXES = ("image/", "video/", "audio/")
ALLOWED_MIME_TYPES = frozenset(
    {"application/pdf", "application/zip", "application/x-zip-compressed", "multipart/x-zip"}
)

_ONGOING_RE = re.compile(r'ongoing-request="(true|false)"')
_EXPIRY_RE = re.compile(r'expiry-date="([^"]+)"')


@dataclass(frozen=True)
class RestoreResult:
    status: ArchivalStatus
    estimated_hours: int


def validate_tier(tier: str) -> str:
    if tier not in RESTORE_TIER_HOURS:
        raise ValidationFailure(
            f"Invalid tier: {tier}. Must be one of: {', '.join(RESTORE_TIER_HOURS)}"
        )
    return tier


def normalize_tags(tags: list[str] | None) -> list[str]:
    cleaned = [t.strip() for t in (tags or []) if t and t.strip()]
    if len(cleaned) > MAX_TAGS:
        raise ValidationFailure(f"Maximum {MAX_TAGS} tags allowed.")
    for tag in cleaned:
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationFailure(f"Each tag must be at most {MAX_TAG_LENGTH} characters.")
    return cleaned


def validate_mime_type(content_type: str) -> str:
    mime_type = content_type.split(";", 1)[0].strip().lower()
    if mime_type.startswith(ALLOWED_MIME_PREFIXES) or mime_type in ALLOWED_MIME_TYPES:
        return mime_type
    raise ValidationFailure(
        f"Unsupported file type: {mime_type or 'unknown'}. "
        "Images, video, audio, PDF and zip archives are accepted."
    )


def _validate_text(title: str | None, description: str | None) -> None:
    if title is not None and len(title) > MAX_TITLE_LENGTH:
        raise ValidationFailure(f"Title must be at most {MAX_TITLE_LENGTH} characters.")
    if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationFailure(
            f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters."
        )


def parse_restore_header(restore: str | None) -> tuple[bool | None, datetime | None]:
    """Split the provider's restore marker into (ongoing, expiry).

    ``ongoing`` is None when there is no marker at all.
    """
    if not restore:
        return None, None
    ongoing_match = _ONGOING_RE.search(restore)
    if ongoing_match is None:
        return None, None
    ongoing = ongoing_match.group(1) == "true"
    expiry = None
    expiry_match = _EXPIRY_RE.search(restore)
    if expiry_match:
        try:
            expiry = parsedate_to_datetime(expiry_match.group(1))
        except (TypeError, ValueError):
            logger.warning("unparseable restore expiry: %s", expiry_match.group(1))
    return ongoing, expiry


# ---------------------------------------------------------------------------
# Upload and metadata
# ---------------------------------------------------------------------------

async def upload(
    db: AsyncSession,
    storage: ArchiveStorage,
    *,
    user_id: uuid.UUID,
    filename: str,
    content_type: str,
    data: bytes,
    title: str | None = None,
    description: str | None = None,
    tags: list[str] | None = None,
    relative_path: str | None = None,
    ip_address: str | None = None,
) -> Photo:
    """Store the bytes in the archive, then record the photo and its tags."""
    if not data:
        raise ValidationFailure("No file uploaded.")
    if len(data) > settings.max_upload_bytes:
        raise ValidationFailure(
            f"File too large. Maximum size is {settings.max_upload_bytes // (1024 * 1024)} MB."
        )
    content_type = validate_mime_type(content_type)
    _validate_text(title, description)
    clean_tags = normalize_tags(tags)

    storage_key = generate_storage_key(user_id, relative_path or filename)
    metadata = {"title": title or "", "description": description or ""}
    if clean_tags:
        metadata["tags"] = ",".join(clean_tags)
    try:
        await storage.put_archival(storage_key, data, content_type, metadata)
    except StorageError as e:
        raise CapabilityFailure(f"Failed to upload photo: {e}", code="UPLOAD_FAILED") from e

    try:
        async with db.begin_nested():
            photo = Photo(
                user_id=user_id,
                storage_key=storage_key,
                original_name=filename,
                relative_path=relative_path,
                mime_type=content_type,
                size=len(data),
                title=title,
                description=description,
                status=ArchivalStatus.archived,
                tag_rows=[PhotoTag(tag=t) for t in clean_tags],
            )
            db.add(photo)
            await db.flush()
            await usage_service.log_upload(db, user_id=user_id, size=len(data))
    except Exception:
        # Leave no orphaned object behind when the row cannot be written.
        await storage.delete(storage_key)
        raise

    await audit_service.log_event(
        db,
        user_id=user_id,
        event_type="photo.uploaded",
        entity_type="Photo",
        entity_id=photo.id,
        action="upload",
        detail={"original_name": filename, "mime_type": content_type, "size": len(data)},
        ip_address=ip_address,
    )
    logger.info("photo uploaded user=%s photo=%s size=%d", user_id, photo.id, len(data))
    return photo


async def list_photos(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    tag: str | None = None,
    status: ArchivalStatus | None = None,
) -> list[Photo]:
    stmt = (
        select(Photo)
        .where(Photo.user_id == user_id)
        .order_by(Photo.uploaded_at.desc())
    )
    if tag:
        stmt = stmt.where(Photo.tag_rows.any(PhotoTag.tag == tag))
    if status is not None:
        stmt = stmt.where(Photo.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_photo(db: AsyncSession, *, photo_id: uuid.UUID, user_id: uuid.UUID) -> Photo:
    """User-scoped lookup. Someone else's photo is indistinguishable from a missing one."""
    result = await db.execute(
        select(Photo).where(Photo.id == photo_id, Photo.user_id == user_id)
    )
    photo = result.scalar_one_or_none()
    if photo is None:
        raise NotFoundError("Photo not found.", code="PHOTO_NOT_FOUND")
    return photo


async def update_metadata(
    db: AsyncSession,
    *,
    photo_id: uuid.UUID,
    user_id: uuid.UUID,
    changes: dict,
    ip_address: str | None = None,
) -> Photo:
    """Apply title/description/tags changes. Tags are replaced as a whole."""
    photo = await get_photo(db, photo_id=photo_id, user_id=user_id)
    _validate_text(changes.get("title"), changes.get("description"))
    new_tags = normalize_tags(changes["tags"]) if "tags" in changes else None

    async with db.begin_nested():
        if "title" in changes:
            photo.title = changes["title"]
        if "description" in changes:
            photo.description = changes["description"]
        if new_tags is not None:
            photo.tag_rows = [PhotoTag(tag=t) for t in new_tags]
        await db.flush()

    await audit_service.log_event(
        db,
        user_id=user_id,
        event_type="photo.updated",
        entity_type="Photo",
        entity_id=photo.id,
        action="update",
        detail={"fields": sorted(changes)},
        ip_address=ip_address,
    )
    return photo


async def delete_photo(
    db: AsyncSession,
    storage: ArchiveStorage,
    *,
    photo_id: uuid.UUID,
    user_id: uuid.UUID,
    ip_address: str | None = None,
) -> None:
    photo = await get_photo(db, photo_id=photo_id, user_id=user_id)
    try:
        await storage.delete(photo.storage_key)
    except StorageError as e:
        raise CapabilityFailure(f"Failed to delete photo: {e}", code="DELETE_FAILED") from e

    await audit_service.log_event(
        db,
        user_id=user_id,
        event_type="photo.deleted",
        entity_type="Photo",
        entity_id=photo.id,
        action="delete",
        detail={"size": photo.size},
        ip_address=ip_address,
    )
    await db.delete(photo)
    await db.flush()


# ---------------------------------------------------------------------------
# Restore lifecycle
# ---------------------------------------------------------------------------

async def request_restore(
    db: AsyncSession,
    storage: ArchiveStorage,
    *,
    photo_id: uuid.UUID,
    user_id: uuid.UUID,
    tier: str = "Standard",
    ip_address: str | None = None,
) -> RestoreResult:
    """Ask the archive for a temporary readable copy. Safe to call repeatedly."""
    validate_tier(tier)
    photo = await get_photo(db, photo_id=photo_id, user_id=user_id)

    if photo.status == ArchivalStatus.restored:
        return RestoreResult(ArchivalStatus.restored, 0)

    previous = photo.status
    try:
        await storage.request_restore(photo.storage_key, tier, settings.restore_days)
    except RestoreAlreadyInProgress:
        photo.status = ArchivalStatus.restoring
    except StorageError as e:
        raise RetrievalFailure(f"Failed to request photo restoration: {e}") from e
    else:
        photo.status = ArchivalStatus.restore_requested
        photo.restored_until = None
        await usage_service.log_restore(db, user_id=user_id, size=photo.size, tier=tier)
        await audit_service.log_event(
            db,
            user_id=user_id,
            event_type="photo.restore_requested",
            entity_type="Photo",
            entity_id=photo.id,
            action="restore",
            detail={"tier": tier},
            ip_address=ip_address,
        )
    await db.flush()

    logger.info("restore photo=%s tier=%s %s -> %s",
                photo.id, tier, previous.value, photo.status.value)
    return RestoreResult(photo.status, RESTORE_TIER_HOURS[tier])


async def _refresh_status(db: AsyncSession, storage: ArchiveStorage, photo: Photo) -> ArchivalStatus:
    try:
        head = await storage.head_object(photo.storage_key)
    except ObjectMissing:
        new_status, new_expiry = ArchivalStatus.failed, None
    except StorageError as e:
        raise RetrievalFailure(f"Failed to check restore status: {e}") from e
    else:
        ongoing, expiry = parse_restore_header(head.restore)
        if ongoing is False:
            new_status, new_expiry = ArchivalStatus.restored, expiry
        elif ongoing is True:
            new_status, new_expiry = ArchivalStatus.restoring, None
        elif head.storage_class in ARCHIVAL_STORAGE_CLASSES:
            new_status, new_expiry = ArchivalStatus.archived, None
        else:
            new_status, new_expiry = photo.status, as_utc(photo.restored_until)

    if new_status != photo.status or new_expiry != as_utc(photo.restored_until):
        logger.info("restore status photo=%s %s -> %s",
                    photo.id, photo.status.value, new_status.value)
        photo.status = new_status
        photo.restored_until = new_expiry
        await db.flush()
    return photo.status


async def check_restore_status(
    db: AsyncSession,
    storage: ArchiveStorage,
    *,
    photo_id: uuid.UUID,
    user_id: uuid.UUID,
) -> Photo:
    """Poll the archive and persist the resolved state when it changed."""
    photo = await get_photo(db, photo_id=photo_id, user_id=user_id)
    await _refresh_status(db, storage, photo)
    return photo


async def get_download_url(
    db: AsyncSession,
    storage: ArchiveStorage,
    *,
    photo_id: uuid.UUID,
    user_id: uuid.UUID,
    ttl_seconds: int | None = None,
) -> tuple[Photo, str]:
    photo = await get_photo(db, photo_id=photo_id, user_id=user_id)
    status = await _refresh_status(db, storage, photo)
    if status != ArchivalStatus.restored:
        raise NotRestoredError(status.value)

    try:
        url = await storage.signed_url(
            photo.storage_key, ttl_seconds or settings.download_url_ttl_seconds
        )
    except StorageError as e:
        raise RetrievalFailure(f"Failed to generate download URL: {e}") from e

    await usage_service.log_download(db, user_id=user_id, size=photo.size)
    return photo, url


# ---------------------------------------------------------------------------
# Per-user views
# ---------------------------------------------------------------------------

async def get_user_stats(db: AsyncSession, user_id: uuid.UUID) -> dict:
    result = await db.execute(
        select(Photo.status, func.count(Photo.id), func.coalesce(func.sum(Photo.size), 0))
        .where(Photo.user_id == user_id)
        .group_by(Photo.status)
    )
    counts = {s: 0 for s in ArchivalStatus}
    total_size = 0
    for status, count, size in result.all():
        counts[ArchivalStatus(status)] = count
        total_size += int(size)
    return {
        "total_photos": sum(counts.values()),
        "total_size": total_size,
        "archived": counts[ArchivalStatus.archived],
        "restoring": counts[ArchivalStatus.restore_requested] + counts[ArchivalStatus.restoring],
        "restored": counts[ArchivalStatus.restored],
        "failed": counts[ArchivalStatus.failed],
    }


async def get_user_tags(db: AsyncSession, user_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(distinct(PhotoTag.tag))
        .join(Photo, Photo.id == PhotoTag.photo_id)
        .where(Photo.user_id == user_id)
    )
    return sorted(t for t in result.scalars().all() if t and t.strip())


def _month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


async def get_monthly_stats(
    db: AsyncSession, user_id: uuid.UUID, *, now: datetime | None = None
) -> list[dict]:
    """Upload volume per calendar month for the last 12 months, oldest first."""
    now = now or datetime.now(timezone.utc)
    months = []
    year, month = now.year, now.month
    for _ in range(12):
        months.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    months.reverse()
    window_start = datetime(months[0][0], months[0][1], 1, tzinfo=timezone.utc)

    result = await db.execute(
        select(Photo.uploaded_at, Photo.size).where(
            Photo.user_id == user_id, Photo.uploaded_at >= window_start
        )
    )
    buckets = {_month_key(y, m): {"total_size": 0, "photo_count": 0} for y, m in months}
    for uploaded_at, size in result.all():
        uploaded_at = as_utc(uploaded_at)
        bucket = buckets.get(_month_key(uploaded_at.year, uploaded_at.month))
        if bucket is not None:
            bucket["total_size"] += size
            bucket["photo_count"] += 1
    return [{"month": key, **values} for key, values in buckets.items()]
