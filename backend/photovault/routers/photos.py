"""Photo routes: upload, browse, metadata, restore, download.

Every route sits behind the subscription gate; uploads also pass the
storage-ceiling gate. Archived bytes are never served directly: a download
is a short-lived signed URL, available only once a restore has completed.
"""

import uuid as uuid_mod

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.core.access import require_subscription
from photovault.core.errors import NotRestoredError
from photovault.dependencies import client_ip, get_db, get_storage
from photovault.models.photo import ArchivalStatus
from photovault.models.user import User
from photovault.schemas.photo import (
    DownloadUrlRead, MonthlyStatRead, PhotoRead, PhotoStatsRead, PhotoUpdate, RestoreRequest,
    RestoreResponse, RestoreStatusRead, StatusFilter,
)
from photovault.services import access_gate, photo_service
from photovault.services.storage import ArchiveStorage

router = APIRouter(prefix="/photos", tags=["photos"])


def _parse_id(photo_id: str) -> uuid_mod.UUID:
    try:
        return uuid_mod.UUID(photo_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid photo ID format")


def _parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


@router.post("/upload", response_model=PhotoRead, status_code=201)
async def upload_photo(
    request: Request,
    file: UploadFile = File(...),
    title: str | None = Form(None),
    description: str | None = Form(None),
    tags: str | None = Form(None),
    relative_path: str | None = Form(None),
    db: AsyncSession = Depends(get_db),
    storage: ArchiveStorage = Depends(get_storage),
    current_user: User = Depends(require_subscription),
):
    """Upload one file into cold storage. ``tags`` is a comma-separated list."""
    data = await file.read()
    await access_gate.enforce_storage_limit(db, current_user, len(data))

    photo = await photo_service.upload(
        db,
        storage,
        user_id=current_user.id,
        filename=file.filename or "unnamed",
        content_type=file.content_type or "application/octet-stream",
        data=data,
        title=title,
        description=description,
        tags=_parse_tags(tags),
        relative_path=relative_path,
        ip_address=client_ip(request),
    )
    await db.commit()
    return PhotoRead.model_validate(photo)


@router.get("", response_model=list[PhotoRead])
async def list_photos(
    tag: str | None = None,
    status: StatusFilter | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_subscription),
):
    photos = await photo_service.list_photos(
        db,
        user_id=current_user.id,
        tag=tag,
        status=ArchivalStatus(status) if status else None,
    )
    return [PhotoRead.model_validate(p) for p in photos]


@router.get("/stats", response_model=PhotoStatsRead)
async def photo_stats(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_subscription),
):
    return await photo_service.get_user_stats(db, current_user.id)


@router.get("/tags", response_model=list[str])
async def photo_tags(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_subscription),
):
    return await photo_service.get_user_tags(db, current_user.id)


@router.get("/monthly-stats", response_model=list[MonthlyStatRead])
async def monthly_stats(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_subscription),
):
    return await photo_service.get_monthly_stats(db, current_user.id)


@router.get("/{photo_id}", response_model=PhotoRead)
async def get_photo(
    photo_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_subscription),
):
    photo = await photo_service.get_photo(db, photo_id=_parse_id(photo_id), user_id=current_user.id)
    return PhotoRead.model_validate(photo)


@router.patch("/{photo_id}", response_model=PhotoRead)
async def update_photo(
    photo_id: str,
    body: PhotoUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_subscription),
):
    photo = await photo_service.update_metadata(
        db,
        photo_id=_parse_id(photo_id),
        user_id=current_user.id,
        changes=body.model_dump(exclude_unset=True),
        ip_address=client_ip(request),
    )
    await db.commit()
    return PhotoRead.model_validate(photo)


@router.delete("/{photo_id}", status_code=204)
async def delete_photo(
    photo_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: ArchiveStorage = Depends(get_storage),
    current_user: User = Depends(require_subscription),
):
    await photo_service.delete_photo(
        db,
        storage,
        photo_id=_parse_id(photo_id),
        user_id=current_user.id,
        ip_address=client_ip(request),
    )
    await db.commit()


@router.post("/{photo_id}/restore", response_model=RestoreResponse, status_code=202)
async def request_restore(
    photo_id: str,
    request: Request,
    body: RestoreRequest | None = None,
    db: AsyncSession = Depends(get_db),
    storage: ArchiveStorage = Depends(get_storage),
    current_user: User = Depends(require_subscription),
):
    """Request a temporary restore. Standard takes ~12 h, Bulk ~48 h."""
    tier = body.tier if body else "Standard"
    pid = _parse_id(photo_id)
    result = await photo_service.request_restore(
        db,
        storage,
        photo_id=pid,
        user_id=current_user.id,
        tier=tier,
        ip_address=client_ip(request),
    )
    await db.commit()
    return RestoreResponse(
        photo_id=pid,
        status=result.status.value,
        tier=tier,
        estimated_hours=result.estimated_hours,
    )


@router.get("/{photo_id}/restore/status", response_model=RestoreStatusRead)
async def restore_status(
    photo_id: str,
    db: AsyncSession = Depends(get_db),
    storage: ArchiveStorage = Depends(get_storage),
    current_user: User = Depends(require_subscription),
):
    photo = await photo_service.check_restore_status(
        db, storage, photo_id=_parse_id(photo_id), user_id=current_user.id
    )
    await db.commit()
    return RestoreStatusRead(
        photo_id=photo.id, status=photo.status.value, restored_until=photo.restored_until
    )


@router.get("/{photo_id}/download", response_model=DownloadUrlRead)
async def download_url(
    photo_id: str,
    db: AsyncSession = Depends(get_db),
    storage: ArchiveStorage = Depends(get_storage),
    current_user: User = Depends(require_subscription),
):
    """Signed URL for a restored photo. 409 NOT_RESTORED otherwise."""
    try:
        photo, url = await photo_service.get_download_url(
            db, storage, photo_id=_parse_id(photo_id), user_id=current_user.id
        )
    except NotRestoredError:
        # The status re-check itself is still recorded.
        await db.commit()
        raise
    await db.commit()
    return DownloadUrlRead(photo_id=photo.id, url=url, expires_in=settings.download_url_ttl_seconds)
