"""Photo schemas: request/response models for the photos API."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


class PhotoRead(BaseModel):
    id: UUID
    user_id: UUID
    original_name: str
    relative_path: str | None = None
    mime_type: str
    size: int
    title: str | None = None
    description: str | None = None
    tags: list[str] = []
    status: str
    restored_until: datetime | None = None
    uploaded_at: datetime

    model_config = {"from_attributes": True}


class PhotoUpdate(BaseModel):
    """Only fields present in the request body are changed; ``tags`` replaces the whole set."""

    title: str | None = Field(None, max_length=200)
    description: str | None = Field(None, max_length=1000)
    tags: list[str] | None = Field(None, max_length=50)


class RestoreRequest(BaseModel):
    tier: str = "Standard"


class RestoreResponse(BaseModel):
    photo_id: UUID
    status: str
    tier: str
    estimated_hours: int


class RestoreStatusRead(BaseModel):
    photo_id: UUID
    status: str
    restored_until: datetime | None = None


class DownloadUrlRead(BaseModel):
    photo_id: UUID
    url: str
    expires_in: int


class PhotoStatsRead(BaseModel):
    total_photos: int
    total_size: int
    archived: int
    restoring: int
    restored: int
    failed: int


class MonthlyStatRead(BaseModel):
    month: str
    total_size: int
    photo_count: int


StatusFilter = Literal["archived", "restore_requested", "restoring", "restored", "failed"]
