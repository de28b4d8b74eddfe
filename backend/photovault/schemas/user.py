import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    name: str | None = Field(None, max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class UserRead(BaseModel):
    id: uuid.UUID
    email: str
    name: str | None = None
    provider: str
    status: str
    has_payment_method: bool
    storage_limit_bytes: int
    scheduled_deletion_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class LoginResponse(TokenPair):
    user: UserRead
