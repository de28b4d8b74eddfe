"""Authentication: register, login, token refresh, logout, get_current_user.

bcrypt password hashing. Access tokens are short-lived HS256 JWTs carrying
``sub``, ``email`` and ``type``; refresh tokens carry a ``jti`` recorded in
``refresh_tokens`` so logout can revoke them. All auth events are audited.
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.dependencies import get_db
from photovault.models.base import as_utc
from photovault.models.session import RefreshToken
from photovault.models.user import User, UserStatus
from photovault.services import audit_service

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user: User, *, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "type": ACCESS_TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(minutes=settings.access_token_minutes),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


async def create_refresh_token(db: AsyncSession, user: User) -> str:
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(days=settings.refresh_token_days)
    jti = secrets.token_hex(16)
    db.add(RefreshToken(user_id=user.id, jti=jti, expires_at=expires_at))
    await db.flush()
    payload = {
        "sub": str(user.id),
        "type": REFRESH_TOKEN_TYPE,
        "jti": jti,
        "iat": now,
        "exp": expires_at,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, expected_type: str) -> dict:
    """Verify signature, expiry and token type. Raises 401 on any mismatch."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")
    if payload.get("type") != expected_type or not payload.get("sub"):
        raise _unauthorized("Invalid token")
    return payload


async def issue_tokens(db: AsyncSession, user: User) -> dict:
    return {
        "access_token": create_access_token(user),
        "refresh_token": await create_refresh_token(db, user),
        "token_type": "bearer",
        "expires_in": settings.access_token_minutes * 60,
    }


async def register_user(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    name: str | None = None,
    ip_address: str | None = None,
) -> User:
    """Register a new user. Raises HTTPException if email taken."""
    email = email.strip().lower()
    result = await db.execute(select(User).where(User.email == email))
    if result.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    user = User(
        email=email,
        password_hash=hash_password(password),
        name=name,
        provider="password",
        status=UserStatus.active,
        storage_limit_bytes=settings.free_storage_limit_bytes,
    )
    db.add(user)
    await db.flush()

    await audit_service.log_event(
        db,
        user_id=user.id,
        event_type="auth.register",
        entity_type="User",
        entity_id=user.id,
        action="register",
        detail={"email": email},
        ip_address=ip_address,
    )
    return user


async def login_user(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    ip_address: str | None = None,
) -> tuple[User, dict]:
    """Authenticate and return (user, token bundle).

    Raises HTTPException on invalid credentials or inactive account.
    """
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    user = result.scalar_one_or_none()

    if user is None or not verify_password(password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if user.status != UserStatus.active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active",
        )

    tokens = await issue_tokens(db, user)
    await audit_service.log_event(
        db,
        user_id=user.id,
        event_type="auth.login",
        entity_type="User",
        entity_id=user.id,
        action="login",
        ip_address=ip_address,
    )
    return user, tokens


async def _live_refresh_record(db: AsyncSession, payload: dict) -> RefreshToken:
    result = await db.execute(select(RefreshToken).where(RefreshToken.jti == payload.get("jti")))
    record = result.scalar_one_or_none()
    if record is None or record.revoked or str(record.user_id) != payload["sub"]:
        raise _unauthorized("Invalid or revoked refresh token")
    if as_utc(record.expires_at) < datetime.now(timezone.utc):
        raise _unauthorized("Refresh token expired")
    return record


async def refresh_tokens(db: AsyncSession, *, refresh_token: str) -> dict:
    """Rotate: revoke the presented refresh token and issue a fresh pair."""
    payload = decode_token(refresh_token, REFRESH_TOKEN_TYPE)
    record = await _live_refresh_record(db, payload)

    result = await db.execute(select(User).where(User.id == record.user_id))
    user = result.scalar_one_or_none()
    if user is None or user.status != UserStatus.active:
        raise _unauthorized("User not found or inactive")

    record.revoked = True
    return await issue_tokens(db, user)


async def logout_user(
    db: AsyncSession,
    *,
    refresh_token: str,
    ip_address: str | None = None,
) -> None:
    """Revoke a refresh token. Unknown or malformed tokens are ignored."""
    try:
        payload = jwt.decode(
            refresh_token, settings.secret_key, algorithms=[settings.jwt_algorithm]
        )
    except jwt.InvalidTokenError:
        return
    result = await db.execute(select(RefreshToken).where(RefreshToken.jti == payload.get("jti")))
    record = result.scalar_one_or_none()
    if record is None:
        return

    record.revoked = True
    await db.flush()

    await audit_service.log_event(
        db,
        user_id=record.user_id,
        event_type="auth.logout",
        entity_type="RefreshToken",
        entity_id=record.id,
        action="logout",
        ip_address=ip_address,
    )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """FastAPI dependency: validate the bearer access token, return the current user.

    Raises HTTPException 401 if the token is missing, invalid or expired,
    or the user no longer exists.
    """
    if credentials is None:
        raise _unauthorized("Authentication required")

    payload = decode_token(credentials.credentials, ACCESS_TOKEN_TYPE)
    try:
        user_id = uuid.UUID(payload["sub"])
    except ValueError:
        raise _unauthorized("Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or user.status != UserStatus.active:
        raise _unauthorized("User not found or inactive")

    request.state.user_id = str(user.id)
    return user
