"""Auth routes: register, login, refresh, logout, me."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.auth import (
    get_current_user, issue_tokens, login_user, logout_user, refresh_tokens, register_user,
)
from photovault.dependencies import client_ip, get_db
from photovault.models.user import User
from photovault.schemas.user import (
    LoginRequest, LoginResponse, RefreshRequest, TokenPair, UserCreate, UserRead,
)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=LoginResponse, status_code=201)
async def register(
    body: UserCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    user = await register_user(
        db, email=body.email, password=body.password, name=body.name,
        ip_address=client_ip(request),
    )
    tokens = await issue_tokens(db, user)
    await db.commit()
    return {**tokens, "user": UserRead.model_validate(user)}


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    user, tokens = await login_user(
        db, email=body.email, password=body.password, ip_address=client_ip(request)
    )
    await db.commit()
    return {**tokens, "user": UserRead.model_validate(user)}


@router.post("/refresh", response_model=TokenPair)
async def refresh(
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db),
):
    tokens = await refresh_tokens(db, refresh_token=body.refresh_token)
    await db.commit()
    return tokens


@router.post("/logout", status_code=204)
async def logout(
    body: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    await logout_user(db, refresh_token=body.refresh_token, ip_address=client_ip(request))
    await db.commit()


@router.get("/me", response_model=UserRead)
async def me(current_user: User = Depends(get_current_user)):
    return current_user
