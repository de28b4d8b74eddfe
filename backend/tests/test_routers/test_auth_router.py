import pytest
from httpx import AsyncClient


async def _register(client: AsyncClient, email: str = "router@example.com") -> dict:
    resp = await client.post(
        "/auth/register",
        json={"email": email, "password": "SecurePass123!", "name": "Router"},
    )
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.asyncio
async def test_register_returns_tokens_and_user(client: AsyncClient):
    data = await _register(client)
    assert data["token_type"] == "bearer"
    assert data["access_token"]
    assert data["refresh_token"]
    assert data["user"]["email"] == "router@example.com"
    assert data["user"]["has_payment_method"] is False


@pytest.mark.asyncio
async def test_register_duplicate(client: AsyncClient):
    await _register(client)
    resp = await client.post(
        "/auth/register", json={"email": "router@example.com", "password": "SecurePass123!"}
    )
    assert resp.status_code == 409
    assert resp.json()["error"] is True


@pytest.mark.asyncio
async def test_register_short_password(client: AsyncClient):
    resp = await client.post(
        "/auth/register", json={"email": "short@example.com", "password": "short"}
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_login_and_me(client: AsyncClient):
    await _register(client)
    resp = await client.post(
        "/auth/login", json={"email": "router@example.com", "password": "SecurePass123!"}
    )
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "router@example.com"


@pytest.mark.asyncio
async def test_login_invalid_password(client: AsyncClient):
    await _register(client)
    resp = await client.post(
        "/auth/login", json={"email": "router@example.com", "password": "WrongPass123!"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_me_requires_token(client: AsyncClient):
    resp = await client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"

    resp = await client.get("/auth/me", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_refresh_then_logout(client: AsyncClient):
    data = await _register(client)

    resp = await client.post("/auth/refresh", json={"refresh_token": data["refresh_token"]})
    assert resp.status_code == 200
    rotated = resp.json()["refresh_token"]

    resp = await client.post("/auth/logout", json={"refresh_token": rotated})
    assert resp.status_code == 204

    resp = await client.post("/auth/refresh", json={"refresh_token": rotated})
    assert resp.status_code == 401
