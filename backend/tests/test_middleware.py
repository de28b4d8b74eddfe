import logging

import pytest
from httpx import AsyncClient

from photovault.config import settings
from photovault.core import rate_limit


@pytest.mark.asyncio
async def test_request_id_in_response(client: AsyncClient):
    """All responses include X-Request-ID header."""
    response = await client.get("/health")
    assert response.status_code == 200
    # UUID format: 8-4-4-4-12
    assert len(response.headers["X-Request-ID"]) == 36


@pytest.mark.asyncio
async def test_inbound_request_id_is_kept(client: AsyncClient):
    response = await client.get("/health", headers={"X-Request-ID": "edge-1234abcd"})
    assert response.headers["X-Request-ID"] == "edge-1234abcd"

    response = await client.get("/health", headers={"X-Request-ID": "bad id\twith spaces"})
    assert response.headers["X-Request-ID"] != "bad id\twith spaces"


@pytest.mark.asyncio
async def test_404_returns_structured_json(client: AsyncClient):
    """Non-existent endpoint returns structured JSON error with request_id."""
    response = await client.get("/nonexistent")
    assert response.status_code == 404
    data = response.json()
    assert data["error"] is True
    assert data["status_code"] == 404
    assert data["request_id"] == response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_access_log_hashes_user(client: AsyncClient, user, auth_headers, caplog):
    with caplog.at_level(logging.INFO, logger="photovault.access"):
        await client.get("/auth/me", headers=auth_headers)
    (record,) = [r for r in caplog.records if r.name == "photovault.access"]
    message = record.getMessage()
    assert "path=/auth/me" in message
    assert str(user.id) not in message


@pytest.mark.asyncio
async def test_auth_rate_limit_in_production(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "app_env", "production")
    monkeypatch.setattr(rate_limit, "_ip_window", rate_limit._SlidingWindow())

    for _ in range(10):
        resp = await client.post("/auth/login", json={"email": "x@example.com", "password": "x"})
        assert resp.status_code == 401
    resp = await client.post("/auth/login", json={"email": "x@example.com", "password": "x"})
    assert resp.status_code == 429
    assert resp.json()["code"] == "RATE_LIMITED"
    assert resp.headers["Retry-After"] == "60"


@pytest.mark.asyncio
async def test_no_rate_limit_outside_production(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(rate_limit, "_ip_window", rate_limit._SlidingWindow())
    for _ in range(12):
        resp = await client.get("/auth/me")
        assert resp.status_code == 401
