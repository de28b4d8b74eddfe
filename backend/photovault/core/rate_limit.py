"""In-memory rate limiting middleware, active in production only.

Limits:
  /auth/*          -> 10 requests/minute per IP
  /user/delete     -> 1 request/day per bearer token

Single-process counters; no shared store.
"""

import time
from collections import defaultdict

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from photovault.config import settings

# (prefix, max_requests, window_seconds)
_IP_RULES: list[tuple[str, int, int]] = [
    ("/auth/", 10, 60),
]

_TOKEN_RULES: list[tuple[str, int, int]] = [
    ("/user/delete", 1, 86400),
]


class _SlidingWindow:
    """Per-key hit timestamps within a trailing window."""

    def __init__(self) -> None:
        self._hits: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str, max_requests: int, window: int) -> bool:
        now = time.monotonic()
        cutoff = now - window
        self._hits[key] = hits = [t for t in self._hits[key] if t > cutoff]
        if len(hits) >= max_requests:
            return False
        hits.append(now)
        return True


_ip_window = _SlidingWindow()
_token_window = _SlidingWindow()


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not settings.is_production:
            return await call_next(request)

        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"

        for prefix, max_req, window in _IP_RULES:
            if path.startswith(prefix):
                if not _ip_window.is_allowed(f"ip:{client_ip}:{prefix}", max_req, window):
                    return _rate_limit_response(request)

        # The user is not resolved yet, so the bearer token stands in for it.
        token = _bearer_token(request)
        if token:
            for prefix, max_req, window in _TOKEN_RULES:
                if path.startswith(prefix):
                    if not _token_window.is_allowed(f"token:{token}:{prefix}", max_req, window):
                        return _rate_limit_response(request)

        return await call_next(request)


def _rate_limit_response(request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": True,
            "status_code": 429,
            "code": "RATE_LIMITED",
            "detail": "Rate limit exceeded. Please try again later.",
            "request_id": getattr(request.state, "request_id", None),
        },
        headers={"Retry-After": "60"},
    )
