"""Request correlation and access logging.

Every response carries ``X-Request-ID``; a well-formed inbound id from an
upstream proxy is kept so one upload can be traced across hops. The access
log never contains raw user ids, only a short hash.
"""

import hashlib
import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("photovault.access")

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9\-]{8,64}$")


def _inbound_request_id(request: Request) -> str | None:
    value = request.headers.get("X-Request-ID")
    if value and _REQUEST_ID_RE.match(value):
        return value
    return None


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _inbound_request_id(request) or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One line per request; server errors are logged at WARNING."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000

        user_id = getattr(request.state, "user_id", None)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "request_id=%s user=%s method=%s path=%s status=%d bytes_in=%s elapsed_ms=%.1f",
            getattr(request.state, "request_id", "-"),
            hash_user_id(user_id) if user_id else "-",
            request.method,
            request.url.path,
            response.status_code,
            request.headers.get("content-length", "0"),
            elapsed_ms,
        )
        return response


def hash_user_id(user_id: str) -> str:
    return hashlib.sha256(str(user_id).encode()).hexdigest()[:12]
