import logging
import warnings
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from photovault.config import settings
from photovault.core.errors import register_error_handlers
from photovault.core.middleware import AccessLogMiddleware, RequestIDMiddleware
from photovault.core.rate_limit import RateLimitMiddleware
from photovault.routers import auth, billing, photos, user, webhooks
from photovault.services.payments import build_payments
from photovault.services.storage import build_storage

# Refuse to sign tokens with the placeholder secret in production
if settings.is_production and settings.secret_key == "change-me-in-production":
    raise RuntimeError(
        "SECRET_KEY must be set to a secure random value in production. "
        "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
    )

if not settings.is_production and settings.secret_key == "change-me-in-production":
    warnings.warn("SECRET_KEY is using default value. Set it for production.", stacklevel=1)

logger = logging.getLogger("photovault")


def build_capabilities(application: FastAPI) -> None:
    """Attach the storage and payment backends selected by settings."""
    application.state.storage = build_storage(
        settings.storage_backend,
        bucket=settings.s3_bucket_name,
        region=settings.aws_region,
    )
    application.state.payments = build_payments(
        settings.payment_backend,
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        price_id=settings.stripe_price_id,
        currency=settings.currency,
    )


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Create database tables on startup if they don't exist."""
    from photovault import models  # noqa: F401
    from photovault.dependencies import engine
    from photovault.models.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables verified/created")
    logger.info("capabilities storage=%s payments=%s",
                settings.storage_backend, settings.payment_backend)
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)
build_capabilities(app)

# Middleware: last added = outermost. CORS outermost so 429s get CORS headers too.
cors_kwargs = {
    "allow_origins": settings.cors_origins_list,
    "allow_credentials": True,
    "allow_methods": ["*"],
    "allow_headers": ["*"],
    "expose_headers": ["x-request-id", "x-trial-days-remaining", "x-subscription-status"],
}
if settings.cors_allow_origin_regex:
    cors_kwargs["allow_origin_regex"] = settings.cors_allow_origin_regex
app.add_middleware(RequestIDMiddleware)
app.add_middleware(AccessLogMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(CORSMiddleware, **cors_kwargs)

register_error_handlers(app)

app.include_router(auth.router)
app.include_router(photos.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(user.router)


@app.get("/health")
async def health_check():
    return {"status": "ok", "app": settings.app_name, "version": "0.1.0"}
