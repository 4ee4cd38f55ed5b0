"""
Infinet - Usage Metering & Entitlement Service - Main Application Entry Point
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from infinet.config import settings
from infinet.db import init_db
from infinet.errors import register_exception_handlers
from infinet.logging_config import configure_logging, generate_request_id, request_id_var, user_id_var
from infinet.api import (
    chat_router,
    image_router,
    usage_router,
    webhooks_router,
    billing_router,
)
from infinet.api.admin import usage_router as admin_usage_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    configure_logging(settings.log_level, json_output=settings.log_json)
    logger.info(f"{settings.app_name} starting up...")

    await init_db()
    logger.info("Database initialized")

    # Period rollover / pruning housekeeping
    if settings.enable_scheduler:
        try:
            from infinet.scripts.scheduled_tasks import start_scheduler
            start_scheduler()
        except Exception as e:
            logger.warning(f"Could not start scheduler: {e}")

    yield

    # Shutdown
    if settings.enable_scheduler:
        from infinet.scripts.scheduled_tasks import stop_scheduler
        stop_scheduler()
    logger.info(f"{settings.app_name} shut down")


app = FastAPI(
    title=settings.app_name,
    description="Usage metering and subscription entitlement for the Infinet chat backend",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every log line of a request with its id and echo it back."""
    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    rid_token = request_id_var.set(request_id)
    uid_token = user_id_var.set("")
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(rid_token)
        user_id_var.reset(uid_token)
    response.headers["X-Request-ID"] = request_id
    return response


register_exception_handlers(app)

# Metered endpoints
app.include_router(chat_router, prefix=settings.api_prefix)
app.include_router(image_router, prefix=settings.api_prefix)
app.include_router(usage_router, prefix=settings.api_prefix)
# Billing
app.include_router(webhooks_router, prefix=settings.api_prefix)
app.include_router(billing_router, prefix=settings.api_prefix)
# Operators
app.include_router(admin_usage_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "name": settings.app_name,
        "status": "healthy",
    }


@app.get("/health")
async def health():
    return {"status": "ok", "scheduler": settings.enable_scheduler}
