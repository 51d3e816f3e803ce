"""
FastAPI application entry point.
Configures routes, middleware, and lifecycle events.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rentflow.config import settings
from rentflow.database import init_db, close_db
from rentflow.logging_config import configure_logging
from rentflow.providers.registry import ProviderRegistry
from rentflow.redis import close_redis, get_redis_client
from rentflow.services.retry import RetryExecutor, RetryPolicy
from rentflow.services.sms_service import SmsService

from rentflow.api.webhooks.payments import router as payments_webhook_router
from rentflow.api.admin.batches import router as batches_router
from rentflow.api.admin.providers import router as providers_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    # Startup
    configure_logging()
    logging.info("Starting up RentFlow...")

    await init_db()

    # Initialize Redis
    try:
        get_redis_client()
    except Exception as e:
        logging.warning(f"Failed to initialize Redis: {e}")

    # One shared HTTP client and one adapter per provider for the process
    http_client = httpx.AsyncClient()
    app.state.registry = ProviderRegistry.from_settings(settings, http_client)
    app.state.retry = RetryExecutor(RetryPolicy.from_settings(settings))
    app.state.sms = SmsService(settings, client=http_client)

    yield

    # Shutdown
    await http_client.aclose()
    await close_redis()
    await close_db()
    logging.info("Shutting down...")


app = FastAPI(
    title="RentFlow",
    description="Rent collection and payment provider orchestration",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logging.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal Server Error"},
    )

# CORS middleware
origins = [settings.base_url]
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
    }


# Register webhook routes
app.include_router(
    payments_webhook_router,
    prefix="/webhooks",
    tags=["webhooks"],
)

# Register admin routes
app.include_router(
    batches_router,
    prefix="/admin",
    tags=["admin"],
)
app.include_router(
    providers_router,
    prefix="/admin",
    tags=["admin"],
)
