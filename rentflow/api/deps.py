from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from redis.asyncio.client import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from rentflow.config import settings
from rentflow.database import get_db
from rentflow.providers.registry import ProviderRegistry
from rentflow.redis import get_redis
from rentflow.services.batch_service import BatchPaymentService
from rentflow.services.reconciliation_service import ReconciliationService
from rentflow.services.retry import RetryExecutor
from rentflow.services.sms_service import SmsService
from rentflow.services.webhook_service import WebhookService


async def get_admin_user(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> str:
    """
    Validate the Admin Key header.
    Returns the key if valid, raises 401 otherwise.
    """
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin key",
        )

    valid_key = settings.admin_api_key
    if not valid_key or x_admin_key != valid_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )

    return x_admin_key


# Startup-built collaborators live on app.state (see rentflow.main.lifespan)

def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_retry_executor(request: Request) -> RetryExecutor:
    return request.app.state.retry


def get_sms_service(request: Request) -> SmsService:
    return request.app.state.sms


async def get_webhook_service(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    sms: SmsService = Depends(get_sms_service),
    redis: Redis = Depends(get_redis),
) -> WebhookService:
    return WebhookService(db, registry, sms=sms, redis=redis)


async def get_batch_service(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    retry: RetryExecutor = Depends(get_retry_executor),
    sms: SmsService = Depends(get_sms_service),
) -> BatchPaymentService:
    return BatchPaymentService(db, registry, retry, sms=sms)


async def get_reconciliation_service(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    sms: SmsService = Depends(get_sms_service),
) -> ReconciliationService:
    return ReconciliationService(db, registry, sms=sms)
