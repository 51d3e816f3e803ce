"""
Rent Collection Worker.
Runs the monthly collection and polls open batches.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Optional
from zoneinfo import ZoneInfo

import httpx

from rentflow.config import settings
from rentflow.database import get_db_context
from rentflow.providers.registry import ProviderRegistry
from rentflow.services.batch_service import BatchPaymentService
from rentflow.services.retry import RetryExecutor, RetryPolicy
from rentflow.services.sms_service import SmsService
from rentflow.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@asynccontextmanager
async def batch_service() -> AsyncGenerator[BatchPaymentService, None]:
    """Collaborators for one task run, torn down afterwards."""
    async with httpx.AsyncClient() as client:
        registry = ProviderRegistry.from_settings(settings, client)
        retry = RetryExecutor(RetryPolicy.from_settings(settings))
        sms = SmsService(settings, client=client)
        async with get_db_context() as db:
            yield BatchPaymentService(db, registry, retry, sms=sms)


def current_month() -> str:
    return datetime.now(ZoneInfo(settings.rent_timezone)).strftime("%Y-%m")


@celery_app.task(bind=True, max_retries=3)
def run_monthly_rent_collection(self, month: Optional[str] = None, provider: Optional[str] = None):
    """
    Celery task for monthly rent collection.
    
    Runs on the configured day and hour. Skips the month when a live
    batch already exists, so a retried task never charges twice.
    """
    month = month or current_month()
    try:
        result = asyncio.run(_run_collection(month, provider))
        logger.info(f"Monthly rent collection for {month}: {result}")
        return result
    except Exception as e:
        logger.error(f"Monthly rent collection for {month} failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


async def _run_collection(month: str, provider: Optional[str]) -> dict:
    async with batch_service() as service:
        existing = await service.existing_collection_for(month)
        if existing:
            logger.info(f"Rent collection for {month} already ran as {existing.batch_id}; skipping")
            return {"skipped": True, "batch_id": existing.batch_id}
        
        summary = await service.run_monthly_rent_collection(month=month, provider=provider)
        return {
            "batch_id": summary["batch_id"],
            "status": summary["status"],
            "successful": summary["successful_payments"],
            "failed": summary["failed_payments"],
            "pending": summary["pending_payments"],
        }


@celery_app.task(bind=True)
def refresh_batch(self, batch_id: str):
    """Poll the provider for the pending payments of one batch."""
    try:
        result = asyncio.run(_refresh(batch_id))
        logger.info(f"Refreshed batch {batch_id}: {result}")
        return result
    except Exception as e:
        logger.error(f"Failed to refresh batch {batch_id}: {e}")
        raise


async def _refresh(batch_id: str) -> dict:
    async with batch_service() as service:
        result = await service.refresh_pending(batch_id)
        return {"checked": result["checked"], "updated": result["updated"]}


@celery_app.task
def refresh_open_batches():
    """Queue a refresh for every batch still in processing."""
    batch_ids = asyncio.run(_open_batches())
    for batch_id in batch_ids:
        refresh_batch.delay(batch_id)
    logger.info(f"Queued refresh for {len(batch_ids)} open batches")
    return {"queued": len(batch_ids)}


async def _open_batches() -> list:
    async with batch_service() as service:
        return await service.open_batch_ids()
