"""
Admin Batch Endpoints.
Trigger rent collection, inspect batches, retry failures, refresh pending
items and audit tenant phone numbers before a run.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from rentflow.api.deps import get_admin_user, get_batch_service
from rentflow.errors import BatchNotFoundError, BatchStateError, ProviderNotAvailableError
from rentflow.fsm.states import ProviderType
from rentflow.services.batch_service import BatchPaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


class RentCollectionRequest(BaseModel):
    """Request body for triggering a rent collection batch."""
    month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    provider: Optional[ProviderType] = None
    test_mode: Optional[bool] = None
    include_tenant_ids: Optional[List[uuid.UUID]] = None
    exclude_tenant_ids: Optional[List[uuid.UUID]] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    due_date: Optional[date] = None


def batch_response(summary: dict) -> dict:
    return {
        "status": "success",
        "batch_id": summary.get("batch_id"),
        "batch_status": summary.get("status"),
        "provider": summary.get("provider"),
        "test_mode": summary.get("test_mode"),
        "total_payments": summary.get("total_payments", 0),
        "successful_payments": summary.get("successful_payments", 0),
        "failed_payments": summary.get("failed_payments", 0),
        "pending_payments": summary.get("pending_payments", 0),
        "completion_percentage": summary.get("completion_percentage", 0.0),
        "error_message": summary.get("error_message") or summary.get("message"),
        "results": summary.get("results", []),
    }


@router.post("/batches/rent-collection")
async def trigger_rent_collection(
    request: RentCollectionRequest,
    service: BatchPaymentService = Depends(get_batch_service),
    _: str = Depends(get_admin_user),
):
    """
    Run monthly rent collection now.

    Runs synchronously and returns the batch summary. Items still
    awaiting provider confirmation are reported as pending.
    """
    try:
        summary = await service.run_monthly_rent_collection(
            month=request.month,
            provider=request.provider.value if request.provider else None,
            test_mode=request.test_mode,
            include_tenant_ids=request.include_tenant_ids,
            exclude_tenant_ids=request.exclude_tenant_ids,
            min_amount=request.min_amount,
            max_amount=request.max_amount,
            due_date=request.due_date,
        )
        logger.info(f"Rent collection triggered: {summary['batch_id']} ({summary['status']})")
        return batch_response(summary)

    except BatchStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Rent collection failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/tenants/phone-audit")
async def audit_tenant_phones(
    service: BatchPaymentService = Depends(get_batch_service),
    _: str = Depends(get_admin_user),
):
    """Active tenants whose phone numbers would fail at dispatch."""
    report = await service.audit_tenant_phones()
    return {"status": "success", **report}


@router.get("/batches/{batch_id}")
async def get_batch_status(
    batch_id: str,
    service: BatchPaymentService = Depends(get_batch_service),
    _: str = Depends(get_admin_user),
):
    """Batch status, counters, completion percentage and its payments."""
    try:
        summary = await service.get_batch_status(batch_id)
        return {"status": "success", "batch": summary}
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")


@router.post("/batches/{batch_id}/retry")
async def retry_failed_payments(
    batch_id: str,
    service: BatchPaymentService = Depends(get_batch_service),
    _: str = Depends(get_admin_user),
):
    """Resubmit the failed items of a batch as a new high-priority batch."""
    try:
        summary = await service.retry_failed_payments(batch_id)
        return batch_response(summary)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    except BatchStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Batch retry failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/batches/{batch_id}/refresh")
async def refresh_pending_payments(
    batch_id: str,
    service: BatchPaymentService = Depends(get_batch_service),
    _: str = Depends(get_admin_user),
):
    """Poll the provider for every pending payment of a batch."""
    try:
        result = await service.refresh_pending(batch_id)
        return {"status": "success", **result}
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    except ProviderNotAvailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
