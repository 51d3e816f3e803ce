"""
Admin Provider Endpoints.
Provider configuration, health, balances, live transaction status,
reversals and statement reconciliation.
"""

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field

from rentflow.api.deps import get_admin_user, get_registry, get_reconciliation_service, get_retry_executor
from rentflow.errors import (
    CapabilityNotSupportedError,
    ProviderError,
    ProviderNotAvailableError,
    RetryExhaustedError,
)
from rentflow.providers.base import Capability
from rentflow.providers.registry import ProviderRegistry
from rentflow.services.reconciliation_service import ReconciliationService
from rentflow.services.retry import RetryExecutor

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/providers")
async def list_providers(
    registry: ProviderRegistry = Depends(get_registry),
    _: str = Depends(get_admin_user),
):
    """Capabilities and configuration status of every provider."""
    try:
        default = registry.default_provider().name
    except ProviderNotAvailableError:
        default = None

    return {
        "status": "success",
        "default_provider": default,
        "available": [p.value for p in registry.available()],
        "providers": registry.statuses(),
    }


@router.get("/providers/health")
async def providers_health(
    registry: ProviderRegistry = Depends(get_registry),
    _: str = Depends(get_admin_user),
):
    health = await registry.health()
    return {
        "status": "success",
        "healthy": all(health.values()) if health else False,
        "providers": health,
    }


@router.get("/providers/{provider}/balance")
async def provider_balance(
    provider: str,
    registry: ProviderRegistry = Depends(get_registry),
    retry: RetryExecutor = Depends(get_retry_executor),
    _: str = Depends(get_admin_user),
):
    try:
        adapter = registry.get(provider)
        if not adapter.capabilities.supports(Capability.BALANCE):
            raise CapabilityNotSupportedError(f"{provider} does not support balance queries")
        balance = await retry.run(adapter.get_balance, f"{adapter.name} balance")
        return {"status": "success", "balance": balance.model_dump(mode="json")}

    except ProviderNotAvailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except CapabilityNotSupportedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ProviderError, RetryExhaustedError) as e:
        logger.error(f"Balance query for {provider} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/payments/{provider}/{transaction_id}/status")
async def payment_status(
    provider: str,
    transaction_id: str,
    registry: ProviderRegistry = Depends(get_registry),
    retry: RetryExecutor = Depends(get_retry_executor),
    _: str = Depends(get_admin_user),
):
    """Live status of one transaction, straight from the provider."""
    try:
        adapter = registry.get(provider)
        response = await retry.run(
            lambda: adapter.get_status(transaction_id),
            f"{adapter.name} status {transaction_id}",
        )
        return {"status": "success", "payment": response.model_dump(mode="json")}

    except ProviderNotAvailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (ProviderError, RetryExhaustedError) as e:
        logger.error(f"Status query {provider}/{transaction_id} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


class ReversalRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=100)


@router.post("/payments/{provider}/{transaction_id}/reverse")
async def reverse_payment(
    provider: str,
    transaction_id: str,
    request: ReversalRequest,
    registry: ProviderRegistry = Depends(get_registry),
    _: str = Depends(get_admin_user),
):
    """
    Ask the provider to reverse a completed transaction.

    Sent once and never retried.
    """
    try:
        adapter = registry.get(provider)
        if not adapter.capabilities.supports(Capability.REVERSAL):
            raise CapabilityNotSupportedError(f"{provider} does not support reversals")
        response = await adapter.reverse_transaction(transaction_id, request.amount, request.reason)
        logger.info(f"Reversal of {provider}/{transaction_id} requested: {response.message}")
        return {
            "status": "success" if response.success else "failed",
            "reversal": response.model_dump(mode="json"),
        }

    except ProviderNotAvailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except CapabilityNotSupportedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        logger.error(f"Reversal of {provider}/{transaction_id} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/reconciliation/{provider}/csv")
async def upload_reconciliation_csv(
    provider: str,
    file: UploadFile = File(...),
    service: ReconciliationService = Depends(get_reconciliation_service),
    _: str = Depends(get_admin_user),
):
    """Import a provider statement export and match it to payments."""
    try:
        content = await file.read()
        report = await service.import_csv(provider, content.decode("utf-8-sig"))
        return {"status": "success", "report": report}

    except ProviderNotAvailableError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CapabilityNotSupportedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Statement must be UTF-8 CSV")
    except Exception as e:
        logger.error(f"Reconciliation import failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
