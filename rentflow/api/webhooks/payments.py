"""
Payment Provider Webhook Handler.
Verifies callbacks and reconciles them into the ledger.

Each provider gets its own acknowledgement envelope:
- Safaricom: always HTTP 200 with {ResultCode, ResultDesc}, so Daraja
  does not keep redelivering.
- Jenga, COOP: {success, message} with 200 / 400 / 401 / 500.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from rentflow.api.deps import get_webhook_service
from rentflow.errors import ProviderNotAvailableError, WebhookVerificationError
from rentflow.fsm.states import ProviderType
from rentflow.providers.base import RawCallback
from rentflow.services.webhook_service import ReconcileResult, WebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


def safaricom_ack(accepted: bool, description: str, transaction_id: Optional[str] = None) -> JSONResponse:
    content = {"ResultCode": 0 if accepted else 1, "ResultDesc": description}
    if accepted and transaction_id:
        content["ThirdPartyTransID"] = transaction_id
    return JSONResponse(status_code=200, content=content)


def generic_ack(status_code: int, success: bool, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": success, "message": message, **extra},
    )


@router.post("/{provider}")
async def payment_webhook(
    provider: str,
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """Handle a payment status callback from `provider`."""
    is_safaricom = provider == ProviderType.SAFARICOM.value
    body = await request.body()
    raw = RawCallback(body=body, headers=request.headers)
    client_host = request.client.host if request.client else None

    logger.info(f"{provider} webhook received ({len(body)} bytes)")

    try:
        result: ReconcileResult = await service.process_callback(provider, raw, client_host=client_host)

    except ProviderNotAvailableError:
        return generic_ack(400, False, f"Invalid or unknown provider: {provider}")

    except WebhookVerificationError as e:
        if is_safaricom:
            return safaricom_ack(False, "Callback verification failed")
        return generic_ack(401, False, str(e))

    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Malformed {provider} callback: {e}", exc_info=True)
        if is_safaricom:
            return safaricom_ack(False, "Malformed callback")
        return generic_ack(400, False, "Malformed callback payload")

    except Exception as e:
        logger.error(f"Error processing {provider} webhook: {e}", exc_info=True)
        if is_safaricom:
            return safaricom_ack(False, "Internal error")
        return generic_ack(500, False, "Internal error")

    logger.info(f"{provider} webhook {result.outcome}: {result.reference} -> {result.status}")

    if is_safaricom:
        return safaricom_ack(True, "Accepted", result.transaction_id)

    return generic_ack(
        200,
        True,
        result.message,
        outcome=result.outcome,
        reference=result.reference,
        status=result.status.value if result.status else None,
    )
