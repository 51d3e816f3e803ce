"""
Safaricom Daraja provider - M-Pesa STK push (Lipa Na M-Pesa Online).
"""

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP
from typing import Any, Dict, Optional

from rentflow.errors import ProviderError, ProviderRejectedError
from rentflow.fsm.states import PaymentStatus, ProviderType
from rentflow.providers.base import (
    Balance,
    PaymentProvider,
    PaymentRequest,
    PaymentResponse,
    ProviderCapabilities,
    RawCallback,
    WebhookCallback,
    parse_datetime,
    parse_decimal,
)

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER = 60

# Daraja result codes
RESULT_SUCCESS = 0
RESULT_CANCELLED_BY_USER = 1032


def map_result_code(result_code: Any) -> PaymentStatus:
    """0 -> completed, 1032 -> cancelled, anything else -> failed."""
    if result_code is None or result_code == "":
        return PaymentStatus.PENDING
    try:
        code = int(result_code)
    except (TypeError, ValueError):
        return PaymentStatus.PENDING
    if code == RESULT_SUCCESS:
        return PaymentStatus.COMPLETED
    if code == RESULT_CANCELLED_BY_USER:
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


class SafaricomProvider(PaymentProvider):
    """Safaricom Daraja API."""

    provider_type = ProviderType.SAFARICOM
    capabilities = ProviderCapabilities(
        push_payment=True,
        b2c=True,
        b2b=True,
        balance=True,
        reversal=True,
        webhook=True,
        csv_reconciliation=False,
        bulk_submission=True,
    )

    # Smaller sub-batches and a longer pause: Daraja throttles STK pushes
    BATCH_SIZE = 3
    BATCH_DELAY = 5.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def map_status(cls, vendor_status: Any) -> PaymentStatus:
        return map_result_code(vendor_status)

    @property
    def short_code(self) -> str:
        return self.config.credential("short_code")

    # =========================================================================
    # Auth
    # =========================================================================

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            basic = base64.b64encode(
                f"{self.config.credential('consumer_key')}:"
                f"{self.config.credential('consumer_secret')}".encode()
            ).decode()
            data = await self._request(
                "GET",
                f"{self.config.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {basic}"},
            )
            token = data.get("access_token")
            if not token:
                raise ProviderRejectedError(
                    "Safaricom did not return an access token",
                    provider=self.name,
                )

            expires_in = int(data.get("expires_in", 3599))
            self._access_token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_BUFFER, 0)
            logger.debug("Safaricom access token refreshed")
            return token

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._get_access_token()
        return {"Authorization": f"Bearer {token}"}

    def _password(self, timestamp: str) -> str:
        """base64(short code + passkey + timestamp)"""
        raw = f"{self.short_code}{self.config.credential('passkey')}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    @staticmethod
    def _timestamp() -> str:
        return datetime.now().strftime("%Y%m%d%H%M%S")

    # =========================================================================
    # Payments
    # =========================================================================

    async def send_payment(self, request: PaymentRequest) -> PaymentResponse:
        timestamp = self._timestamp()
        # STK push only takes whole shillings
        amount = int(request.amount.to_integral_value(rounding=ROUND_HALF_UP))
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": request.phone_number,
            "PartyB": self.short_code,
            "PhoneNumber": request.phone_number,
            "CallBackURL": self.config.callback_url,
            "AccountReference": (request.account_reference or request.reference)[:12],
            "TransactionDesc": (request.description or request.reference)[:13],
        }

        data = await self._request(
            "POST",
            f"{self.config.base_url}/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers=await self._auth_headers(),
        )

        provider_data = {
            "merchant_request_id": data.get("MerchantRequestID"),
            "checkout_request_id": data.get("CheckoutRequestID"),
            "response_code": data.get("ResponseCode"),
            "response_description": data.get("ResponseDescription"),
        }

        if str(data.get("ResponseCode")) != "0":
            message = data.get("ResponseDescription") or data.get("errorMessage") or "STK push failed"
            logger.warning(f"Safaricom rejected STK push {request.reference}: {message}")
            return PaymentResponse.failed(request.reference, message, provider_data=provider_data)

        return PaymentResponse(
            success=True,
            transaction_id=data.get("CheckoutRequestID"),
            reference=request.reference,
            status=PaymentStatus.PROCESSING,
            message=data.get("CustomerMessage") or "",
            checkout_request_id=data.get("CheckoutRequestID"),
            merchant_request_id=data.get("MerchantRequestID"),
            provider_data=provider_data,
        )

    async def get_status(self, transaction_id: str) -> PaymentResponse:
        """STK push query by CheckoutRequestID."""
        timestamp = self._timestamp()
        data = await self._request(
            "POST",
            f"{self.config.base_url}/mpesa/stkpushquery/v1/query",
            json={
                "BusinessShortCode": self.short_code,
                "Password": self._password(timestamp),
                "Timestamp": timestamp,
                "CheckoutRequestID": transaction_id,
            },
            headers=await self._auth_headers(),
        )
        status = map_result_code(data.get("ResultCode"))
        return PaymentResponse(
            success=True,
            transaction_id=transaction_id,
            reference=data.get("AccountReference"),
            status=status,
            message=data.get("ResultDesc") or "",
            amount=parse_decimal(data.get("Amount")),
            phone_number=data.get("PhoneNumber"),
            checkout_request_id=transaction_id,
            merchant_request_id=data.get("MerchantRequestID"),
            completed_at=parse_datetime(data.get("TransactionDate")),
            failure_reason=data.get("ResultDesc") if status.is_terminal and status != PaymentStatus.COMPLETED else None,
            provider_data=data,
        )

    async def get_balance(self, account_number: Optional[str] = None) -> Balance:
        """
        Request an account balance.

        Daraja answers asynchronously on the result URL, so the returned
        figures are placeholders.
        """
        await self._request(
            "POST",
            f"{self.config.base_url}/mpesa/accountbalance/v1/query",
            json={
                "Initiator": self.config.credential("initiator_name"),
                "SecurityCredential": self.config.credential("security_credential"),
                "CommandID": "AccountBalance",
                "PartyA": self.short_code,
                "IdentifierType": "4",
                "Remarks": "Account balance inquiry",
                "QueueTimeOutURL": f"{self.config.callback_url}/timeout",
                "ResultURL": f"{self.config.callback_url}/result",
            },
            headers=await self._auth_headers(),
        )
        return Balance(
            provider=self.provider_type,
            account_number=account_number or self.short_code,
            note="Balance is delivered asynchronously to the result URL",
        )

    async def reverse_transaction(self, transaction_id, amount, reason) -> PaymentResponse:
        """Reverse a completed M-Pesa transaction by receipt number."""
        data = await self._request(
            "POST",
            f"{self.config.base_url}/mpesa/reversal/v1/request",
            json={
                "Initiator": self.config.credential("initiator_name"),
                "SecurityCredential": self.config.credential("security_credential"),
                "CommandID": "TransactionReversal",
                "TransactionID": transaction_id,
                "Amount": int(amount.to_integral_value(rounding=ROUND_HALF_UP)),
                "ReceiverParty": self.short_code,
                "RecieverIdentifierType": "11",
                "ResultURL": f"{self.config.callback_url}/result",
                "QueueTimeOutURL": f"{self.config.callback_url}/timeout",
                "Remarks": reason[:100] or "Reversal",
                "Occasion": "",
            },
            headers=await self._auth_headers(),
        )
        if str(data.get("ResponseCode")) != "0":
            return PaymentResponse.failed(
                None,
                data.get("ResponseDescription") or "Reversal rejected",
                transaction_id=transaction_id,
                provider_data=data,
            )
        return PaymentResponse(
            success=True,
            transaction_id=data.get("ConversationID") or transaction_id,
            status=PaymentStatus.PROCESSING,
            message=data.get("ResponseDescription") or "",
            provider_data=data,
        )

    async def health_check(self) -> bool:
        try:
            await self._get_access_token()
            return True
        except ProviderError as e:
            logger.warning(f"Safaricom health check failed: {e}")
            return False

    # =========================================================================
    # Callbacks
    # =========================================================================

    def verify_callback(self, raw: RawCallback) -> bool:
        """
        Daraja does not sign callbacks. Accept only a well-formed stkCallback
        carrying both request ids and an integer ResultCode.
        """
        try:
            data = raw.json_body()
        except ValueError:
            return False

        body = data.get("Body")
        if not isinstance(body, dict):
            return False
        stk = body.get("stkCallback")
        if not isinstance(stk, dict):
            return False

        result_code = stk.get("ResultCode")
        return bool(
            stk.get("MerchantRequestID")
            and stk.get("CheckoutRequestID")
            and isinstance(result_code, int)
            and not isinstance(result_code, bool)
        )

    def parse_callback(self, raw: RawCallback) -> WebhookCallback:
        stk = raw.json_body()["Body"]["stkCallback"]

        items: Dict[str, Any] = {}
        metadata = stk.get("CallbackMetadata") or {}
        for item in metadata.get("Item") or []:
            if isinstance(item, dict) and "Name" in item:
                items[item["Name"]] = item.get("Value")

        result_code = stk.get("ResultCode")
        status = map_result_code(result_code)
        phone = items.get("PhoneNumber")

        return WebhookCallback(
            provider=self.provider_type,
            status=status,
            transaction_id=stk.get("CheckoutRequestID"),
            # The STK callback does not echo our reference
            reference=None,
            amount=parse_decimal(items.get("Amount")),
            phone_number=str(phone) if phone is not None else None,
            receipt_number=items.get("MpesaReceiptNumber"),
            completed_at=parse_datetime(items.get("TransactionDate")) or datetime.now(timezone.utc),
            failure_reason=stk.get("ResultDesc") if result_code != RESULT_SUCCESS else None,
            raw_payload=stk,
        )
