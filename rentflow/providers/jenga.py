"""
Jenga (Equity Bank) provider - mobile money remittance through JengaHQ.
"""

import asyncio
import logging
import time
from datetime import date
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
    parse_text,
)

logger = logging.getLogger(__name__)

# Refresh the token this many seconds before Jenga says it expires
TOKEN_EXPIRY_BUFFER = 300

ACCEPTED_SEND_STATUSES = {"SUCCESS", "COMPLETED", "PENDING", "PROCESSING"}


class JengaProvider(PaymentProvider):
    """Equity Bank JengaHQ remittance API."""

    provider_type = ProviderType.JENGA
    capabilities = ProviderCapabilities(
        push_payment=True,
        b2c=True,
        b2b=True,
        balance=True,
        reversal=False,
        webhook=True,
        csv_reconciliation=False,
        bulk_submission=True,
    )

    STATUS_MAP = {
        "SUCCESS": PaymentStatus.COMPLETED,
        "COMPLETED": PaymentStatus.COMPLETED,
        "PENDING": PaymentStatus.PROCESSING,
        "PROCESSING": PaymentStatus.PROCESSING,
        "FAILED": PaymentStatus.FAILED,
        "ERROR": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.CANCELLED,
        "REFUNDED": PaymentStatus.REFUNDED,
    }

    BATCH_SIZE = 5
    BATCH_DELAY = 2.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    # =========================================================================
    # Auth
    # =========================================================================

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            data = await self._request(
                "POST",
                f"{self.config.base_url}/identity-sandbox/v2/token",
                json={
                    "merchantCode": self.config.credential("merchant_code"),
                    "consumerSecret": self.config.credential("consumer_secret"),
                },
                headers={"Api-Key": self.config.credential("api_key")},
            )
            token = data.get("access_token")
            if not token:
                raise ProviderRejectedError("Jenga did not return an access token", provider=self.name)

            expires_in = int(data.get("expires_in", 3600))
            self._access_token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_BUFFER, 0)
            logger.debug("Jenga access token refreshed")
            return token

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Api-Key": self.config.credential("api_key"),
        }

    # =========================================================================
    # Payments
    # =========================================================================

    async def send_payment(self, request: PaymentRequest) -> PaymentResponse:
        payload = {
            "source": {
                "accountNumber": self.config.credential("merchant_code"),
                "countryCode": "KE",
            },
            "destination": {
                "type": "mobile",
                "countryCode": "KE",
                "name": "Tenant Payment",
                "mobileNumber": request.phone_number,
            },
            "transfer": {
                "type": "MobileMoneyTransfer",
                "amount": str(request.amount),
                "currencyCode": "KES",
                "reference": request.reference,
                "date": date.today().isoformat(),
                "description": request.description,
                "callbackUrl": self.config.callback_url,
            },
        }

        data = await self._request(
            "POST",
            f"{self.config.base_url}/send-money-sandbox/v2/remittance",
            json=payload,
            headers=await self._auth_headers(),
        )

        vendor_status = str(data.get("status", "")).upper()
        provider_data = {
            "jenga_transaction_id": data.get("transactionId"),
            "jenga_status": data.get("status"),
            "jenga_message": data.get("message"),
        }

        if vendor_status not in ACCEPTED_SEND_STATUSES:
            logger.warning(f"Jenga rejected {request.reference}: {data.get('message')}")
            return PaymentResponse.failed(
                request.reference,
                data.get("message") or "Jenga remittance rejected",
                transaction_id=data.get("transactionId"),
                provider_data=provider_data,
            )

        return PaymentResponse(
            success=True,
            transaction_id=data.get("transactionId"),
            reference=request.reference,
            status=self.map_status(vendor_status),
            message=data.get("message") or "",
            provider_data=provider_data,
        )

    async def get_status(self, transaction_id: str) -> PaymentResponse:
        data = await self._request(
            "GET",
            f"{self.config.base_url}/send-money-sandbox/v2/remittance/status/{transaction_id}",
            headers=await self._auth_headers(),
        )
        status = self.map_status(data.get("status"))
        return PaymentResponse(
            success=True,
            transaction_id=transaction_id,
            reference=parse_text(data.get("reference")),
            status=status,
            message=data.get("message") or "",
            amount=parse_decimal(data.get("amount")),
            phone_number=parse_text(data.get("phoneNumber")),
            receipt_number=parse_text(data.get("receiptNumber")),
            completed_at=parse_datetime(data.get("completedAt")),
            failure_reason=parse_text(data.get("failureReason")),
            provider_data=data,
        )

    async def get_balance(self, account_number: Optional[str] = None) -> Balance:
        account = account_number or self.config.credential("merchant_code")
        data = await self._request(
            "GET",
            f"{self.config.base_url}/account-sandbox/v2/accounts/balances/KE/{account}",
            headers=await self._auth_headers(),
        )
        balances: Dict[str, Any] = data.get("balances") or {}
        return Balance(
            provider=self.provider_type,
            account_number=data.get("accountNumber") or account,
            currency=data.get("currency") or "KES",
            available=parse_decimal(balances.get("available")) or 0,
            actual=parse_decimal(balances.get("actual")) or 0,
        )

    async def health_check(self) -> bool:
        try:
            await self._get_access_token()
            return True
        except ProviderError as e:
            logger.warning(f"Jenga health check failed: {e}")
            return False

    # =========================================================================
    # Callbacks
    # =========================================================================

    def verify_callback(self, raw: RawCallback) -> bool:
        try:
            raw.json_body()
        except ValueError:
            logger.warning("Jenga callback body is not valid JSON")
            return False
        return self._verify_hmac(raw, ["X-Jenga-Signature", "X-Signature"])

    def parse_callback(self, raw: RawCallback) -> WebhookCallback:
        data = raw.json_body()
        status = self.map_status(data.get("status"))
        return WebhookCallback(
            provider=self.provider_type,
            status=status,
            transaction_id=parse_text(data.get("transactionId")),
            reference=parse_text(data.get("reference")),
            amount=parse_decimal(data.get("amount")),
            phone_number=data.get("phoneNumber"),
            receipt_number=data.get("receiptNumber"),
            completed_at=parse_datetime(data.get("completedAt")),
            failure_reason=data.get("failureReason"),
            raw_payload=data,
        )
