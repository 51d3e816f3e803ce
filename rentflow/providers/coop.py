"""
COOP Bank provider - B2C bank transfers, bulk API and CSV statements.

COOP has no push-payment and no reliable webhook delivery; settlement is
confirmed through status polling and statement (CSV) reconciliation.
"""

import csv
import io
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from rentflow.errors import ProviderError
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

ACCEPTED_SEND_STATUSES = {"SUCCESS", "SUCCESSFUL", "COMPLETED", "PENDING", "PROCESSING"}

CSV_STATUS_MAP = {
    "DR": PaymentStatus.COMPLETED,
    "DEBITED": PaymentStatus.COMPLETED,
    "SUCCESS": PaymentStatus.COMPLETED,
    "PENDING": PaymentStatus.PROCESSING,
    "FAILED": PaymentStatus.FAILED,
    "RETURNED": PaymentStatus.FAILED,
}

# Statement column -> accepted header spellings
CSV_COLUMNS = {
    "transaction_id": ("Transaction ID", "TxnId"),
    "reference": ("Reference", "Ref"),
    "amount": ("Amount",),
    "phone_number": ("Phone Number", "Mobile"),
    "status": ("Status", "State"),
    "account_number": ("Account Number", "Account"),
    "narration": ("Narration", "Description"),
    "completed_at": ("Date", "Transaction Date"),
}


class StatementLine(BaseModel):
    """One row of a COOP statement export."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    reference: Optional[str] = None
    amount: Decimal
    phone_number: Optional[str] = None
    status: PaymentStatus
    account_number: Optional[str] = None
    narration: Optional[str] = None
    completed_at: Optional[datetime] = None


def map_csv_status(value: Any) -> PaymentStatus:
    if not value:
        return PaymentStatus.PENDING
    return CSV_STATUS_MAP.get(str(value).strip().upper(), PaymentStatus.PENDING)


def parse_statement_csv(csv_text: str) -> List[StatementLine]:
    """
    Parse a statement export into StatementLines.

    Rows without a transaction id or a parseable amount are skipped.
    """
    reader = csv.DictReader(io.StringIO(csv_text.strip()))
    lines: List[StatementLine] = []

    for row_number, row in enumerate(reader, start=2):
        row = {(k or "").strip(): (v or "").strip() for k, v in row.items()}
        values: Dict[str, str] = {}
        for field, aliases in CSV_COLUMNS.items():
            values[field] = next((row[a] for a in aliases if row.get(a)), "")

        amount = parse_decimal(values["amount"].replace(",", ""))
        if not values["transaction_id"] or amount is None:
            logger.warning(f"Skipping statement row {row_number}: missing transaction id or amount")
            continue

        lines.append(StatementLine(
            transaction_id=values["transaction_id"],
            reference=values["reference"] or None,
            amount=amount,
            phone_number=values["phone_number"] or None,
            status=map_csv_status(values["status"]),
            account_number=values["account_number"] or None,
            narration=values["narration"] or None,
            completed_at=parse_datetime(values["completed_at"]),
        ))

    return lines


class CoopProvider(PaymentProvider):
    """COOP Bank API."""

    provider_type = ProviderType.COOP
    capabilities = ProviderCapabilities(
        push_payment=False,
        b2c=True,
        b2b=True,
        balance=True,
        reversal=False,
        webhook=False,
        csv_reconciliation=True,
        bulk_submission=True,
    )

    STATUS_MAP = {
        "SUCCESS": PaymentStatus.COMPLETED,
        "SUCCESSFUL": PaymentStatus.COMPLETED,
        "COMPLETED": PaymentStatus.COMPLETED,
        "PENDING": PaymentStatus.PROCESSING,
        "PROCESSING": PaymentStatus.PROCESSING,
        "FAILED": PaymentStatus.FAILED,
        "FAILURE": PaymentStatus.FAILED,
        "ERROR": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.CANCELLED,
        "CANCELED": PaymentStatus.CANCELLED,
        "REFUNDED": PaymentStatus.REFUNDED,
    }

    BATCH_SIZE = 10
    BATCH_DELAY = 1.0

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.credential('api_key')}"}

    def _response_from_item(self, item: Dict[str, Any], reference: Optional[str]) -> PaymentResponse:
        vendor_status = str(item.get("status", "")).upper()
        if vendor_status not in ACCEPTED_SEND_STATUSES:
            return PaymentResponse.failed(
                reference,
                item.get("message") or "COOP transfer rejected",
                transaction_id=item.get("transactionId"),
                provider_data=item,
            )
        return PaymentResponse(
            success=True,
            transaction_id=item.get("transactionId"),
            reference=reference,
            status=self.map_status(vendor_status),
            message=item.get("message") or "",
            provider_data={
                "coop_transaction_id": item.get("transactionId"),
                "coop_status": item.get("status"),
                "account_number": item.get("accountNumber"),
            },
        )

    # =========================================================================
    # Payments
    # =========================================================================

    async def send_payment(self, request: PaymentRequest) -> PaymentResponse:
        """B2C transfer to the tenant's mobile wallet."""
        data = await self._request(
            "POST",
            f"{self.config.base_url}/api/payments/b2c",
            json={
                "accountNumber": self.config.credential("merchant_code"),
                "beneficiaryAccount": request.phone_number,
                "amount": str(request.amount),
                "currency": "KES",
                "reference": request.reference,
                "narration": request.description,
                "callbackUrl": self.config.callback_url,
            },
            headers=self._headers(),
        )
        return self._response_from_item(data, request.reference)

    async def send_batch(self, requests: Sequence[PaymentRequest], retry) -> List[PaymentResponse]:
        """Submit through the bulk endpoint, one call per sub-batch."""
        results: List[PaymentResponse] = []

        for start in range(0, len(requests), self.BATCH_SIZE):
            chunk = list(requests[start:start + self.BATCH_SIZE])
            payload = {
                "payments": [
                    {
                        "beneficiaryAccount": r.phone_number,
                        "amount": str(r.amount),
                        "reference": r.reference,
                        "narration": r.description,
                    }
                    for r in chunk
                ],
                "callbackUrl": self.config.callback_url,
            }

            async def submit(body=payload):
                return await self._request(
                    "POST",
                    f"{self.config.base_url}/api/payments/bulk",
                    json=body,
                    headers=self._headers(),
                )

            try:
                data = await retry.run(submit, f"coop bulk {start // self.BATCH_SIZE + 1}")
            except Exception as e:
                logger.error(f"COOP bulk submission failed: {e}")
                results.extend(self.response_for_error(r.reference, e) for r in chunk)
            else:
                by_reference = {
                    item.get("reference"): item
                    for item in data.get("results") or []
                    if isinstance(item, dict)
                }
                for r in chunk:
                    item = by_reference.get(r.reference)
                    if item is None:
                        results.append(PaymentResponse.failed(r.reference, "No result returned for item"))
                    else:
                        results.append(self._response_from_item(item, r.reference))

            if start + self.BATCH_SIZE < len(requests):
                await self._sleep(self.BATCH_DELAY)

        return results

    async def get_status(self, transaction_id: str) -> PaymentResponse:
        data = await self._request(
            "GET",
            f"{self.config.base_url}/api/payments/{transaction_id}",
            headers=self._headers(),
        )
        return PaymentResponse(
            success=True,
            transaction_id=transaction_id,
            reference=parse_text(data.get("reference")),
            status=self.map_status(data.get("status")),
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
            f"{self.config.base_url}/api/accounts/{account}/balance",
            headers=self._headers(),
        )
        return Balance(
            provider=self.provider_type,
            account_number=account,
            currency=data.get("currency") or "KES",
            available=parse_decimal(data.get("availableBalance")) or 0,
            actual=parse_decimal(data.get("currentBalance")) or 0,
        )

    async def health_check(self) -> bool:
        try:
            await self._request(
                "GET",
                f"{self.config.base_url}/api/health",
                headers=self._headers(),
            )
            return True
        except ProviderError as e:
            logger.warning(f"COOP health check failed: {e}")
            return False

    # =========================================================================
    # Callbacks and statements
    # =========================================================================

    def verify_callback(self, raw: RawCallback) -> bool:
        try:
            data = raw.json_body()
        except ValueError:
            return False
        if not (data.get("transactionId") and data.get("status")):
            return False
        return self._verify_hmac(raw, ["X-COOP-Signature", "Authorization"], strip_prefix="sha256=")

    def parse_callback(self, raw: RawCallback) -> WebhookCallback:
        data = raw.json_body()
        return WebhookCallback(
            provider=self.provider_type,
            status=self.map_status(data.get("status")),
            transaction_id=parse_text(data.get("transactionId")),
            reference=parse_text(data.get("reference")),
            amount=parse_decimal(data.get("amount")),
            phone_number=data.get("phoneNumber"),
            receipt_number=data.get("receiptNumber"),
            completed_at=parse_datetime(data.get("completedAt")),
            failure_reason=data.get("failureReason"),
            raw_payload=data,
        )

    def parse_reconciliation_csv(self, csv_text: str) -> List[StatementLine]:
        return parse_statement_csv(csv_text)
