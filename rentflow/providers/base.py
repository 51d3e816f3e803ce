"""
Provider contract - value types and the PaymentProvider base class.

Each external network (Jenga, Safaricom Daraja, COOP Bank) implements
PaymentProvider. Optional behaviour is declared in ProviderCapabilities and
must be checked by callers before use.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rentflow.errors import (
    CapabilityNotSupportedError,
    ProviderRejectedError,
    ProviderTransientError,
    RetryExhaustedError,
)
from rentflow.fsm.states import PaymentStatus, ProviderType

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """Names of the ProviderCapabilities flags."""

    PUSH_PAYMENT = "push_payment"
    B2C = "b2c"
    B2B = "b2b"
    BALANCE = "balance"
    REVERSAL = "reversal"
    WEBHOOK = "webhook"
    CSV_RECONCILIATION = "csv_reconciliation"
    BULK_SUBMISSION = "bulk_submission"


class ProviderCapabilities(BaseModel):
    """Static feature flags of a provider. Never mutated."""

    model_config = ConfigDict(frozen=True)

    push_payment: bool = False
    b2c: bool = False
    b2b: bool = False
    balance: bool = False
    reversal: bool = False
    webhook: bool = False
    csv_reconciliation: bool = False
    bulk_submission: bool = False

    def supports(self, capability: Capability) -> bool:
        return bool(getattr(self, Capability(capability).value))


class ProviderConfig(BaseModel):
    """Resolved, validated configuration of one provider."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderType
    enabled: bool = False
    sandbox: bool = True
    base_url: str = ""
    credentials: Dict[str, str] = Field(default_factory=dict)
    callback_url: str = ""
    webhook_secret: str = ""
    timeout: float = 30.0
    # Accept unsigned callbacks when no secret is configured (development only)
    allow_unsigned_callbacks: bool = False
    validation_errors: Tuple[str, ...] = ()

    def credential(self, name: str) -> str:
        return self.credentials.get(name, "")


class PaymentRequest(BaseModel):
    """One outbound collection request. Amount is never a float."""

    model_config = ConfigDict(frozen=True)

    phone_number: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    reference: str = Field(min_length=1)
    description: str = ""
    account_reference: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def reject_float(cls, value: Any) -> Any:
        if isinstance(value, float):
            raise ValueError("amount must be a Decimal or string, not float")
        return value


class PaymentResponse(BaseModel):
    """Provider answer to a send or status query."""

    model_config = ConfigDict(frozen=True)

    success: bool
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    message: str = ""
    amount: Optional[Decimal] = None
    phone_number: Optional[str] = None
    receipt_number: Optional[str] = None
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failed(cls, reference: Optional[str], message: str, **extra) -> "PaymentResponse":
        return cls(
            success=False,
            reference=reference,
            status=PaymentStatus.FAILED,
            message=message,
            failure_reason=message,
            **extra,
        )


class WebhookCallback(BaseModel):
    """Normalized inbound notification, consumed once by the reconciler."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderType
    status: PaymentStatus
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    amount: Optional[Decimal] = None
    phone_number: Optional[str] = None
    receipt_number: Optional[str] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)


class Balance(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: ProviderType
    account_number: str = ""
    currency: str = "KES"
    available: Decimal = Decimal("0.00")
    actual: Decimal = Decimal("0.00")
    # Set when the provider reports balances asynchronously
    note: Optional[str] = None


class RawCallback(BaseModel):
    """Inbound HTTP delivery exactly as received."""

    model_config = ConfigDict(frozen=True)

    body: bytes
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("headers", mode="before")
    @classmethod
    def lower_header_names(cls, value: Any) -> Any:
        if hasattr(value, "items"):
            return {str(k).lower(): str(v) for k, v in value.items()}
        return {str(k).lower(): str(v) for k, v in value}

    def header(self, *names: str) -> Optional[str]:
        """First present header among `names`."""
        for name in names:
            value = self.headers.get(name.lower())
            if value:
                return value
        return None

    def json_body(self) -> Dict[str, Any]:
        """Decode the body as a JSON object, raising ValueError otherwise."""
        data = json.loads(self.body.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("callback body is not a JSON object")
        return data


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Decimal from a vendor amount field. Floats go through str()."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


def parse_text(value: Any) -> Optional[str]:
    """String from a vendor id field, which may arrive as a JSON number."""
    if value is None or value == "":
        return None
    return str(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    # Daraja style 20260105093015
    if text.isdigit() and len(text) == 14:
        return datetime.strptime(text, "%Y%m%d%H%M%S")
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


class PaymentProvider(ABC):
    """
    Uniform interface over one vendor REST API.

    Transport failures, timeouts, 429 and 5xx raise ProviderTransientError.
    Other 4xx raise ProviderRejectedError. A business rejection inside a
    successful HTTP response is returned as PaymentResponse(success=False).
    """

    provider_type: ClassVar[ProviderType]
    capabilities: ClassVar[ProviderCapabilities]

    # Vendor status vocabulary -> PaymentStatus (keys upper-case)
    STATUS_MAP: ClassVar[Dict[str, PaymentStatus]] = {}

    # Native batch submission pacing
    BATCH_SIZE: ClassVar[int] = 5
    BATCH_DELAY: ClassVar[float] = 2.0

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.client = client
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.provider_type.value

    # =========================================================================
    # Contract
    # =========================================================================

    @abstractmethod
    async def send_payment(self, request: PaymentRequest) -> PaymentResponse:
        """Initiate one collection."""

    @abstractmethod
    async def get_status(self, transaction_id: str) -> PaymentResponse:
        """Query the provider for the current status of a transaction."""

    @abstractmethod
    def verify_callback(self, raw: RawCallback) -> bool:
        """Authenticate an inbound callback. Must not raise."""

    @abstractmethod
    def parse_callback(self, raw: RawCallback) -> WebhookCallback:
        """Normalize a verified callback."""

    @abstractmethod
    async def get_balance(self, account_number: Optional[str] = None) -> Balance:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def reverse_transaction(
        self,
        transaction_id: str,
        amount: Decimal,
        reason: str,
    ) -> PaymentResponse:
        raise CapabilityNotSupportedError(
            f"Reversal is not available through {self.provider_type.display_name}",
            provider=self.name,
        )

    def parse_reconciliation_csv(self, csv_text: str) -> list:
        raise CapabilityNotSupportedError(
            f"{self.provider_type.display_name} does not provide statement files",
            provider=self.name,
        )

    async def send_batch(
        self,
        requests: Sequence[PaymentRequest],
        retry,
    ) -> List[PaymentResponse]:
        """
        Submit requests in fixed-size sub-batches with a pause in between.

        Items inside a sub-batch run concurrently, each under `retry`
        (a RetryExecutor). Results are in input order; an exception for
        one item becomes a failed response for that item only.
        """
        if not self.capabilities.bulk_submission:
            raise CapabilityNotSupportedError(
                f"{self.provider_type.display_name} does not support batch submission",
                provider=self.name,
            )

        results: List[PaymentResponse] = []
        for start in range(0, len(requests), self.BATCH_SIZE):
            chunk = requests[start:start + self.BATCH_SIZE]
            outcomes = await asyncio.gather(
                *[
                    retry.run(
                        lambda r=request: self.send_payment(r),
                        f"{self.name} send {request.reference}",
                    )
                    for request in chunk
                ],
                return_exceptions=True,
            )
            for request, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    results.append(self.response_for_error(request.reference, outcome))
                else:
                    results.append(outcome)

            if start + self.BATCH_SIZE < len(requests):
                await self._sleep(self.BATCH_DELAY)

        return results

    # =========================================================================
    # Helpers
    # =========================================================================

    @classmethod
    def map_status(cls, vendor_status: Any) -> PaymentStatus:
        """Unknown vendor values map to pending, never to completed."""
        if vendor_status is None:
            return PaymentStatus.PENDING
        return cls.STATUS_MAP.get(str(vendor_status).strip().upper(), PaymentStatus.PENDING)

    def response_for_error(self, reference: Optional[str], error: BaseException) -> PaymentResponse:
        """Failed PaymentResponse describing a send that raised."""
        if isinstance(error, RetryExhaustedError):
            message = f"{error.last_error} (after {error.attempts} attempts)"
        else:
            message = str(error) or error.__class__.__name__
        return PaymentResponse.failed(
            reference,
            message,
            provider_data={"error": message, "error_type": error.__class__.__name__},
        )

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs,
    ) -> Dict[str, Any]:
        """Perform an HTTP call and classify failures."""
        try:
            response = await self.client.request(
                method,
                url,
                timeout=self.config.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(
                f"{self.name} request timed out: {method} {url}",
                provider=self.name,
            ) from e
        except httpx.TransportError as e:
            raise ProviderTransientError(
                f"{self.name} connection error: {e}",
                provider=self.name,
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"{self.name} API error {response.status_code}: {response.text[:200]}",
                provider=self.name,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderRejectedError(
                f"{self.name} API rejected request {response.status_code}: {response.text[:200]}",
                provider=self.name,
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderTransientError(
                f"{self.name} returned a non-JSON response",
                provider=self.name,
                status_code=response.status_code,
            ) from e
        return data if isinstance(data, dict) else {"data": data}

    def _verify_hmac(
        self,
        raw: RawCallback,
        header_names: Sequence[str],
        strip_prefix: str = "",
    ) -> bool:
        """HMAC-SHA256 hex digest of the raw body compared in constant time."""
        secret = self.config.webhook_secret
        if not secret:
            if self.config.allow_unsigned_callbacks:
                logger.warning(
                    f"No webhook secret configured for {self.name}; "
                    f"skipping signature verification (development)"
                )
                return True
            logger.warning(f"No webhook secret configured for {self.name}; rejecting callback")
            return False

        received = raw.header(*header_names)
        if not received:
            logger.warning(f"Missing {self.name} webhook signature header")
            return False
        if strip_prefix and received.startswith(strip_prefix):
            received = received[len(strip_prefix):]

        expected = hmac.new(
            secret.encode("utf-8"),
            raw.body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, received.strip())
