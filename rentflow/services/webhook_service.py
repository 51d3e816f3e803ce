"""
Webhook Service - verifies provider callbacks and reconciles them into the ledger.

Flow:
1. Verify (signature or structure). Failure -> no state mutation.
2. Drop exact duplicate deliveries (Redis fast path, best-effort).
3. Parse into a WebhookCallback.
4. Match by transaction id, then reference, then amount + phone.
5. Apply through LedgerService (compare-and-set), or create an orphan.
6. Commit, then send the SMS receipt on a transition into completed.
"""

import hashlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from redis.asyncio.client import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from rentflow.errors import PhoneValidationError, WebhookVerificationError
from rentflow.fsm.states import PaymentStatus
from rentflow.models.payment import Payment
from rentflow.models.tenant import Room
from rentflow.providers.base import PaymentProvider, RawCallback, WebhookCallback
from rentflow.providers.registry import ProviderRegistry
from rentflow.services.ledger_service import LedgerService
from rentflow.services.phone_service import normalize_phone
from rentflow.services.sms_service import SmsService

logger = logging.getLogger(__name__)

DEDUP_TTL_SECONDS = 24 * 60 * 60


class ReconcileResult(BaseModel):
    """What happened to one callback."""

    # applied | ignored | orphan | duplicate
    outcome: str
    payment_id: Optional[str] = None
    reference: Optional[str] = None
    status: Optional[PaymentStatus] = None
    transaction_id: Optional[str] = None
    message: str = ""


class WebhookService:
    """Service for reconciling inbound payment callbacks."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ProviderRegistry,
        sms: Optional[SmsService] = None,
        redis: Optional[Redis] = None,
    ):
        self.db = db
        self.registry = registry
        self.sms = sms
        self.redis = redis
        self.ledger = LedgerService(db)

    async def process_callback(
        self,
        provider_name: str,
        raw: RawCallback,
        client_host: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Verify and reconcile one delivery.

        Raises:
            ProviderNotAvailableError: unknown provider in the route
            WebhookVerificationError: signature/structure check failed
        """
        provider = self.registry.adapter(provider_name)

        if not self._verify(provider, raw):
            logger.warning(
                f"SECURITY: rejected {provider.name} callback "
                f"from {client_host or 'unknown'} "
                f"(user-agent: {raw.header('user-agent') or 'unknown'})"
            )
            raise WebhookVerificationError(
                f"{provider.provider_type.display_name} callback verification failed",
                provider=provider.name,
                reason="verification_failed",
            )

        dedup_key = self._dedup_key(provider, raw)
        if not await self._claim_delivery(dedup_key):
            logger.info(f"Duplicate {provider.name} callback dropped")
            return ReconcileResult(outcome="duplicate", message="Duplicate delivery ignored")

        try:
            callback = provider.parse_callback(raw)
            result, payment, transitioned = await self._reconcile(provider, callback)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self._release_delivery(dedup_key)
            raise

        if transitioned and payment is not None and payment.status == PaymentStatus.COMPLETED.value:
            await self._send_receipt(payment)

        return result

    async def _reconcile(self, provider: PaymentProvider, callback: WebhookCallback):
        payment = await self._match(provider, callback)

        if payment is None:
            orphan = await self._create_orphan(provider, callback)
            return (
                ReconcileResult(
                    outcome="orphan",
                    payment_id=str(orphan.id),
                    reference=orphan.reference,
                    status=PaymentStatus(orphan.status),
                    transaction_id=orphan.transaction_id,
                    message="No matching payment; recorded for manual reconciliation",
                ),
                orphan,
                False,
            )

        note = f"{provider.name} callback: {callback.status.value}"
        if callback.receipt_number:
            note += f" receipt {callback.receipt_number}"
        if callback.amount is not None and callback.amount != payment.amount:
            note += f" (amount mismatch: expected {payment.amount}, received {callback.amount})"

        transitioned = await self.ledger.transition_payment(
            payment,
            callback.status,
            note=note,
            transaction_id=callback.transaction_id,
            receipt_number=callback.receipt_number,
            paid_date=callback.completed_at,
            failure_reason=callback.failure_reason,
            provider_data={"callback": callback.raw_payload},
        )

        return (
            ReconcileResult(
                outcome="applied" if transitioned else "ignored",
                payment_id=str(payment.id),
                reference=payment.reference,
                status=PaymentStatus(payment.status),
                transaction_id=payment.transaction_id,
                message="Payment updated" if transitioned else "No state change",
            ),
            payment,
            transitioned,
        )

    async def _match(self, provider: PaymentProvider, callback: WebhookCallback) -> Optional[Payment]:
        if callback.transaction_id:
            payment = await self.ledger.find_by_transaction_id(callback.transaction_id, provider.name)
            if payment:
                return payment

        if callback.reference:
            payment = await self.ledger.find_by_reference(callback.reference)
            if payment:
                return payment

        if callback.amount is not None and callback.phone_number:
            try:
                phone = normalize_phone(callback.phone_number)
            except PhoneValidationError:
                return None
            payment = await self.ledger.find_by_amount_and_phone(callback.amount, phone, provider.name)
            if payment:
                logger.info(
                    f"Matched {provider.name} callback by amount+phone to {payment.reference}"
                )
            return payment

        return None

    async def _create_orphan(self, provider: PaymentProvider, callback: WebhookCallback) -> Payment:
        now = datetime.now(timezone.utc)
        reference = callback.reference or f"UNMATCHED-{callback.transaction_id or uuid.uuid4().hex}"

        phone = callback.phone_number
        if phone:
            try:
                phone = normalize_phone(phone)
            except PhoneValidationError:
                pass

        orphan = Payment(
            amount=callback.amount or 0,
            payment_method=provider.provider_type.payment_method.value,
            status=callback.status.value,
            provider=provider.name,
            transaction_id=callback.transaction_id,
            reference=reference,
            receipt_number=callback.receipt_number,
            phone_number=phone,
            paid_date=(callback.completed_at or now) if callback.status == PaymentStatus.COMPLETED else None,
            month=now.strftime("%Y-%m"),
            year=now.year,
            failure_reason=callback.failure_reason,
            needs_reconciliation=True,
            notes=f"Unmatched {provider.name} callback - requires manual reconciliation",
            provider_data={"callback": callback.raw_payload},
        )
        self.db.add(orphan)
        await self.db.flush()
        logger.warning(
            f"Unmatched {provider.name} callback stored as {reference} for manual reconciliation"
        )
        return orphan

    async def _send_receipt(self, payment: Payment) -> None:
        """Best-effort. Never undoes the ledger update."""
        if self.sms is None:
            return
        try:
            room_number = None
            if payment.room_id:
                room = await self.db.get(Room, payment.room_id)
                room_number = room.room_number if room else None
            await self.sms.send_payment_receipt(payment, room_number)
        except Exception as e:
            logger.error(f"Failed to send receipt for {payment.reference}: {e}", exc_info=True)

    def _verify(self, provider: PaymentProvider, raw: RawCallback) -> bool:
        try:
            return provider.verify_callback(raw)
        except Exception as e:
            logger.warning(f"{provider.name} verification raised: {e}")
            return False

    @staticmethod
    def _dedup_key(provider: PaymentProvider, raw: RawCallback) -> str:
        digest = hashlib.sha256(raw.body).hexdigest()
        return f"webhook:{provider.name}:{digest}"

    async def _claim_delivery(self, key: str) -> bool:
        """False only when Redis positively reports a duplicate."""
        if self.redis is None:
            return True
        try:
            claimed = await self.redis.set(key, "1", nx=True, ex=DEDUP_TTL_SECONDS)
            return bool(claimed)
        except Exception as e:
            logger.warning(f"Redis dedup unavailable, relying on database guards: {e}")
            return True

    async def _release_delivery(self, key: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.warning(f"Could not release webhook dedup key: {e}")
