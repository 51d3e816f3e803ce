"""
Ledger Service - guarded writes to payments and batch counters.

Every status change on a Payment is a compare-and-set on (version, status).
Batch counters move only through single UPDATE statements with column
arithmetic, so concurrent webhook handlers never lose an update.
"""

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rentflow.fsm.machine import PaymentStateMachine
from rentflow.fsm.states import BatchStatus, PaymentStatus
from rentflow.models.batch import BatchPayment
from rentflow.models.payment import Payment

logger = logging.getLogger(__name__)

BATCH_TAG = re.compile(r"batch_id:(\S+)")

# Re-reads after a lost compare-and-set before giving up
MAX_CAS_ATTEMPTS = 3


def append_note(existing: Optional[str], note: str) -> str:
    """Notes are append-only."""
    if not existing:
        return note
    return f"{existing} | {note}"


def batch_tag_of(payment: Payment) -> Optional[str]:
    """Batch id from the column, falling back to the marker in notes."""
    if payment.batch_id:
        return payment.batch_id
    if payment.notes:
        match = BATCH_TAG.search(payment.notes)
        if match:
            return match.group(1)
    return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """Atomic payment transitions and batch bookkeeping."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def transition_payment(
        self,
        payment: Payment,
        target: PaymentStatus,
        note: Optional[str] = None,
        transaction_id: Optional[str] = None,
        receipt_number: Optional[str] = None,
        paid_date: Optional[datetime] = None,
        failure_reason: Optional[str] = None,
        provider_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a payment to `target` if the state machine allows it.

        Returns True when this call performed the transition. Returns False
        when the transition is not allowed (e.g. the payment is already
        terminal), which makes replays no-ops. On success the batch counters
        are adjusted in the same transaction.
        """
        target = PaymentStatus(target)

        for _ in range(MAX_CAS_ATTEMPTS):
            current = PaymentStatus(payment.status)
            if not PaymentStateMachine.can_transition(current, target):
                logger.info(
                    f"Ignoring transition {current.value} -> {target.value} "
                    f"for payment {payment.reference}"
                )
                return False

            values: Dict[str, Any] = {
                "status": target.value,
                "version": payment.version + 1,
                "updated_at": utcnow(),
            }
            if note:
                values["notes"] = append_note(payment.notes, note)
            if transaction_id and not payment.transaction_id:
                values["transaction_id"] = transaction_id
            if receipt_number:
                values["receipt_number"] = receipt_number
            if target == PaymentStatus.COMPLETED:
                values["paid_date"] = paid_date or utcnow()
                values["failure_reason"] = None
            elif target.is_terminal and failure_reason:
                values["failure_reason"] = failure_reason
            if provider_data:
                values["provider_data"] = {**(payment.provider_data or {}), **provider_data}

            result = await self.db.execute(
                update(Payment)
                .where(
                    and_(
                        Payment.id == payment.id,
                        Payment.version == payment.version,
                        Payment.status == current.value,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                await self.db.refresh(payment)
                batch_id = batch_tag_of(payment)
                if batch_id:
                    await self.apply_counter_deltas(batch_id, current, target)
                logger.info(
                    f"Payment {payment.reference}: {current.value} -> {target.value}"
                )
                return True

            # Lost the race - reload and re-evaluate
            logger.info(f"Concurrent update on payment {payment.reference}; re-reading")
            await self.db.refresh(payment)

        logger.warning(f"Gave up updating payment {payment.reference} after {MAX_CAS_ATTEMPTS} attempts")
        return False

    async def attach_provider_ids(
        self,
        payment: Payment,
        transaction_id: Optional[str] = None,
        checkout_request_id: Optional[str] = None,
        merchant_request_id: Optional[str] = None,
        provider_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record provider identifiers without touching status.

        A callback may already have moved the payment on, so only the
        version is guarded and existing ids are kept.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            values: Dict[str, Any] = {}
            if transaction_id and not payment.transaction_id:
                values["transaction_id"] = transaction_id
            if checkout_request_id and not payment.checkout_request_id:
                values["checkout_request_id"] = checkout_request_id
            if merchant_request_id and not payment.merchant_request_id:
                values["merchant_request_id"] = merchant_request_id
            if provider_data:
                values["provider_data"] = {**(payment.provider_data or {}), **provider_data}
            if not values:
                return False

            values["version"] = payment.version + 1
            result = await self.db.execute(
                update(Payment)
                .where(and_(Payment.id == payment.id, Payment.version == payment.version))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(payment)
            if result.rowcount == 1:
                return True

        logger.warning(f"Could not record provider ids on payment {payment.reference}")
        return False

    async def apply_counter_deltas(
        self,
        batch_id: str,
        current: PaymentStatus,
        target: PaymentStatus,
    ) -> None:
        """Shift one item between batch counters, then try the terminal flip."""
        deltas = PaymentStateMachine.counter_deltas(current, target)
        if deltas:
            await self.db.execute(
                update(BatchPayment)
                .where(BatchPayment.batch_id == batch_id)
                .values({
                    column: getattr(BatchPayment, column) + delta
                    for column, delta in deltas.items()
                })
                .execution_options(synchronize_session=False)
            )
        await self.complete_batch_if_done(batch_id)

    async def complete_batch_if_done(self, batch_id: str) -> bool:
        """
        Flip processing -> completed once every item is terminal.

        The guard lives in the WHERE clause so only one caller wins.
        """
        now = utcnow()
        result = await self.db.execute(
            update(BatchPayment)
            .where(
                and_(
                    BatchPayment.batch_id == batch_id,
                    BatchPayment.status == BatchStatus.PROCESSING.value,
                    BatchPayment.successful_payments + BatchPayment.failed_payments
                    >= BatchPayment.total_payments,
                )
            )
            .values(
                status=BatchStatus.COMPLETED.value,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"Batch {batch_id} completed")
            return True
        return False

    async def get_batch(self, batch_id: str) -> Optional[BatchPayment]:
        result = await self.db.execute(
            select(BatchPayment)
            .where(BatchPayment.batch_id == batch_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_transaction_id(
        self,
        transaction_id: str,
        provider: Optional[str] = None,
    ) -> Optional[Payment]:
        query = select(Payment).where(
            (Payment.transaction_id == transaction_id)
            | (Payment.checkout_request_id == transaction_id)
        )
        if provider:
            query = query.where(Payment.provider == provider)
        result = await self.db.execute(query.order_by(Payment.created_at).limit(1))
        return result.scalar_one_or_none()

    async def find_by_reference(self, reference: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.reference == reference)
        )
        return result.scalar_one_or_none()

    async def find_by_amount_and_phone(
        self,
        amount: Decimal,
        phone_number: str,
        provider: Optional[str] = None,
    ) -> Optional[Payment]:
        """
        Heuristic match: newest non-terminal payment with this amount and phone.

        Ambiguous when a tenant has several open payments of the same amount.
        """
        query = select(Payment).where(
            and_(
                Payment.amount == amount,
                Payment.phone_number == phone_number,
                Payment.status.in_([
                    PaymentStatus.PENDING.value,
                    PaymentStatus.PROCESSING.value,
                ]),
            )
        )
        if provider:
            query = query.where(Payment.provider == provider)
        result = await self.db.execute(
            query.order_by(Payment.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()
