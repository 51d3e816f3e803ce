"""
Reconciliation Service - imports provider statement files and matches them
to the payment ledger.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from rentflow.errors import CapabilityNotSupportedError, PhoneValidationError
from rentflow.fsm.states import BatchStatus, BatchType, PaymentStatus, ReconciliationStatus
from rentflow.models.batch import BatchPayment
from rentflow.models.payment import Payment
from rentflow.models.reconciliation import ReconciliationRecord
from rentflow.models.tenant import Room
from rentflow.providers.base import Capability
from rentflow.providers.coop import StatementLine
from rentflow.providers.registry import ProviderRegistry
from rentflow.services.ledger_service import LedgerService
from rentflow.services.phone_service import normalize_phone
from rentflow.services.sms_service import SmsService

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Statement import for providers that settle through CSV exports."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ProviderRegistry,
        sms: Optional[SmsService] = None,
    ):
        self.db = db
        self.registry = registry
        self.sms = sms
        self.ledger = LedgerService(db)

    async def import_csv(self, provider_name: str, csv_text: str) -> Dict[str, Any]:
        """
        Parse, store and match a statement.

        Returns a report with matched / unmatched / discrepancy counts.
        """
        provider = self.registry.adapter(provider_name)
        if not provider.capabilities.supports(Capability.CSV_RECONCILIATION):
            raise CapabilityNotSupportedError(
                f"{provider.provider_type.display_name} does not provide CSV reconciliation",
                provider=provider.name,
            )

        lines = provider.parse_reconciliation_csv(csv_text)
        now = datetime.now(timezone.utc)
        batch_id = f"RECON-{provider.name.upper()}-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8]}"

        batch = BatchPayment(
            batch_id=batch_id,
            batch_type=BatchType.RECONCILIATION.value,
            provider=provider.name,
            month=now.strftime("%Y-%m"),
            status=BatchStatus.PROCESSING.value,
            total_payments=len(lines),
            started_at=now,
        )
        self.db.add(batch)
        await self.db.flush()

        report = {
            "batch_id": batch_id,
            "provider": provider.name,
            "records": len(lines),
            "matched": 0,
            "unmatched": 0,
            "discrepancies": 0,
            "applied": 0,
        }
        completed: List[uuid.UUID] = []

        for line in lines:
            outcome, payment = await self._reconcile_line(provider.name, batch_id, line)
            report[outcome] += 1
            if payment is not None:
                report["applied"] += 1
                if payment.status == PaymentStatus.COMPLETED.value:
                    completed.append(payment.id)

        await self.db.execute(
            update(BatchPayment)
            .where(BatchPayment.batch_id == batch_id)
            .values(
                status=BatchStatus.COMPLETED.value,
                successful_payments=report["matched"],
                failed_payments=report["unmatched"] + report["discrepancies"],
                pending_payments=0,
                completed_at=datetime.now(timezone.utc),
                results=report,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self._send_receipts(completed)

        logger.info(
            f"Reconciled {len(lines)} {provider.name} statement lines: "
            f"{report['matched']} matched, {report['unmatched']} unmatched, "
            f"{report['discrepancies']} discrepancies"
        )
        return report

    async def _reconcile_line(self, provider_name: str, batch_id: str, line: StatementLine):
        """(outcome key, payment this line moved or None)"""
        payment = await self._match(provider_name, line)

        record = ReconciliationRecord(
            provider=provider_name,
            batch_id=batch_id,
            transaction_id=line.transaction_id,
            reference=line.reference,
            amount=line.amount,
            phone_number=line.phone_number,
            status=line.status.value,
            account_number=line.account_number,
            narration=line.narration,
            completed_at=line.completed_at,
        )

        applied = False
        if payment is None:
            outcome = "unmatched"
            record.reconciliation_status = ReconciliationStatus.UNMATCHED.value
        elif payment.amount != line.amount:
            outcome = "discrepancies"
            record.matched_payment_id = payment.id
            record.reconciliation_status = ReconciliationStatus.DISCREPANCY.value
            logger.warning(
                f"Statement amount {line.amount} differs from payment "
                f"{payment.reference} amount {payment.amount}"
            )
        else:
            outcome = "matched"
            record.matched_payment_id = payment.id
            record.reconciliation_status = ReconciliationStatus.MATCHED.value
            if line.status != PaymentStatus.PENDING:
                applied = await self.ledger.transition_payment(
                    payment,
                    line.status,
                    note=f"{provider_name} statement: {line.status.value} ({line.transaction_id})",
                    transaction_id=line.transaction_id,
                    paid_date=line.completed_at,
                    failure_reason=line.narration if line.status == PaymentStatus.FAILED else None,
                )

        self.db.add(record)
        await self.db.flush()
        return outcome, payment if applied else None

    async def _match(self, provider_name: str, line: StatementLine) -> Optional[Payment]:
        if line.reference:
            payment = await self.ledger.find_by_reference(line.reference)
            if payment:
                return payment

        payment = await self.ledger.find_by_transaction_id(line.transaction_id, provider_name)
        if payment:
            return payment

        if line.phone_number:
            try:
                phone = normalize_phone(line.phone_number)
            except PhoneValidationError:
                return None
            return await self.ledger.find_by_amount_and_phone(line.amount, phone, provider_name)

        return None

    async def _send_receipts(self, payment_ids: List[uuid.UUID]) -> None:
        """Receipts for payments a statement settled; failures are logged."""
        if self.sms is None or not payment_ids:
            return
        for payment_id in payment_ids:
            payment = await self.db.get(Payment, payment_id)
            if payment is None:
                continue
            try:
                room_number = None
                if payment.room_id:
                    room = await self.db.get(Room, payment.room_id)
                    room_number = room.room_number if room else None
                await self.sms.send_payment_receipt(payment, room_number)
            except Exception as e:
                logger.error(f"Failed to send receipt for {payment.reference}: {e}")
