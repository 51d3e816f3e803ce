"""
Batch Payment Service - orchestrates monthly rent collection.

Lifecycle of a batch:
    pending -> processing -> completed
    pending -> failed            (no tenants, no usable provider)

Items are dispatched sequentially with a short pause between them. A bad
phone number or a provider error fails that item only; the batch goes on.
A batch in `processing` becomes `completed` once every item is terminal,
either at the end of dispatch or later when the last callback arrives.
"""

import asyncio
import logging
import re
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rentflow.config import Settings, settings as default_settings
from rentflow.errors import (
    BatchNotFoundError,
    BatchStateError,
    PhoneValidationError,
    ProviderError,
    ProviderNotAvailableError,
    RetryExhaustedError,
)
from rentflow.fsm.states import (
    BatchPriority,
    BatchStatus,
    BatchType,
    PaymentStatus,
    ProviderType,
    TenantStatus,
)
from rentflow.models.batch import BatchPayment
from rentflow.models.payment import Payment
from rentflow.models.tenant import Room, Tenant
from rentflow.providers.base import Capability, PaymentProvider, PaymentRequest, PaymentResponse
from rentflow.providers.registry import ProviderRegistry
from rentflow.services.ledger_service import LedgerService, utcnow
from rentflow.services.phone_service import default_normalizer, normalize_phone
from rentflow.services.retry import RetryExecutor
from rentflow.services.sms_service import SmsService

logger = logging.getLogger(__name__)

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

TEST_MODE_NOTE = "TEST MODE - no funds moved"


class CollectionItem(BaseModel):
    """One tenant's payment within a batch, before dispatch."""

    tenant_id: Optional[uuid.UUID] = None
    room_id: Optional[uuid.UUID] = None
    tenant_name: str = ""
    room_number: str = ""
    raw_phone: str
    amount: Decimal
    reference: str
    description: str
    month: str
    due_date: Optional[date] = None
    retry_count: int = 0


def generate_batch_id(month: str) -> str:
    return f"BATCH-{month.replace('-', '')}-{uuid.uuid4().hex[:8]}"


class BatchPaymentService:
    """Service for running and tracking batch payments."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ProviderRegistry,
        retry: RetryExecutor,
        sms: Optional[SmsService] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.registry = registry
        self.retry = retry
        self.sms = sms
        self.settings = settings or default_settings
        self.ledger = LedgerService(db)
        self._sleep = sleep

    # =========================================================================
    # Monthly collection
    # =========================================================================

    async def run_monthly_rent_collection(
        self,
        month: str,
        provider: Optional[str] = None,
        test_mode: Optional[bool] = None,
        include_tenant_ids: Optional[Sequence[uuid.UUID]] = None,
        exclude_tenant_ids: Optional[Sequence[uuid.UUID]] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        due_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Collect rent for `month` (YYYY-MM) from every eligible tenant.

        Returns the batch summary. Systemic failures are reported through
        the batch status, not raised.
        """
        if not MONTH_PATTERN.match(month):
            raise ValueError(f"Invalid month {month!r}, expected YYYY-MM")

        if test_mode is None:
            test_mode = self.settings.payment_test_mode

        year, month_number = (int(part) for part in month.split("-"))
        due_date = due_date or date(year, month_number, 1)

        adapter, provider_error = self._resolve_provider(provider, test_mode)
        provider_name = adapter.name if adapter else (provider or "none")

        batch = await self._create_batch(
            batch_id=generate_batch_id(month),
            batch_type=BatchType.MONTHLY_RENT,
            provider=provider_name,
            month=month,
            test_mode=test_mode,
        )
        logger.info(
            f"Starting rent collection {batch.batch_id} for {month} "
            f"via {provider_name}{' (TEST MODE)' if test_mode else ''}"
        )

        if provider_error:
            return await self._fail_batch(batch, provider_error)

        tenants = await self._eligible_tenants(
            include_tenant_ids, exclude_tenant_ids, min_amount, max_amount,
        )
        if not tenants:
            return await self._fail_batch(batch, "No eligible tenants found for rent collection")

        suffix = batch.batch_id.rsplit("-", 1)[-1]
        items = [
            CollectionItem(
                tenant_id=tenant.id,
                room_id=tenant.room.id,
                tenant_name=tenant.full_name,
                room_number=tenant.room.room_number,
                raw_phone=tenant.phone,
                amount=Decimal(tenant.room.rent_amount),
                reference=f"Rent-{month}-{tenant.room.room_number}-{suffix}",
                description=f"Rent payment for {tenant.room.room_number} - {month}",
                month=month,
                due_date=due_date,
            )
            for tenant in tenants
        ]

        return await self._execute_batch(batch, adapter, items, test_mode)

    async def retry_failed_payments(self, batch_id: str) -> Dict[str, Any]:
        """
        Resubmit the failed items of a batch as a new, high-priority batch.

        The original batch is left untouched.
        """
        original = await self.ledger.get_batch(batch_id)
        if original is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        result = await self.db.execute(
            select(Payment)
            .where(
                and_(
                    Payment.batch_id == batch_id,
                    Payment.status.in_([
                        PaymentStatus.FAILED.value,
                        PaymentStatus.CANCELLED.value,
                    ]),
                )
            )
            .order_by(Payment.created_at)
        )
        failed = list(result.scalars().all())
        if not failed:
            return {
                "batch_id": None,
                "parent_batch_id": batch_id,
                "status": "skipped",
                "message": "No failed payments found to retry",
                "total_payments": 0,
            }

        adapter, provider_error = self._resolve_provider(original.provider, original.test_mode)

        siblings = await self.db.scalar(
            select(func.count()).select_from(BatchPayment).where(BatchPayment.parent_batch_id == batch_id)
        )
        attempt = (siblings or 0) + 1

        batch = await self._create_batch(
            batch_id=f"{batch_id}-retry-{attempt}",
            batch_type=BatchType(original.batch_type),
            provider=original.provider,
            month=original.month,
            test_mode=original.test_mode,
            priority=BatchPriority.HIGH,
            retry_count=original.retry_count + 1,
            parent_batch_id=batch_id,
        )
        logger.info(f"Retrying {len(failed)} failed payments of {batch_id} as {batch.batch_id}")

        if provider_error:
            return await self._fail_batch(batch, provider_error)

        prefix = "Retry-" if attempt == 1 else f"Retry-{attempt}-"
        items = []
        for payment in failed:
            tenant = await self.db.get(Tenant, payment.tenant_id) if payment.tenant_id else None
            items.append(CollectionItem(
                tenant_id=payment.tenant_id,
                room_id=payment.room_id,
                tenant_name=tenant.full_name if tenant else "",
                room_number=tenant.room.room_number if tenant and tenant.room else "",
                # Use the current number on file; it may have been corrected
                raw_phone=(tenant.phone if tenant else payment.phone_number) or "",
                amount=Decimal(payment.amount),
                reference=f"{prefix}{payment.reference}",
                description=f"Retry rent payment for {payment.month}",
                month=payment.month,
                due_date=payment.due_date,
                retry_count=payment.retry_count + 1,
            ))

        return await self._execute_batch(batch, adapter, items, original.test_mode)

    # =========================================================================
    # Status
    # =========================================================================

    async def get_batch_status(self, batch_id: str) -> Dict[str, Any]:
        batch = await self.ledger.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        result = await self.db.execute(
            select(Payment)
            .where(Payment.batch_id == batch_id)
            .order_by(Payment.created_at)
            .execution_options(populate_existing=True)
        )
        payments = result.scalars().all()

        summary = batch.to_dict()
        summary["results"] = batch.results
        summary["payments"] = [p.to_dict() for p in payments]
        return summary

    async def existing_collection_for(self, month: str) -> Optional[BatchPayment]:
        """A live (non-test) monthly batch for `month` that already moved money."""
        result = await self.db.execute(
            select(BatchPayment)
            .where(
                and_(
                    BatchPayment.month == month,
                    BatchPayment.batch_type == BatchType.MONTHLY_RENT.value,
                    BatchPayment.parent_batch_id.is_(None),
                    BatchPayment.test_mode.is_(False),
                    BatchPayment.status.in_([
                        BatchStatus.PROCESSING.value,
                        BatchStatus.COMPLETED.value,
                    ]),
                )
            )
            .order_by(BatchPayment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def audit_tenant_phones(self) -> Dict[str, Any]:
        """
        Check every active tenant's number before a collection run.

        Invalid numbers are listed with the tenant and the validation code,
        valid ones in display format.
        """
        tenants = await self._eligible_tenants(None, None, None, None)
        checked = default_normalizer.validate_many(tenant.phone for tenant in tenants)

        by_phone: Dict[str, List[Tenant]] = {}
        for tenant in tenants:
            by_phone.setdefault(tenant.phone, []).append(tenant)

        invalid = []
        for entry in checked["invalid"]:
            tenant = by_phone[entry["phone"]].pop(0)
            invalid.append({
                **entry,
                "tenant_id": str(tenant.id),
                "tenant_name": tenant.full_name,
                "room_number": tenant.room.room_number,
            })

        return {
            "checked": len(tenants),
            "valid": [default_normalizer.format_for_display(phone) for phone in checked["valid"]],
            "invalid": invalid,
        }

    async def open_batch_ids(self) -> List[str]:
        """Batches still waiting on item outcomes."""
        result = await self.db.execute(
            select(BatchPayment.batch_id).where(
                and_(
                    BatchPayment.status == BatchStatus.PROCESSING.value,
                    BatchPayment.test_mode.is_(False),
                )
            )
        )
        return list(result.scalars().all())

    async def refresh_pending(self, batch_id: str) -> Dict[str, Any]:
        """
        Poll the provider for every non-terminal payment of a batch and
        apply the answers through the ledger.
        """
        batch = await self.ledger.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        checked = 0
        updated = 0
        if batch.test_mode:
            return {"batch_id": batch_id, "checked": 0, "updated": 0, "batch": batch.to_dict()}

        adapter = self.registry.get(batch.provider)

        result = await self.db.execute(
            select(Payment).where(
                and_(
                    Payment.batch_id == batch_id,
                    Payment.status.in_([
                        PaymentStatus.PENDING.value,
                        PaymentStatus.PROCESSING.value,
                    ]),
                    Payment.transaction_id.is_not(None),
                )
            )
        )
        completed: List[uuid.UUID] = []

        for payment in result.scalars().all():
            checked += 1
            transaction_id = payment.transaction_id
            try:
                response = await self.retry.run(
                    lambda: adapter.get_status(transaction_id),
                    f"{adapter.name} status {payment.reference}",
                )
            except (ProviderError, RetryExhaustedError) as e:
                logger.warning(f"Status check failed for {payment.reference}: {e}")
                continue

            if response.status == PaymentStatus.PENDING:
                continue
            transitioned = await self.ledger.transition_payment(
                payment,
                response.status,
                note=f"{adapter.name} status poll: {response.status.value}",
                receipt_number=response.receipt_number,
                paid_date=response.completed_at,
                failure_reason=response.failure_reason or response.message,
            )
            if transitioned:
                updated += 1
                if payment.status == PaymentStatus.COMPLETED.value:
                    completed.append(payment.id)

        await self.db.commit()
        await self._send_receipts(completed)

        batch = await self.ledger.get_batch(batch_id)
        logger.info(f"Refreshed {batch_id}: checked {checked}, updated {updated}")
        return {"batch_id": batch_id, "checked": checked, "updated": updated, "batch": batch.to_dict()}

    # =========================================================================
    # Internals
    # =========================================================================

    def _resolve_provider(
        self,
        provider: Optional[str],
        test_mode: bool,
    ) -> Tuple[Optional[PaymentProvider], Optional[str]]:
        """(adapter, None) or (adapter or None, systemic error message)."""
        try:
            if provider:
                adapter = self.registry.get(provider)
            else:
                adapter = self.registry.default_provider()
        except ProviderNotAvailableError as e:
            if test_mode:
                # Dry runs never call the provider, so configuration is not needed
                fallback = provider or self.settings.default_payment_provider or ProviderType.SAFARICOM.value
                try:
                    return self.registry.adapter(fallback), None
                except ProviderNotAvailableError:
                    return None, str(e)
            return None, str(e)

        if not adapter.capabilities.supports(Capability.PUSH_PAYMENT) and not provider:
            # The default cannot collect; use the preferred collection provider
            try:
                adapter = self.registry.best_provider_for(Capability.PUSH_PAYMENT)
            except ProviderNotAvailableError:
                pass
        if not adapter.capabilities.supports(Capability.PUSH_PAYMENT):
            return adapter, (
                f"{adapter.provider_type.display_name} does not support push payments "
                f"and cannot run rent collection"
            )
        return adapter, None

    async def _create_batch(
        self,
        batch_id: str,
        batch_type: BatchType,
        provider: str,
        month: Optional[str],
        test_mode: bool,
        priority: BatchPriority = BatchPriority.NORMAL,
        retry_count: int = 0,
        parent_batch_id: Optional[str] = None,
    ) -> BatchPayment:
        batch = BatchPayment(
            batch_id=batch_id,
            batch_type=batch_type.value,
            provider=provider,
            month=month,
            status=BatchStatus.PENDING.value,
            priority=priority.value,
            retry_count=retry_count,
            parent_batch_id=parent_batch_id,
            test_mode=test_mode,
            scheduled_at=utcnow(),
        )
        self.db.add(batch)
        await self.db.commit()
        return batch

    async def _fail_batch(self, batch: BatchPayment, reason: str) -> Dict[str, Any]:
        logger.error(f"Batch {batch.batch_id} failed: {reason}")
        now = utcnow()
        await self.db.execute(
            update(BatchPayment)
            .where(
                and_(
                    BatchPayment.batch_id == batch.batch_id,
                    BatchPayment.status.in_([
                        BatchStatus.PENDING.value,
                        BatchStatus.PROCESSING.value,
                    ]),
                )
            )
            .values(
                status=BatchStatus.FAILED.value,
                error_message=reason,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return await self._summary(batch.batch_id, [])

    async def _eligible_tenants(
        self,
        include_tenant_ids: Optional[Sequence[uuid.UUID]],
        exclude_tenant_ids: Optional[Sequence[uuid.UUID]],
        min_amount: Optional[Decimal],
        max_amount: Optional[Decimal],
    ) -> List[Tenant]:
        """Active tenants with a room, after the optional filters."""
        query = (
            select(Tenant)
            .join(Room, Tenant.room_id == Room.id)
            .where(Tenant.status == TenantStatus.ACTIVE.value)
        )
        if include_tenant_ids:
            query = query.where(Tenant.id.in_(list(include_tenant_ids)))
        if exclude_tenant_ids:
            query = query.where(Tenant.id.not_in(list(exclude_tenant_ids)))
        if min_amount is not None:
            query = query.where(Room.rent_amount >= min_amount)
        if max_amount is not None:
            query = query.where(Room.rent_amount <= max_amount)

        result = await self.db.execute(query.order_by(Room.room_number))
        return list(result.unique().scalars().all())

    async def _claim(self, batch_id: str, total: int) -> None:
        """
        pending -> processing, exactly once.

        Raises:
            BatchStateError: another run already claimed this batch
        """
        now = utcnow()
        result = await self.db.execute(
            update(BatchPayment)
            .where(
                and_(
                    BatchPayment.batch_id == batch_id,
                    BatchPayment.status == BatchStatus.PENDING.value,
                )
            )
            .values(
                status=BatchStatus.PROCESSING.value,
                started_at=now,
                updated_at=now,
                total_payments=total,
                pending_payments=total,
                successful_payments=0,
                failed_payments=0,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise BatchStateError(f"Batch {batch_id} is already being processed")
        await self.db.commit()

    async def _execute_batch(
        self,
        batch: BatchPayment,
        adapter: PaymentProvider,
        items: List[CollectionItem],
        test_mode: bool,
    ) -> Dict[str, Any]:
        # A failed item write rolls the session back and expires loaded
        # instances, so only plain values are carried through dispatch
        batch_id = batch.batch_id
        await self._claim(batch_id, len(items))

        if test_mode:
            logger.warning(
                f"TEST MODE: batch {batch_id} will not call {adapter.name}; "
                f"no real transfer will take place"
            )

        use_bulk = (
            not test_mode
            and self.settings.batch_use_provider_bulk
            and adapter.capabilities.supports(Capability.BULK_SUBMISSION)
        )

        if use_bulk:
            results, completed = await self._dispatch_bulk(batch_id, adapter, items)
        else:
            results, completed = await self._dispatch_sequential(batch_id, adapter, items, test_mode)

        await self.db.execute(
            update(BatchPayment)
            .where(BatchPayment.batch_id == batch_id)
            .values(results={"items": results})
            .execution_options(synchronize_session=False)
        )
        await self.ledger.complete_batch_if_done(batch_id)
        await self.db.commit()

        if not test_mode:
            await self._send_receipts(completed)

        if not test_mode and not adapter.capabilities.supports(Capability.WEBHOOK):
            current = await self.ledger.get_batch(batch_id)
            if current is not None and current.pending_payments > 0:
                await self.refresh_pending(batch_id)

        summary = await self._summary(batch_id, results)
        logger.info(
            f"Batch {batch_id} dispatched: {summary['successful_payments']} successful, "
            f"{summary['failed_payments']} failed, {summary['pending_payments']} pending"
        )
        return summary

    async def _dispatch_sequential(
        self,
        batch_id: str,
        adapter: PaymentProvider,
        items: List[CollectionItem],
        test_mode: bool,
    ) -> Tuple[List[dict], List[uuid.UUID]]:
        results: List[dict] = []
        completed: List[uuid.UUID] = []

        for index, item in enumerate(items):
            payment, phone = await self._record_item(batch_id, adapter, item)

            if payment is not None and phone is not None:
                payment_id = payment.id
                try:
                    if test_mode:
                        await self.ledger.transition_payment(
                            payment,
                            PaymentStatus.COMPLETED,
                            note=TEST_MODE_NOTE,
                            transaction_id=f"TEST-{uuid.uuid4().hex[:12]}",
                        )
                        await self.db.commit()
                    elif await self._send_item(adapter, payment, phone, item):
                        completed.append(payment_id)
                except SQLAlchemyError as e:
                    payment = await self._fail_unrecorded(batch_id, payment_id, item, e)

                if not test_mode and index < len(items) - 1 and self.settings.batch_item_delay > 0:
                    await self._sleep(self.settings.batch_item_delay)

            results.append(self._item_result(item, payment))

        return results, completed

    async def _send_item(
        self,
        adapter: PaymentProvider,
        payment: Payment,
        phone: str,
        item: CollectionItem,
    ) -> bool:
        request = PaymentRequest(
            phone_number=phone,
            amount=item.amount,
            reference=item.reference,
            description=item.description,
        )
        try:
            response = await self.retry.run(
                lambda: adapter.send_payment(request),
                f"{adapter.name} send {item.reference}",
            )
        except Exception as e:
            logger.error(f"Payment {item.reference} failed: {e}")
            response = adapter.response_for_error(item.reference, e)
        return await self._apply_response(adapter, payment, response)

    async def _dispatch_bulk(
        self,
        batch_id: str,
        adapter: PaymentProvider,
        items: List[CollectionItem],
    ) -> Tuple[List[dict], List[uuid.UUID]]:
        """Submit valid items through the adapter's native sub-batches."""
        recorded: List[Tuple[CollectionItem, Optional[uuid.UUID]]] = []
        requests: List[PaymentRequest] = []
        queued: List[Tuple[CollectionItem, Payment, uuid.UUID]] = []

        for item in items:
            payment, phone = await self._record_item(batch_id, adapter, item)
            recorded.append((item, payment.id if payment is not None else None))
            if payment is not None and phone is not None:
                requests.append(PaymentRequest(
                    phone_number=phone,
                    amount=item.amount,
                    reference=item.reference,
                    description=item.description,
                ))
                queued.append((item, payment, payment.id))

        completed: List[uuid.UUID] = []
        if requests:
            responses = await adapter.send_batch(requests, self.retry)
            for (item, payment, payment_id), response in zip(queued, responses):
                try:
                    if await self._apply_response(adapter, payment, response):
                        completed.append(payment_id)
                except SQLAlchemyError as e:
                    await self._fail_unrecorded(batch_id, payment_id, item, e)

        results = []
        for item, payment_id in recorded:
            payment = None
            if payment_id is not None:
                payment = await self.db.get(Payment, payment_id, populate_existing=True)
            results.append(self._item_result(item, payment))
        return results, completed

    async def _record_item(
        self,
        batch_id: str,
        adapter: PaymentProvider,
        item: CollectionItem,
    ) -> Tuple[Optional[Payment], Optional[str]]:
        """
        Persist the Payment for one item before any provider call.

        Returns (payment, canonical phone). Phone is None when the number is
        invalid; the payment is then already marked failed. Payment is None
        when it could not be stored; the item is then counted as failed.
        """
        try:
            return await self._store_item(batch_id, adapter, item)
        except SQLAlchemyError as e:
            logger.error(f"Could not store payment {item.reference}: {e}", exc_info=True)
            await self.db.rollback()
            await self.ledger.apply_counter_deltas(
                batch_id, PaymentStatus.PENDING, PaymentStatus.FAILED,
            )
            await self.db.commit()
            return None, None

    async def _fail_unrecorded(
        self,
        batch_id: str,
        payment_id: uuid.UUID,
        item: CollectionItem,
        error: SQLAlchemyError,
    ) -> Optional[Payment]:
        """
        A ledger write failed after the payment was stored. Fail the item so
        the batch can still reach a terminal state.
        """
        logger.error(f"Could not record outcome of {item.reference}: {error}", exc_info=True)
        await self.db.rollback()

        payment = await self.db.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            await self.ledger.apply_counter_deltas(
                batch_id, PaymentStatus.PENDING, PaymentStatus.FAILED,
            )
        else:
            await self.ledger.transition_payment(
                payment,
                PaymentStatus.FAILED,
                note="Ledger write failed",
                failure_reason=f"Outcome could not be recorded: {error}",
            )
        await self.db.commit()
        return payment

    async def _store_item(
        self,
        batch_id: str,
        adapter: PaymentProvider,
        item: CollectionItem,
    ) -> Tuple[Payment, Optional[str]]:
        try:
            phone = normalize_phone(item.raw_phone)
            phone_error = None
        except PhoneValidationError as e:
            phone = None
            phone_error = e

        year = int(item.month.split("-")[0])
        payment = Payment(
            tenant_id=item.tenant_id,
            room_id=item.room_id,
            amount=item.amount,
            payment_method=adapter.provider_type.payment_method.value,
            status=PaymentStatus.PENDING.value,
            provider=adapter.name,
            reference=item.reference,
            phone_number=phone or item.raw_phone,
            due_date=item.due_date,
            month=item.month,
            year=year,
            retry_count=item.retry_count,
            batch_id=batch_id,
            notes=f"Batch payment - batch_id:{batch_id}",
        )
        self.db.add(payment)
        await self.db.flush()

        if phone_error is not None:
            logger.warning(
                f"Invalid phone for {item.tenant_name or item.reference}: "
                f"{item.raw_phone} ({phone_error.code})"
            )
            await self.ledger.transition_payment(
                payment,
                PaymentStatus.FAILED,
                note="Invalid phone number",
                failure_reason=f"{phone_error.code}: {phone_error}",
            )

        await self.db.commit()
        return payment, phone

    async def _apply_response(
        self,
        adapter: PaymentProvider,
        payment: Payment,
        response: PaymentResponse,
    ) -> bool:
        """Record the send outcome. True when the payment became completed."""
        # A callback may have landed while the send was in flight
        await self.db.refresh(payment)
        await self.ledger.attach_provider_ids(
            payment,
            transaction_id=response.transaction_id,
            checkout_request_id=response.checkout_request_id,
            merchant_request_id=response.merchant_request_id,
            provider_data={"dispatch": response.provider_data} if response.provider_data else None,
        )

        if response.success:
            target = response.status
            note = f"Dispatched via {adapter.name}: {response.message or target.value}"
        else:
            target = PaymentStatus.FAILED
            note = f"{adapter.name} rejected: {response.message}"

        transitioned = False
        if target != PaymentStatus.PENDING:
            transitioned = await self.ledger.transition_payment(
                payment,
                target,
                note=note,
                transaction_id=response.transaction_id,
                receipt_number=response.receipt_number,
                paid_date=response.completed_at,
                failure_reason=response.failure_reason or response.message,
            )
        await self.db.commit()
        return transitioned and payment.status == PaymentStatus.COMPLETED.value

    async def _send_receipts(self, payment_ids: List[uuid.UUID]) -> None:
        """Best-effort receipts; failures are logged and ignored."""
        if self.sms is None or not payment_ids:
            return
        logger.info(f"Sending SMS receipts for {len(payment_ids)} payments")
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

    @staticmethod
    def _item_result(item: CollectionItem, payment: Optional[Payment]) -> dict:
        if payment is None:
            return {
                "tenant_id": str(item.tenant_id) if item.tenant_id else None,
                "tenant_name": item.tenant_name,
                "room_number": item.room_number,
                "phone_number": item.raw_phone,
                "amount": str(item.amount),
                "reference": item.reference,
                "status": PaymentStatus.FAILED.value,
                "transaction_id": None,
                "failure_reason": "Payment record could not be stored",
            }
        return {
            "tenant_id": str(item.tenant_id) if item.tenant_id else None,
            "tenant_name": item.tenant_name,
            "room_number": item.room_number,
            "phone_number": payment.phone_number,
            "amount": str(item.amount),
            "reference": payment.reference,
            "status": payment.status,
            "transaction_id": payment.transaction_id,
            "failure_reason": payment.failure_reason,
        }

    async def _summary(self, batch_id: str, results: List[dict]) -> Dict[str, Any]:
        batch = await self.ledger.get_batch(batch_id)
        summary = batch.to_dict()
        summary["total_amount"] = str(sum((Decimal(r["amount"]) for r in results), Decimal("0.00")))
        summary["results"] = results
        return summary
