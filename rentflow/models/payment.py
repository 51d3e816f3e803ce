"""Payment model - one ledger row per payment attempt."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, Date, ForeignKey, Numeric, Boolean, Integer, Text, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rentflow.database import Base
from rentflow.fsm.states import PaymentStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Payment(Base):
    """
    Payment record.
    
    Created once per dispatch attempt (including invalid ones) and updated
    in place by reconciliation. Never deleted by the engine. Every status
    change is a compare-and-set on `version`.
    """
    
    __tablename__ = "payments"
    
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    
    # Null for orphan records created from unmatched callbacks
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    
    room_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("rooms.id", ondelete="SET NULL"),
        nullable=True,
    )
    
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    
    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    
    provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    
    # Provider transaction id (CheckoutRequestID for Safaricom)
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    
    # Our reference - unique per attempt
    reference: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    
    receipt_number: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    
    provider_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    
    phone_number: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        index=True,
    )
    
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    # YYYY-MM
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    # Batch tag (also embedded in notes as batch_id:<id>)
    batch_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    
    # Orphan created from a callback nobody was waiting for
    needs_reconciliation: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
    
    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)
    
    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "room_id": str(self.room_id) if self.room_id else None,
            "amount": str(self.amount),
            "payment_method": self.payment_method,
            "status": self.status,
            "provider": self.provider,
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "receipt_number": self.receipt_number,
            "phone_number": self.phone_number,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "paid_date": self.paid_date.isoformat() if self.paid_date else None,
            "month": self.month,
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "batch_id": self.batch_id,
            "needs_reconciliation": self.needs_reconciliation,
            "notes": self.notes,
        }
    
    def __repr__(self) -> str:
        return f"<Payment {self.reference} {self.status}>"
