"""Reconciliation records - one row per imported statement line."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rentflow.database import Base
from rentflow.fsm.states import ReconciliationStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationRecord(Base):
    """Statement line from a provider CSV export (COOP Bank)."""
    
    __tablename__ = "reconciliation_records"
    
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    
    # Reconciliation batch this import belongs to
    batch_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    
    phone_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    account_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    narration: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    matched_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True,
    )
    
    reconciliation_status: Mapped[str] = mapped_column(
        String(20),
        default=ReconciliationStatus.UNMATCHED.value,
        nullable=False,
    )
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    
    def __repr__(self) -> str:
        return f"<ReconciliationRecord {self.transaction_id} {self.reconciliation_status}>"
