"""Batch model - one row per orchestrated collection run."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Boolean, Text, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rentflow.database import Base
from rentflow.fsm.states import BatchStatus, BatchPriority


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchPayment(Base):
    """
    Batch of payment requests for a collection period.
    
    Invariant: successful + failed + pending <= total. Counters are only
    ever changed through single UPDATE statements with column arithmetic.
    """
    
    __tablename__ = "batch_payments"
    
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    
    # Public identifier, e.g. BATCH-202601-3f9a1c2b or BATCH-...-retry-1
    batch_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )
    
    batch_type: Mapped[str] = mapped_column(String(20), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    
    # Collection period YYYY-MM
    month: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)
    
    total_payments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_payments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_payments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pending_payments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    status: Mapped[str] = mapped_column(
        String(20),
        default=BatchStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    
    priority: Mapped[str] = mapped_column(
        String(10),
        default=BatchPriority.NORMAL.value,
        nullable=False,
    )
    
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    # Set on retry batches
    parent_batch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    
    # Dry run - no money moved
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    results: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    
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
    def processed_payments(self) -> int:
        return self.successful_payments + self.failed_payments
    
    @property
    def completion_percentage(self) -> float:
        if self.total_payments <= 0:
            return 0.0
        return round(self.processed_payments / self.total_payments * 100, 2)
    
    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "batch_type": self.batch_type,
            "provider": self.provider,
            "month": self.month,
            "status": self.status,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "parent_batch_id": self.parent_batch_id,
            "test_mode": self.test_mode,
            "total_payments": self.total_payments,
            "successful_payments": self.successful_payments,
            "failed_payments": self.failed_payments,
            "pending_payments": self.pending_payments,
            "completion_percentage": self.completion_percentage,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }
    
    def __repr__(self) -> str:
        return f"<BatchPayment {self.batch_id} {self.status}>"
