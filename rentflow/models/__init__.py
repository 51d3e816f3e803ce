"""Models package for database models."""

from rentflow.models.tenant import Property, Room, Tenant
from rentflow.models.payment import Payment
from rentflow.models.batch import BatchPayment
from rentflow.models.reconciliation import ReconciliationRecord

__all__ = [
    "Property",
    "Room",
    "Tenant",
    "Payment",
    "BatchPayment",
    "ReconciliationRecord",
]
