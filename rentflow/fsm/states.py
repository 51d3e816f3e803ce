"""
State and vocabulary definitions for payments and batches.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    """
    Lifecycle of a single payment record.
    Only pending -> processing -> terminal is allowed; terminal states are final.
    """
    
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    
    @property
    def is_terminal(self) -> bool:
        return self in (
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        )
    
    @property
    def counter_column(self) -> str:
        """BatchPayment counter this status is tallied under."""
        if self == PaymentStatus.COMPLETED:
            return "successful_payments"
        if self.is_terminal:
            return "failed_payments"
        return "pending_payments"


class BatchStatus(str, Enum):
    """Status of a batch run."""
    
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    
    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


class BatchType(str, Enum):
    """Kind of batch run."""
    
    MONTHLY_RENT = "monthly_rent"
    BULK_PUSH = "bulk_push"
    RECONCILIATION = "reconciliation"


class BatchPriority(str, Enum):
    """Dispatch priority. Retries run at HIGH."""
    
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class PaymentMethod(str, Enum):
    """How the money moved."""
    
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CHECK = "check"
    AIRTEL_MONEY = "airtel_money"
    TKASH = "tkash"


class ProviderType(str, Enum):
    """
    External payment networks.
    Closed set - adding a member requires an adapter and capabilities entry.
    """
    
    JENGA = "jenga"
    SAFARICOM = "safaricom"
    COOP = "coop"
    
    @property
    def display_name(self) -> str:
        names = {
            ProviderType.JENGA: "Jenga (Equity Bank)",
            ProviderType.SAFARICOM: "Safaricom M-Pesa",
            ProviderType.COOP: "COOP Bank",
        }
        return names[self]
    
    @property
    def payment_method(self) -> PaymentMethod:
        """Ledger payment method for money collected through this provider."""
        if self == ProviderType.COOP:
            return PaymentMethod.BANK_TRANSFER
        return PaymentMethod.MPESA


class ReconciliationStatus(str, Enum):
    """Outcome of matching one statement line to the ledger."""
    
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    DISCREPANCY = "discrepancy"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
