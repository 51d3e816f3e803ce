"""
Domain exceptions for the payment orchestration engine.
"""

from typing import Optional


class PhoneValidationError(ValueError):
    """Raised when a subscriber number cannot be normalized."""
    
    def __init__(self, message: str, code: str = "INVALID_PHONE"):
        super().__init__(message)
        self.code = code


class ProviderError(Exception):
    """Base class for payment provider failures."""
    
    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Timeout, connection failure or 5xx. Safe to retry."""


class ProviderRejectedError(ProviderError):
    """4xx or explicit business rejection. Never retried."""


class ProviderNotAvailableError(ProviderError):
    """Provider is unknown, disabled or not configured."""


class CapabilityNotSupportedError(ProviderError):
    """Provider does not offer the requested operation."""


class RetryExhaustedError(Exception):
    """Raised by RetryExecutor once every attempt has failed."""
    
    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


class WebhookVerificationError(Exception):
    """Inbound callback failed signature or structure verification."""
    
    def __init__(self, message: str, provider: str, reason: str):
        super().__init__(message)
        self.provider = provider
        self.reason = reason


class BatchNotFoundError(LookupError):
    """No batch with the given id."""


class BatchStateError(Exception):
    """Batch is not in a state that allows the requested operation."""
