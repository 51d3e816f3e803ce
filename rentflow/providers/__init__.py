"""Payment provider adapters."""

from rentflow.providers.base import (
    Balance,
    Capability,
    PaymentProvider,
    PaymentRequest,
    PaymentResponse,
    ProviderCapabilities,
    ProviderConfig,
    RawCallback,
    WebhookCallback,
)
from rentflow.providers.coop import CoopProvider
from rentflow.providers.jenga import JengaProvider
from rentflow.providers.registry import ProviderRegistry
from rentflow.providers.safaricom import SafaricomProvider

__all__ = [
    "Balance",
    "Capability",
    "PaymentProvider",
    "PaymentRequest",
    "PaymentResponse",
    "ProviderCapabilities",
    "ProviderConfig",
    "RawCallback",
    "WebhookCallback",
    "CoopProvider",
    "JengaProvider",
    "ProviderRegistry",
    "SafaricomProvider",
]
