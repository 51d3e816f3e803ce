"""
Provider Registry - resolves configuration and holds one adapter per network.

Built once at startup and passed to the services that need it.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Type

import httpx

from rentflow.config import Settings
from rentflow.errors import ProviderNotAvailableError
from rentflow.fsm.states import ProviderType
from rentflow.providers.base import Capability, PaymentProvider, ProviderCapabilities, ProviderConfig
from rentflow.providers.coop import CoopProvider
from rentflow.providers.jenga import JengaProvider
from rentflow.providers.safaricom import SafaricomProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[ProviderType, Type[PaymentProvider]] = {
    ProviderType.JENGA: JengaProvider,
    ProviderType.SAFARICOM: SafaricomProvider,
    ProviderType.COOP: CoopProvider,
}

DEFAULT_PRIORITY = [ProviderType.SAFARICOM, ProviderType.JENGA, ProviderType.COOP]

CAPABILITY_PREFERENCE: Dict[Capability, List[ProviderType]] = {
    Capability.PUSH_PAYMENT: [ProviderType.SAFARICOM, ProviderType.JENGA, ProviderType.COOP],
    Capability.B2C: [ProviderType.JENGA, ProviderType.SAFARICOM, ProviderType.COOP],
    Capability.B2B: [ProviderType.COOP, ProviderType.JENGA, ProviderType.SAFARICOM],
}

BASE_URLS = {
    ProviderType.JENGA: ("https://api.jengahq.io", "https://sandbox.jengahq.io"),
    ProviderType.SAFARICOM: ("https://api.safaricom.co.ke", "https://sandbox.safaricom.co.ke"),
    ProviderType.COOP: ("https://api.co-opbank.co.ke", "https://sandbox.co-opbank.co.ke"),
}


def _resolve(
    provider: ProviderType,
    settings: Settings,
    credentials: Dict[str, str],
    base_url_override: str,
    callback_override: str,
    webhook_secret: str,
    timeout: float,
) -> ProviderConfig:
    missing = tuple(
        f"{provider.value}_{name} is required"
        for name, value in credentials.items()
        if not value
    )
    production_url, sandbox_url = BASE_URLS[provider]
    return ProviderConfig(
        provider=provider,
        enabled=not missing,
        sandbox=not settings.is_production,
        base_url=(base_url_override or (production_url if settings.is_production else sandbox_url)).rstrip("/"),
        credentials=credentials,
        callback_url=callback_override or f"{settings.base_url.rstrip('/')}/webhooks/{provider.value}",
        webhook_secret=webhook_secret,
        timeout=timeout,
        allow_unsigned_callbacks=settings.is_development,
        validation_errors=missing,
    )


def build_provider_configs(settings: Settings) -> Dict[ProviderType, ProviderConfig]:
    """ProviderConfig for every network. Disabled when credentials are missing."""
    return {
        ProviderType.JENGA: _resolve(
            ProviderType.JENGA,
            settings,
            credentials={
                "api_key": settings.jenga_api_key,
                "consumer_key": settings.jenga_consumer_key,
                "consumer_secret": settings.jenga_consumer_secret,
                "merchant_code": settings.jenga_merchant_code,
            },
            base_url_override=settings.jenga_base_url,
            callback_override=settings.jenga_callback_url,
            webhook_secret=settings.jenga_webhook_secret,
            timeout=settings.jenga_timeout,
        ),
        ProviderType.SAFARICOM: _resolve(
            ProviderType.SAFARICOM,
            settings,
            credentials={
                "consumer_key": settings.safaricom_consumer_key,
                "consumer_secret": settings.safaricom_consumer_secret,
                "short_code": settings.safaricom_short_code,
                "passkey": settings.safaricom_passkey,
                "initiator_name": settings.safaricom_initiator_name,
                "security_credential": settings.safaricom_security_credential,
            },
            base_url_override="",
            callback_override=settings.safaricom_callback_url,
            webhook_secret=settings.safaricom_webhook_secret,
            timeout=settings.safaricom_timeout,
        ),
        ProviderType.COOP: _resolve(
            ProviderType.COOP,
            settings,
            credentials={
                "api_key": settings.coop_api_key,
                "merchant_code": settings.coop_merchant_code,
            },
            base_url_override=settings.coop_base_url,
            callback_override=settings.coop_callback_url,
            webhook_secret=settings.coop_webhook_secret,
            timeout=settings.coop_timeout,
        ),
    }


class ProviderRegistry:
    """
    Holds one adapter per ProviderType.

    Adapters exist for every network so inbound callbacks can always be
    verified; only enabled ones are offered for dispatch.
    """

    def __init__(
        self,
        providers: Dict[ProviderType, PaymentProvider],
        default: Optional[ProviderType] = None,
    ):
        self._providers = providers
        self._default = default

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> "ProviderRegistry":
        configs = build_provider_configs(settings)
        providers = {
            provider: PROVIDER_CLASSES[provider](config, client)
            for provider, config in configs.items()
        }
        for provider, config in configs.items():
            if config.enabled:
                logger.info(f"Payment provider {provider.value} enabled (sandbox={config.sandbox})")
            else:
                logger.info(
                    f"Payment provider {provider.value} disabled: "
                    f"{', '.join(config.validation_errors)}"
                )
        default = ProviderType(settings.default_payment_provider) if settings.default_payment_provider else None
        return cls(providers, default=default)

    def adapter(self, provider) -> PaymentProvider:
        """Adapter regardless of enabled state (used for callback verification)."""
        try:
            return self._providers[ProviderType(provider)]
        except (KeyError, ValueError):
            raise ProviderNotAvailableError(f"Unknown payment provider: {provider}", provider=str(provider))

    def get(self, provider) -> PaymentProvider:
        """Enabled adapter for `provider`."""
        adapter = self.adapter(provider)
        if not adapter.config.enabled:
            raise ProviderNotAvailableError(
                f"{adapter.provider_type.display_name} is not configured",
                provider=adapter.name,
            )
        return adapter

    def available(self) -> List[ProviderType]:
        return [p for p in DEFAULT_PRIORITY if p in self._providers and self._providers[p].config.enabled]

    def default_provider(self) -> PaymentProvider:
        """Configured default if enabled, else the first enabled by priority."""
        if self._default and self._default in self.available():
            return self._providers[self._default]
        available = self.available()
        if not available:
            raise ProviderNotAvailableError("No payment providers are configured")
        return self._providers[available[0]]

    def best_provider_for(self, capability: Capability) -> PaymentProvider:
        capability = Capability(capability)
        order = CAPABILITY_PREFERENCE.get(capability, DEFAULT_PRIORITY)
        for provider in order:
            adapter = self._providers.get(provider)
            if adapter and adapter.config.enabled and adapter.capabilities.supports(capability):
                return adapter
        raise ProviderNotAvailableError(f"No enabled provider supports {capability.value}")

    def capabilities(self) -> Dict[str, ProviderCapabilities]:
        return {p.value: a.capabilities for p, a in self._providers.items()}

    def statuses(self) -> List[dict]:
        """Configuration summary for every provider."""
        return [
            {
                "provider": p.value,
                "name": p.display_name,
                "enabled": a.config.enabled,
                "sandbox": a.config.sandbox,
                "callback_url": a.config.callback_url,
                "webhook_secret_configured": bool(a.config.webhook_secret),
                "capabilities": a.capabilities.model_dump(),
                "validation_errors": list(a.config.validation_errors),
            }
            for p, a in self._providers.items()
        ]

    async def health(self) -> Dict[str, bool]:
        """Health of every enabled provider, checked concurrently."""
        enabled = [self._providers[p] for p in self.available()]
        results = await asyncio.gather(
            *[a.health_check() for a in enabled],
            return_exceptions=True,
        )
        health: Dict[str, bool] = {}
        for adapter, result in zip(enabled, results):
            if isinstance(result, BaseException):
                logger.warning(f"Health check for {adapter.name} raised: {result}")
                health[adapter.name] = False
            else:
                health[adapter.name] = bool(result)
        return health
