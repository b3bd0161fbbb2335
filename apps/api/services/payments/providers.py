"""Gateway registry built from settings."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from services.errors import PaymentProviderNotConfiguredError
from services.payments.base import BasePaymentGateway
from services.payments.paypal import PayPalGateway
from services.payments.stripe import StripeGateway
from services.payments.types import PROVIDER_ALIASES


def normalize_provider(provider: str) -> str:
    key = str(provider or "").strip().lower()
    return PROVIDER_ALIASES.get(key, key)


class PaymentGatewayRegistry:
    def __init__(self, gateways: Iterable[BasePaymentGateway]) -> None:
        self._gateways: Dict[str, BasePaymentGateway] = {gateway.provider: gateway for gateway in gateways}

    def get(self, provider: str) -> BasePaymentGateway:
        """Return a configured gateway or raise ``PaymentProviderNotConfiguredError``."""
        key = normalize_provider(provider)
        gateway = self._gateways.get(key)
        if gateway is None or not gateway.is_configured():
            raise PaymentProviderNotConfiguredError(key or str(provider))
        return gateway

    def available(self) -> List[Dict[str, str]]:
        return [
            {"provider": gateway.provider, "method": gateway.method}
            for gateway in self._gateways.values()
            if gateway.is_configured()
        ]


_registry: Optional[PaymentGatewayRegistry] = None


def build_payment_gateways() -> PaymentGatewayRegistry:
    return PaymentGatewayRegistry([StripeGateway(), PayPalGateway()])


def get_payment_gateways() -> PaymentGatewayRegistry:
    """FastAPI dependency; tests override it with fake gateways."""
    global _registry
    if _registry is None:
        _registry = build_payment_gateways()
    return _registry
