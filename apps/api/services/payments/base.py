"""Shared gateway plumbing: the adapter contract and bounded HTTP calls."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

import httpx

from config import settings
from services.errors import PaymentProviderError
from services.payments.types import CheckoutSession, PaymentVerification, WebhookEvent
from services.pricing import CreditPackageView

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def provider_timeout() -> httpx.Timeout:
    return httpx.Timeout(float(settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS), connect=5.0)


class BasePaymentGateway(ABC):
    provider: str
    method: str

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    @abstractmethod
    def is_configured(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def create_checkout(
        self,
        *,
        user_id: str,
        package: CreditPackageView,
        success_url: str,
        cancel_url: str,
        locale: str = "en",
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        raise NotImplementedError

    @abstractmethod
    async def verify_payment(self, provider_ref: str) -> PaymentVerification:
        raise NotImplementedError

    @abstractmethod
    async def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        """Verify and normalize a webhook. ``None`` for events that need no action."""
        raise NotImplementedError

    def _client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, timeout=provider_timeout(), transport=self._transport)

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one provider call; transport failures and 5xx become ``PaymentProviderError``."""
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s %s timed out", self.provider, method, url)
            raise PaymentProviderError(f"{self.provider} request timed out", provider=self.provider) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s %s failed: %s", self.provider, method, url, exc)
            raise PaymentProviderError(f"{self.provider} request failed: {exc}", provider=self.provider) from exc

        if response.status_code >= 400:
            retryable = response.status_code in TRANSIENT_STATUS_CODES
            logger.warning(
                "%s %s %s returned HTTP %s",
                self.provider,
                method,
                url,
                response.status_code,
            )
            raise PaymentProviderError(
                f"{self.provider} returned HTTP {response.status_code}",
                provider=self.provider,
                retryable=retryable,
            )
        return response


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over plain dicts and Starlette headers alike."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
