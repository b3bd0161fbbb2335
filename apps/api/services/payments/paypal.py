"""Wallet payments through PayPal Orders v2."""

from __future__ import annotations

import json
import logging
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from config import settings
from services.errors import PaymentProviderError
from services.payments.base import BasePaymentGateway, header_value
from services.payments.types import (
    CheckoutSession,
    PaymentVerification,
    WebhookEvent,
    WebhookSignatureError,
)
from services.pricing import CreditPackageView

logger = logging.getLogger(__name__)

LIVE_API_BASE = "https://api-m.paypal.com"
SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"

TRANSMISSION_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


def cents_to_value(amount_cents: int) -> str:
    return str((Decimal(int(amount_cents)) / 100).quantize(Decimal("0.01")))


def value_to_cents(value: Any) -> Optional[int]:
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, TypeError, ValueError):
        return None


def build_custom_id(user_id: str, package_id: str, credits: int) -> str:
    return f"{user_id}|{package_id}|{credits}"


def parse_custom_id(custom_id: Optional[str]) -> Tuple[Optional[str], Optional[int]]:
    """Return ``(user_id, credits)`` from a purchase unit custom id."""
    if not custom_id:
        return None, None
    user_id, _, rest = str(custom_id).partition("|")
    _, _, credits = rest.partition("|")
    try:
        return user_id or None, int(credits)
    except ValueError:
        return user_id or None, None


class PayPalGateway(BasePaymentGateway):
    provider = "paypal"
    method = "wallet"

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        webhook_id: Optional[str] = None,
        live: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(transport=transport)
        self.client_id = settings.PAYPAL_CLIENT_ID if client_id is None else client_id
        self.client_secret = settings.PAYPAL_CLIENT_SECRET if client_secret is None else client_secret
        self.webhook_id = settings.PAYPAL_WEBHOOK_ID if webhook_id is None else webhook_id
        is_live = settings.PAYPAL_LIVE if live is None else live
        self.api_base = LIVE_API_BASE if is_live else SANDBOX_API_BASE
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        return bool((self.client_id or "").strip() and (self.client_secret or "").strip())

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token and time.time() < self._token_expires_at:
            return self._token
        response = await self._send(
            client,
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        body = response.json()
        token = body.get("access_token")
        if not token:
            raise PaymentProviderError("PayPal did not return an access token", provider=self.provider)
        expires_in = int(body.get("expires_in") or 300)
        self._token = token
        self._token_expires_at = time.time() + max(expires_in - 60, 60)
        return token

    async def _auth_headers(self, client: httpx.AsyncClient) -> Dict[str, str]:
        token = await self._access_token(client)
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

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
        name = package.name_fr if locale == "fr" else package.name_en
        order = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": package.id,
                    "custom_id": build_custom_id(user_id, package.id, package.total_credits),
                    "description": f"{package.total_credits} credits - {name}",
                    "amount": {
                        "currency_code": package.currency.upper(),
                        "value": cents_to_value(package.price_cents),
                    },
                }
            ],
            "application_context": {
                "brand_name": "MysticOracle",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "locale": "fr-FR" if locale == "fr" else "en-US",
                "return_url": success_url,
                "cancel_url": cancel_url,
            },
        }
        async with self._client(self.api_base) as client:
            headers = await self._auth_headers(client)
            response = await self._send(client, "POST", "/v2/checkout/orders", json=order, headers=headers)
        body = response.json()
        approve_url = next(
            (link.get("href") for link in body.get("links") or [] if link.get("rel") in {"approve", "payer-action"}),
            None,
        )
        if not approve_url:
            raise PaymentProviderError("PayPal order has no approval link", provider=self.provider, retryable=False)
        logger.info("Created PayPal order %s for user %s (%s)", body.get("id"), user_id, package.id)
        return CheckoutSession(provider=self.provider, session_id=body["id"], redirect_url=approve_url)

    async def verify_payment(self, provider_ref: str) -> PaymentVerification:
        """Fetch the order and capture it when the payer has approved it."""
        async with self._client(self.api_base) as client:
            headers = await self._auth_headers(client)
            response = await self._send(client, "GET", f"/v2/checkout/orders/{provider_ref}", headers=headers)
            order = response.json()
            if order.get("status") == "APPROVED":
                capture_headers = {**headers, "PayPal-Request-Id": f"capture-{provider_ref}"}
                response = await self._send(
                    client,
                    "POST",
                    f"/v2/checkout/orders/{provider_ref}/capture",
                    headers=capture_headers,
                )
                order = response.json()
                logger.info("Captured PayPal order %s (status %s)", provider_ref, order.get("status"))
        return self._verification_from_order(provider_ref, order)

    def _verification_from_order(self, provider_ref: str, order: Dict[str, Any]) -> PaymentVerification:
        units = order.get("purchase_units") or [{}]
        unit = units[0] or {}
        captures = ((unit.get("payments") or {}).get("captures")) or []
        capture = captures[0] if captures else {}
        _, credits = parse_custom_id(unit.get("custom_id") or capture.get("custom_id"))
        amount = capture.get("amount") or unit.get("amount") or {}

        order_status = order.get("status")
        capture_status = capture.get("status")
        if order_status == "COMPLETED" and capture_status in {None, "COMPLETED"}:
            status = "succeeded"
        elif order_status == "VOIDED" or capture_status in {"DECLINED", "FAILED"}:
            status = "failed"
        else:
            status = "pending"

        return PaymentVerification(
            success=status == "succeeded",
            status=status,
            provider_ref=str(order.get("id") or provider_ref),
            credits=credits,
            payment_ref=capture.get("id"),
            amount_cents=value_to_cents(amount.get("value")) if amount else None,
            currency=amount.get("currency_code") if amount else None,
        )

    async def _verify_signature(self, event: Dict[str, Any], headers: Mapping[str, str]) -> None:
        if not self.webhook_id:
            raise WebhookSignatureError("PayPal webhook id is not configured")
        fields: Dict[str, Any] = {}
        for field_name, header_name in TRANSMISSION_HEADERS.items():
            value = header_value(headers, header_name)
            if not value:
                raise WebhookSignatureError(f"Missing {header_name} header")
            fields[field_name] = value
        fields["webhook_id"] = self.webhook_id
        fields["webhook_event"] = event

        async with self._client(self.api_base) as client:
            auth_headers = await self._auth_headers(client)
            response = await self._send(
                client,
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json=fields,
                headers=auth_headers,
            )
        if response.json().get("verification_status") != "SUCCESS":
            raise WebhookSignatureError("PayPal signature verification failed")

    async def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        try:
            event = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookSignatureError("Webhook body is not valid JSON") from exc
        await self._verify_signature(event, headers)

        event_type = event.get("event_type")
        event_id = str(event.get("id") or "")
        resource = event.get("resource") or {}
        amount = resource.get("amount") or {}
        user_id, credits = parse_custom_id(resource.get("custom_id"))
        common = {
            "provider": self.provider,
            "event_id": event_id,
            "user_id": user_id,
            "credits": credits,
            "amount_cents": value_to_cents(amount.get("value")) if amount else None,
            "currency": amount.get("currency_code") if amount else None,
            "raw": event,
        }

        if event_type == "CHECKOUT.ORDER.APPROVED":
            return WebhookEvent(type="approved", provider_ref=resource.get("id"), **common)

        related = ((resource.get("supplementary_data") or {}).get("related_ids")) or {}
        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            return WebhookEvent(
                type="completed",
                provider_ref=related.get("order_id"),
                payment_ref=resource.get("id"),
                **common,
            )
        if event_type == "PAYMENT.CAPTURE.DENIED":
            return WebhookEvent(
                type="failed",
                provider_ref=related.get("order_id"),
                payment_ref=resource.get("id"),
                **common,
            )
        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            # The resource is the refund; its capture is the "up" link.
            capture_id = related.get("capture_id")
            if not capture_id:
                up_link = next((link.get("href") for link in resource.get("links") or [] if link.get("rel") == "up"), None)
                capture_id = up_link.rstrip("/").rsplit("/", 1)[-1] if up_link else None
            return WebhookEvent(
                type="refunded",
                provider_ref=related.get("order_id"),
                payment_ref=capture_id,
                **common,
            )

        logger.debug("Ignoring PayPal event type %s", event_type)
        return None
