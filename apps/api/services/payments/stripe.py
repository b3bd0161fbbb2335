"""Card payments through Stripe Checkout Sessions."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx
import stripe

from config import settings
from services.payments.base import BasePaymentGateway, header_value
from services.payments.types import (
    CheckoutSession,
    PaymentVerification,
    WebhookEvent,
    WebhookSignatureError,
)
from services.pricing import CreditPackageView

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance_seconds: int,
) -> None:
    """Check a ``t=...,v1=...`` header against the raw body. Raises on any mismatch."""
    if not secret:
        raise WebhookSignatureError("Stripe webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            header,
            secret,
            tolerance_seconds if tolerance_seconds > 0 else None,
        )
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("Webhook body is not valid UTF-8") from exc
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(f"Stripe signature rejected: {exc}") from exc


def _metadata_credits(metadata: Dict[str, Any]) -> Optional[int]:
    raw = metadata.get("credits")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


class StripeGateway(BasePaymentGateway):
    provider = "stripe"
    method = "card"

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(transport=transport)
        self.secret_key = settings.STRIPE_SECRET_KEY if secret_key is None else secret_key
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")

    def is_configured(self) -> bool:
        return bool((self.secret_key or "").strip())

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

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
        form: Dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "locale": "fr" if locale == "fr" else "en",
            "line_items[0][quantity]": 1,
            "line_items[0][price_data][currency]": package.currency.lower(),
            "line_items[0][price_data][unit_amount]": package.price_cents,
            "line_items[0][price_data][product_data][name]": f"{package.total_credits} credits - {name}",
            "metadata[user_id]": user_id,
            "metadata[package_id]": package.id,
            "metadata[credits]": package.total_credits,
        }
        if customer_email:
            form["customer_email"] = customer_email

        async with self._client(self.api_base) as client:
            response = await self._send(
                client,
                "POST",
                "/v1/checkout/sessions",
                data=form,
                headers=self._auth_headers(),
            )
        body = response.json()
        logger.info("Created Stripe checkout session %s for user %s (%s)", body.get("id"), user_id, package.id)
        return CheckoutSession(provider=self.provider, session_id=body["id"], redirect_url=body["url"])

    async def verify_payment(self, provider_ref: str) -> PaymentVerification:
        async with self._client(self.api_base) as client:
            response = await self._send(
                client,
                "GET",
                f"/v1/checkout/sessions/{provider_ref}",
                headers=self._auth_headers(),
            )
        return self._verification_from_session(response.json())

    def _verification_from_session(self, session: Dict[str, Any]) -> PaymentVerification:
        session_id = str(session.get("id") or "")
        metadata = session.get("metadata") or {}
        payment_status = session.get("payment_status")
        session_status = session.get("status")

        if payment_status in {"paid", "no_payment_required"}:
            status = "succeeded"
        elif session_status == "expired":
            status = "failed"
        else:
            status = "pending"

        return PaymentVerification(
            success=status == "succeeded",
            status=status,
            provider_ref=session_id,
            credits=_metadata_credits(metadata),
            payment_ref=session.get("payment_intent"),
            amount_cents=session.get("amount_total"),
            currency=(session.get("currency") or "").upper() or None,
        )

    async def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[WebhookEvent]:
        verify_signature(
            body,
            header_value(headers, SIGNATURE_HEADER),
            self.webhook_secret,
            tolerance_seconds=int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
        )
        try:
            event = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookSignatureError("Webhook body is not valid JSON") from exc

        event_type = event.get("type")
        event_id = str(event.get("id") or "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type in {"checkout.session.completed", "checkout.session.async_payment_succeeded"}:
            if obj.get("payment_status") not in {"paid", "no_payment_required"}:
                logger.info("Stripe session %s completed without payment yet", obj.get("id"))
                return None
            normalized = "completed"
        elif event_type == "checkout.session.async_payment_failed":
            normalized = "failed"
        elif event_type == "checkout.session.expired":
            normalized = "expired"
        elif event_type == "charge.refunded":
            return WebhookEvent(
                provider=self.provider,
                event_id=event_id,
                type="refunded",
                payment_ref=obj.get("payment_intent"),
                amount_cents=obj.get("amount_refunded"),
                currency=(obj.get("currency") or "").upper() or None,
                raw=event,
            )
        else:
            logger.debug("Ignoring Stripe event type %s", event_type)
            return None

        return WebhookEvent(
            provider=self.provider,
            event_id=event_id,
            type=normalized,
            provider_ref=obj.get("id"),
            payment_ref=obj.get("payment_intent"),
            user_id=metadata.get("user_id") or obj.get("client_reference_id"),
            credits=_metadata_credits(metadata),
            amount_cents=obj.get("amount_total"),
            currency=(obj.get("currency") or "").upper() or None,
            raw=event,
        )
