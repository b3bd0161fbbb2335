import hashlib
import hmac
import json
import time
from urllib.parse import parse_qs

import httpx
import pytest

from services.errors import PaymentProviderError, PaymentProviderNotConfiguredError
from services.payments import (
    PaymentGatewayRegistry,
    PayPalGateway,
    StripeGateway,
    WebhookSignatureError,
)
from services.payments.paypal import build_custom_id, parse_custom_id, value_to_cents
from services.payments.stripe import verify_signature
from services.pricing import CreditPackageView

STARTER = CreditPackageView(
    id="starter",
    credits=10,
    price_cents=500,
    currency="EUR",
    name_en="Starter",
    name_fr="Démarrage",
)


def _stripe(handler, **kwargs) -> StripeGateway:
    return StripeGateway(
        secret_key="sk_test_123",
        webhook_secret="whsec_test",
        api_base="https://stripe.test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _signed_headers(body: bytes, secret: str = "whsec_test", timestamp=None):
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={digest}"}


def test_stripe_signature_accepts_valid_and_rejects_tampering():
    body = b'{"id": "evt_1"}'
    header = _signed_headers(body)["Stripe-Signature"]
    verify_signature(body, header, "whsec_test", tolerance_seconds=300)

    with pytest.raises(WebhookSignatureError):
        verify_signature(b'{"id": "evt_2"}', header, "whsec_test", tolerance_seconds=300)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, header, "other_secret", tolerance_seconds=300)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, None, "whsec_test", tolerance_seconds=300)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, "not-a-stripe-header", "whsec_test", tolerance_seconds=300)


def test_stripe_signature_rejects_stale_timestamp():
    body = b"{}"
    stale = _signed_headers(body, timestamp=time.time() - 3600)["Stripe-Signature"]
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, stale, "whsec_test", tolerance_seconds=300)


@pytest.mark.asyncio
async def test_stripe_create_checkout_posts_session_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"})

    session = await _stripe(handler).create_checkout(
        user_id="user-1",
        package=STARTER,
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
    )

    assert session.session_id == "cs_test_1"
    assert session.redirect_url.endswith("cs_test_1")
    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["form"]["line_items[0][price_data][unit_amount]"] == ["500"]
    assert seen["form"]["metadata[credits]"] == ["10"]
    assert seen["form"]["metadata[user_id]"] == ["user-1"]


@pytest.mark.asyncio
async def test_stripe_verify_maps_session_status():
    sessions = {
        "cs_paid": {"id": "cs_paid", "payment_status": "paid", "status": "complete", "metadata": {"credits": "10"}, "payment_intent": "pi_1", "amount_total": 500, "currency": "eur"},
        "cs_open": {"id": "cs_open", "payment_status": "unpaid", "status": "open", "metadata": {}},
        "cs_gone": {"id": "cs_gone", "payment_status": "unpaid", "status": "expired", "metadata": {}},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=sessions[request.url.path.rsplit("/", 1)[-1]])

    gateway = _stripe(handler)
    paid = await gateway.verify_payment("cs_paid")
    assert paid.success is True
    assert paid.credits == 10
    assert paid.payment_ref == "pi_1"
    assert paid.as_dict() == {"success": True, "providerRef": "cs_paid", "credits": 10}

    assert (await gateway.verify_payment("cs_open")).status == "pending"
    assert (await gateway.verify_payment("cs_gone")).status == "failed"


@pytest.mark.asyncio
async def test_stripe_network_errors_raise_provider_error():
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(PaymentProviderError) as excinfo:
        await _stripe(timeout_handler).verify_payment("cs_any")
    assert excinfo.value.retryable is True

    def outage_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": {"message": "unavailable"}})

    with pytest.raises(PaymentProviderError):
        await _stripe(outage_handler).verify_payment("cs_any")


@pytest.mark.asyncio
async def test_stripe_webhook_normalizes_events():
    gateway = _stripe(lambda request: httpx.Response(500))
    completed = json.dumps(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "payment_status": "paid",
                    "payment_intent": "pi_1",
                    "amount_total": 500,
                    "currency": "eur",
                    "metadata": {"user_id": "user-1", "credits": "10"},
                }
            },
        }
    ).encode()
    event = await gateway.parse_webhook(completed, _signed_headers(completed))
    assert event.type == "completed"
    assert event.provider_ref == "cs_1"
    assert event.user_id == "user-1"
    assert event.credits == 10

    refunded = json.dumps(
        {"id": "evt_2", "type": "charge.refunded", "data": {"object": {"id": "ch_1", "payment_intent": "pi_1"}}}
    ).encode()
    refund = await gateway.parse_webhook(refunded, _signed_headers(refunded))
    assert refund.type == "refunded"
    assert refund.payment_ref == "pi_1"

    ignored = json.dumps({"id": "evt_3", "type": "customer.created", "data": {"object": {}}}).encode()
    assert await gateway.parse_webhook(ignored, _signed_headers(ignored)) is None

    with pytest.raises(WebhookSignatureError):
        await gateway.parse_webhook(completed, {"Stripe-Signature": "t=1,v1=bad"})


def _paypal(handler) -> PayPalGateway:
    return PayPalGateway(
        client_id="client",
        client_secret="secret",
        webhook_id="WH-1",
        transport=httpx.MockTransport(handler),
    )


def _order(status, capture_status=None):
    unit = {
        "reference_id": "starter",
        "custom_id": build_custom_id("user-1", "starter", 10),
        "amount": {"currency_code": "EUR", "value": "5.00"},
    }
    if capture_status:
        unit["payments"] = {
            "captures": [{"id": "CAP-1", "status": capture_status, "amount": {"currency_code": "EUR", "value": "5.00"}}]
        }
    return {"id": "ORDER-1", "status": status, "purchase_units": [unit]}


def test_paypal_helpers():
    assert parse_custom_id("user-1|starter|10") == ("user-1", 10)
    assert parse_custom_id(None) == (None, None)
    assert value_to_cents("19.99") == 1999


@pytest.mark.asyncio
async def test_paypal_verify_captures_approved_order():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        if request.method == "GET":
            return httpx.Response(200, json=_order("APPROVED"))
        assert request.headers["paypal-request-id"] == "capture-ORDER-1"
        return httpx.Response(201, json=_order("COMPLETED", "COMPLETED"))

    result = await _paypal(handler).verify_payment("ORDER-1")

    assert result.success is True
    assert result.credits == 10
    assert result.payment_ref == "CAP-1"
    assert result.amount_cents == 500
    assert ("POST", "/v2/checkout/orders/ORDER-1/capture") in calls


@pytest.mark.asyncio
async def test_paypal_verify_reports_declined_capture_as_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        return httpx.Response(200, json=_order("COMPLETED", "DECLINED"))

    result = await _paypal(handler).verify_payment("ORDER-1")
    assert result.success is False
    assert result.status == "failed"


@pytest.mark.asyncio
async def test_paypal_webhook_requires_successful_signature_check():
    verdict = {"status": "SUCCESS"}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        payload = json.loads(request.content)
        assert payload["webhook_id"] == "WH-1"
        return httpx.Response(200, json={"verification_status": verdict["status"]})

    headers = {
        "PAYPAL-AUTH-ALGO": "SHA256withRSA",
        "PAYPAL-CERT-URL": "https://api.paypal.test/cert",
        "PAYPAL-TRANSMISSION-ID": "tx-1",
        "PAYPAL-TRANSMISSION-SIG": "sig",
        "PAYPAL-TRANSMISSION-TIME": "2026-10-19T10:00:00Z",
    }
    body = json.dumps(
        {
            "id": "WH-EVT-1",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAP-1",
                "custom_id": "user-1|starter|10",
                "amount": {"currency_code": "EUR", "value": "5.00"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }
    ).encode()

    gateway = _paypal(handler)
    event = await gateway.parse_webhook(body, headers)
    assert event.type == "completed"
    assert event.provider_ref == "ORDER-1"
    assert event.payment_ref == "CAP-1"
    assert event.amount_cents == 500

    verdict["status"] = "FAILURE"
    with pytest.raises(WebhookSignatureError):
        await gateway.parse_webhook(body, headers)
    with pytest.raises(WebhookSignatureError):
        await gateway.parse_webhook(body, {})


def test_registry_rejects_unconfigured_providers():
    registry = PaymentGatewayRegistry([StripeGateway(secret_key=""), _paypal(lambda request: httpx.Response(200))])
    assert registry.get("wallet").provider == "paypal"
    assert registry.available() == [{"provider": "paypal", "method": "wallet"}]
    with pytest.raises(PaymentProviderNotConfiguredError):
        registry.get("card")
    with pytest.raises(PaymentProviderNotConfiguredError):
        registry.get("bitcoin")
