"""Public payment gateway utilities."""

from services.payments.base import BasePaymentGateway
from services.payments.paypal import PayPalGateway
from services.payments.providers import (
    PaymentGatewayRegistry,
    build_payment_gateways,
    get_payment_gateways,
    normalize_provider,
)
from services.payments.stripe import StripeGateway
from services.payments.types import (
    CheckoutSession,
    PaymentVerification,
    WebhookEvent,
    WebhookSignatureError,
)

__all__ = [
    "BasePaymentGateway",
    "CheckoutSession",
    "PayPalGateway",
    "PaymentGatewayRegistry",
    "PaymentVerification",
    "StripeGateway",
    "WebhookEvent",
    "WebhookSignatureError",
    "build_payment_gateways",
    "get_payment_gateways",
    "normalize_provider",
]
