"""Payment gateway contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


ProviderKey = Literal["stripe", "paypal"]
VerificationStatus = Literal["succeeded", "pending", "failed", "cancelled"]
WebhookEventType = Literal["completed", "approved", "failed", "expired", "refunded"]

# Client-facing payment method names accepted as provider aliases.
PROVIDER_ALIASES: Dict[str, str] = {"card": "stripe", "wallet": "paypal"}


class WebhookSignatureError(ValueError):
    """Raised when a webhook body does not carry a valid provider signature."""


@dataclass(frozen=True)
class CheckoutSession:
    provider: str
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class PaymentVerification:
    success: bool
    status: VerificationStatus
    provider_ref: str
    credits: Optional[int] = None
    payment_ref: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "providerRef": self.provider_ref}
        if self.credits is not None:
            payload["credits"] = self.credits
        return payload


@dataclass(frozen=True)
class WebhookEvent:
    provider: str
    event_id: str
    type: WebhookEventType
    provider_ref: Optional[str] = None
    payment_ref: Optional[str] = None
    user_id: Optional[str] = None
    credits: Optional[int] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)
