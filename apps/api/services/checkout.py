"""Checkout orchestration: create, verify, cancel and webhook settlement.

A payment can be confirmed by the user's verification call or by the
provider's webhook, in either order. Both paths grant credits through the
ledger with the idempotency key ``payment:<provider>:<ref>``, so whichever
arrives first performs the grant and the other is a logged no-op.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment_transaction import PaymentTransaction
from models.user import User
from services.credits import LedgerCategory, LedgerOutcome, credit, get_balance, reverse_purchase
from services.errors import InvalidStateTransition, PaymentProviderError, TransactionNotFoundError
from services.messages import translate
from services.payments.base import BasePaymentGateway
from services.payments.providers import PaymentGatewayRegistry, normalize_provider
from services.payments.types import CheckoutSession, PaymentVerification, WebhookEvent
from services.pricing import get_package
from services.spending_limits import PurchaseDecision, check_purchase_allowed

logger = logging.getLogger(__name__)


class VerificationState(str, enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    VERIFIED = "verified"
    FAILED = "failed"
    UNKNOWN = "unknown"


VERIFICATION_TRANSITIONS = {
    VerificationState.IDLE: {VerificationState.CHECKING},
    VerificationState.CHECKING: {
        VerificationState.VERIFIED,
        VerificationState.FAILED,
        VerificationState.UNKNOWN,
    },
    VerificationState.UNKNOWN: {VerificationState.CHECKING},
    VerificationState.VERIFIED: set(),
    VerificationState.FAILED: set(),
}


class VerificationFlow:
    """Explicit ``idle -> checking -> verified | failed | unknown`` state machine.

    ``unknown`` may go back to ``checking`` on retry; ``verified`` and
    ``failed`` are terminal.
    """

    def __init__(self) -> None:
        self.state = VerificationState.IDLE
        self.history: List[VerificationState] = [VerificationState.IDLE]

    def transition(self, target: VerificationState) -> VerificationState:
        if target not in VERIFICATION_TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"Cannot move verification from {self.state.value} to {target.value}")
        self.state = target
        self.history.append(target)
        return target

    def start(self) -> VerificationState:
        return self.transition(VerificationState.CHECKING)

    def succeed(self) -> VerificationState:
        return self.transition(VerificationState.VERIFIED)

    def fail(self) -> VerificationState:
        return self.transition(VerificationState.FAILED)

    def mark_unknown(self) -> VerificationState:
        return self.transition(VerificationState.UNKNOWN)

    @property
    def is_terminal(self) -> bool:
        return not VERIFICATION_TRANSITIONS[self.state]


TX_PENDING = "pending"
TX_SUCCEEDED = "succeeded"
TX_FAILED = "failed"
TX_CANCELLED = "cancelled"
TX_REFUNDED = "refunded"

TRANSACTION_TRANSITIONS = {
    TX_PENDING: {TX_SUCCEEDED, TX_FAILED, TX_CANCELLED},
    TX_FAILED: set(),
    TX_CANCELLED: set(),
    TX_SUCCEEDED: {TX_REFUNDED},
    TX_REFUNDED: set(),
}

LATE_SUCCESS = "late_success"
NEEDS_REVIEW = "needs_review"


def transition_transaction(tx: PaymentTransaction, target: str) -> None:
    current = tx.status or TX_PENDING
    if target not in TRANSACTION_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition(f"Transaction {tx.id} cannot move from {current} to {target}")
    tx.status = target
    tx.updated_at = datetime.now(timezone.utc)


@dataclass(frozen=True)
class CheckoutOutcome:
    ok: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    session: Optional[CheckoutSession] = None
    transaction_id: Optional[str] = None
    decision: Optional[PurchaseDecision] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "reason": self.reason, "message": self.message}
        if self.session is not None:
            payload.update(
                {
                    "provider": self.session.provider,
                    "provider_ref": self.session.session_id,
                    "redirect_url": self.session.redirect_url,
                    "transaction_id": self.transaction_id,
                }
            )
        if self.decision is not None:
            payload["warning_level"] = self.decision.warning_level
            payload["warnings"] = list(self.decision.warnings)
        return payload


@dataclass(frozen=True)
class VerificationResult:
    state: VerificationState
    provider: str
    provider_ref: str
    message: str
    transaction_status: str
    credits_granted: int = 0
    balance: Optional[int] = None
    applied: bool = False
    history: Tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "success": self.state == VerificationState.VERIFIED,
            "provider": self.provider,
            "provider_ref": self.provider_ref,
            "credits": self.credits_granted,
            "balance": self.balance,
            "applied": self.applied,
            "transaction_status": self.transaction_status,
            "message": self.message,
        }


_checkout_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _checkout_lock(user_id: str) -> asyncio.Lock:
    lock = _checkout_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _checkout_locks[user_id] = lock
    return lock


async def _lock_account_row(db: AsyncSession, user_id: str) -> None:
    # Row lock for other API processes; SQLite renders no FOR UPDATE.
    await db.execute(select(User.id).where(User.id == user_id).with_for_update())


def _default_return_urls(provider: str) -> Tuple[str, str]:
    base = settings.FRONTEND_URL.rstrip("/")
    success = f"{base}/payment/success?provider={provider}"
    if provider == "stripe":
        success += "&session_id={CHECKOUT_SESSION_ID}"
    return success, f"{base}/payment/cancelled?provider={provider}"


async def create_checkout(
    user_id: str,
    db: AsyncSession,
    *,
    package_id: str,
    provider: str,
    gateways: PaymentGatewayRegistry,
    locale: str = "en",
    customer_email: Optional[str] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> CheckoutOutcome:
    """Open a hosted checkout. Denials come back as outcomes, never as a session.

    The limit check and the pending transaction insert run under a per-user
    lock, so checkouts opened at the same moment are counted one after another.
    """
    package = await get_package(package_id, db)
    if package is None:
        return CheckoutOutcome(ok=False, reason="package_not_found", message=translate("package_not_found", locale))

    async with _checkout_lock(user_id):
        await _lock_account_row(db, user_id)
        decision = await check_purchase_allowed(user_id, db, amount_cents=package.price_cents, locale=locale)
        if not decision.allowed:
            return CheckoutOutcome(ok=False, reason=decision.reason, message=decision.message, decision=decision)

        gateway = gateways.get(provider)
        default_success, default_cancel = _default_return_urls(gateway.provider)
        session = await gateway.create_checkout(
            user_id=user_id,
            package=package,
            success_url=success_url or default_success,
            cancel_url=cancel_url or default_cancel,
            locale=locale,
            customer_email=customer_email,
        )

        tx = PaymentTransaction(
            user_id=user_id,
            provider=gateway.provider,
            provider_ref=session.session_id,
            package_id=package.id,
            credits=package.total_credits,
            amount_cents=package.price_cents,
            currency=package.currency,
            status=TX_PENDING,
        )
        db.add(tx)
        await db.commit()
    logger.info(
        "Checkout %s opened for user %s: %s via %s (%s cents)",
        session.session_id,
        user_id,
        package.id,
        gateway.provider,
        package.price_cents,
    )
    return CheckoutOutcome(
        ok=True,
        message=decision.message,
        session=session,
        transaction_id=tx.id,
        decision=decision,
    )


async def _get_transaction(db: AsyncSession, transaction_id: str) -> PaymentTransaction:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_user_transaction(user_id: str, db: AsyncSession, provider_ref: str) -> PaymentTransaction:
    result = await db.execute(
        select(PaymentTransaction).where(
            PaymentTransaction.provider_ref == provider_ref,
            PaymentTransaction.user_id == user_id,
        )
    )
    tx = result.scalar_one_or_none()
    if tx is None:
        raise TransactionNotFoundError(provider_ref)
    return tx


async def _find_for_event(db: AsyncSession, event: WebhookEvent) -> Optional[PaymentTransaction]:
    refs = []
    if event.provider_ref:
        refs.append(PaymentTransaction.provider_ref == event.provider_ref)
    if event.payment_ref:
        refs.append(PaymentTransaction.payment_ref == event.payment_ref)
    if not refs:
        return None
    result = await db.execute(
        select(PaymentTransaction).where(PaymentTransaction.provider == event.provider, or_(*refs)).limit(1)
    )
    return result.scalar_one_or_none()


async def complete_transaction(
    db: AsyncSession,
    tx: PaymentTransaction,
    *,
    payment_ref: Optional[str] = None,
    amount_cents: Optional[int] = None,
    source: str,
) -> Optional[LedgerOutcome]:
    """Grant the purchased credits and mark the transaction succeeded in one commit.

    Returns None when the transaction had already been closed as failed or
    cancelled: no credits are granted and the transaction is flagged for review.
    """
    tx_id, user_id, provider, provider_ref = tx.id, tx.user_id, tx.provider, tx.provider_ref
    tx = await _get_transaction(db, tx_id)
    if tx.status in {TX_FAILED, TX_CANCELLED}:
        await _flag_late_success(db, tx, payment_ref=payment_ref, source=source)
        return None

    if amount_cents is not None and int(amount_cents) != int(tx.amount_cents):
        logger.warning(
            "Provider amount %s differs from checkout amount %s for %s",
            amount_cents,
            tx.amount_cents,
            provider_ref,
        )

    outcome = await credit(
        user_id,
        db,
        amount=tx.credits,
        category=LedgerCategory.PURCHASE,
        description=f"Purchased {tx.credits} credits ({tx.package_id})",
        idempotency_key=f"payment:{provider}:{provider_ref}",
        provider=provider,
        provider_ref=provider_ref,
        payment_amount_cents=tx.amount_cents,
        currency=tx.currency,
        reference_type="payment_transaction",
        reference_id=tx_id,
        commit=False,
    )

    tx = await _get_transaction(db, tx_id)
    if tx.status in {TX_FAILED, TX_CANCELLED}:
        # Closed while the grant was in flight; the uncommitted grant is dropped.
        await db.rollback()
        tx = await _get_transaction(db, tx_id)
        await _flag_late_success(db, tx, payment_ref=payment_ref, source=source)
        return None
    if tx.status == TX_PENDING:
        transition_transaction(tx, TX_SUCCEEDED)
        tx.credits_granted = outcome.amount
        tx.ledger_event_id = outcome.event_id
        tx.payment_ref = payment_ref or tx.payment_ref
        tx.completed_at = datetime.now(timezone.utc)
    elif payment_ref and not tx.payment_ref:
        tx.payment_ref = payment_ref
    await db.commit()

    if outcome.applied:
        logger.info("Payment %s completed via %s: %s credits to user %s", provider_ref, source, tx.credits, user_id)
    else:
        logger.info("Payment %s already completed; %s confirmation ignored", provider_ref, source)
    return outcome


async def _mark_failed(db: AsyncSession, tx: PaymentTransaction, reason: str) -> None:
    if tx.status != TX_PENDING:
        return
    transition_transaction(tx, TX_FAILED)
    tx.failure_reason = reason
    await db.commit()
    logger.info("Payment %s marked failed: %s", tx.provider_ref, reason)


async def _flag_late_success(
    db: AsyncSession,
    tx: PaymentTransaction,
    *,
    payment_ref: Optional[str],
    source: str,
) -> None:
    logger.error(
        "Provider reports success via %s for %s transaction %s (user %s, %s cents); flagged for reconciliation",
        source,
        tx.status,
        tx.provider_ref,
        tx.user_id,
        tx.amount_cents,
    )
    tx.anomaly = LATE_SUCCESS
    tx.payment_ref = tx.payment_ref or payment_ref
    tx.updated_at = datetime.now(timezone.utc)
    await db.commit()


async def _settle(
    db: AsyncSession,
    tx: PaymentTransaction,
    gateway: BasePaymentGateway,
    verification: PaymentVerification,
    *,
    source: str,
) -> Tuple[str, Optional[LedgerOutcome]]:
    if verification.success:
        outcome = await complete_transaction(
            db,
            tx,
            payment_ref=verification.payment_ref,
            amount_cents=verification.amount_cents,
            source=source,
        )
        if outcome is None:
            return NEEDS_REVIEW, None
        return TX_SUCCEEDED, outcome
    if verification.status in {"failed", "cancelled"}:
        await _mark_failed(db, tx, f"{gateway.provider} reported {verification.status}")
        return TX_FAILED, None
    return TX_PENDING, None


async def verify_payment(
    user_id: str,
    db: AsyncSession,
    *,
    provider_ref: str,
    gateways: PaymentGatewayRegistry,
    locale: str = "en",
    timeout: Optional[float] = None,
    flow: Optional[VerificationFlow] = None,
) -> VerificationResult:
    """Ask the provider whether the payment went through and settle it.

    Network errors, timeouts and still-pending payments end in ``unknown``:
    the charge may already have succeeded, so the user is sent to check their
    balance and may safely retry verification.
    """
    tx = await get_user_transaction(user_id, db, provider_ref)
    flow = flow or VerificationFlow()
    flow.start()

    def result(state: VerificationState, message: str, **extra: Any) -> VerificationResult:
        return VerificationResult(
            state=state,
            provider=tx.provider,
            provider_ref=provider_ref,
            message=message,
            transaction_status=extra.pop("status", tx.status),
            history=tuple(item.value for item in flow.history),
            **extra,
        )

    if tx.status in {TX_SUCCEEDED, TX_REFUNDED}:
        flow.succeed()
        summary = await get_balance(user_id, db)
        granted = int(tx.credits_granted or 0)
        return result(
            VerificationState.VERIFIED,
            translate("payment_verified", locale, credits=granted),
            credits_granted=granted,
            balance=summary.balance,
        )
    if tx.status in {TX_FAILED, TX_CANCELLED}:
        flow.fail()
        key = "payment_cancelled" if tx.status == TX_CANCELLED else "payment_failed"
        return result(VerificationState.FAILED, translate(key, locale))

    gateway = gateways.get(tx.provider)
    limit = float(settings.PAYMENT_VERIFY_TIMEOUT_SECONDS if timeout is None else timeout)
    try:
        verification = await asyncio.wait_for(gateway.verify_payment(provider_ref), timeout=limit)
    except asyncio.TimeoutError:
        logger.warning("Verification of %s timed out after %.1fs", provider_ref, limit)
        flow.mark_unknown()
        return result(VerificationState.UNKNOWN, translate("payment_unknown", locale))
    except PaymentProviderError as exc:
        logger.warning("Verification of %s failed at the provider: %s", provider_ref, exc)
        flow.mark_unknown()
        return result(VerificationState.UNKNOWN, translate("payment_unknown", locale))

    status, outcome = await _settle(db, tx, gateway, verification, source="verification")
    if status == TX_SUCCEEDED and outcome is not None:
        flow.succeed()
        return result(
            VerificationState.VERIFIED,
            translate("payment_verified", locale, credits=outcome.amount),
            credits_granted=outcome.amount,
            balance=outcome.balance,
            applied=outcome.applied,
            status=TX_SUCCEEDED,
        )
    if status == TX_FAILED:
        flow.fail()
        return result(VerificationState.FAILED, translate("payment_failed", locale), status=TX_FAILED)
    if status == NEEDS_REVIEW:
        flow.fail()
        return result(VerificationState.FAILED, translate("payment_needs_review", locale), status=tx.status)
    flow.mark_unknown()
    return result(VerificationState.UNKNOWN, translate("payment_unknown", locale))


async def cancel_checkout(
    user_id: str,
    db: AsyncSession,
    *,
    provider_ref: str,
    locale: str = "en",
) -> Dict[str, Any]:
    """The payer abandoned the hosted page. Only a pending checkout is cancelled."""
    tx = await get_user_transaction(user_id, db, provider_ref)
    if tx.status == TX_PENDING:
        transition_transaction(tx, TX_CANCELLED)
        await db.commit()
        logger.info("Checkout %s cancelled by user %s", provider_ref, user_id)
    return {
        "provider_ref": provider_ref,
        "status": tx.status,
        "message": translate("payment_cancelled", locale) if tx.status == TX_CANCELLED else None,
    }


async def _apply_refund(db: AsyncSession, tx: PaymentTransaction) -> Dict[str, Any]:
    if tx.status == TX_REFUNDED:
        logger.info("Refund for %s already processed", tx.provider_ref)
        return {"action": "duplicate"}
    if tx.status != TX_SUCCEEDED:
        logger.warning("Refund received for %s in status %s; nothing to reverse", tx.provider_ref, tx.status)
        return {"action": "ignored"}

    tx_id = tx.id
    outcome = await reverse_purchase(
        tx.user_id,
        db,
        credits=int(tx.credits_granted or tx.credits),
        provider=tx.provider,
        provider_ref=tx.provider_ref,
        commit=False,
    )
    tx = await _get_transaction(db, tx_id)
    if tx.status == TX_SUCCEEDED:
        transition_transaction(tx, TX_REFUNDED)
        tx.refunded_at = datetime.now(timezone.utc)
    await db.commit()
    return {"action": "refunded", "credits_reversed": outcome.amount, "balance": outcome.balance}


async def process_webhook(
    provider: str,
    db: AsyncSession,
    *,
    body: bytes,
    headers: Mapping[str, str],
    gateways: PaymentGatewayRegistry,
) -> Dict[str, Any]:
    """Verify and apply one provider notification. Safe to receive more than once."""
    gateway = gateways.get(normalize_provider(provider))
    event = await gateway.parse_webhook(body, headers)
    if event is None:
        return {"received": True, "action": "ignored"}

    tx = await _find_for_event(db, event)
    if tx is None:
        logger.warning(
            "%s webhook %s (%s) matches no transaction: ref=%s payment=%s",
            gateway.provider,
            event.event_id,
            event.type,
            event.provider_ref,
            event.payment_ref,
        )
        return {"received": True, "action": "unmatched"}

    logger.info("%s webhook %s: %s for %s", gateway.provider, event.event_id, event.type, tx.provider_ref)
    if event.type == "completed":
        outcome = await complete_transaction(
            db,
            tx,
            payment_ref=event.payment_ref,
            amount_cents=event.amount_cents,
            source="webhook",
        )
        if outcome is None:
            return {"received": True, "action": NEEDS_REVIEW}
        return {"received": True, "action": "granted" if outcome.applied else "duplicate"}
    if event.type == "approved":
        if tx.status != TX_PENDING:
            logger.info("Approval for %s ignored; transaction is %s", tx.provider_ref, tx.status)
            return {"received": True, "action": "duplicate" if tx.status in {TX_SUCCEEDED, TX_REFUNDED} else "ignored"}
        verification = await gateway.verify_payment(tx.provider_ref)
        status, outcome = await _settle(db, tx, gateway, verification, source="webhook")
        if status == TX_SUCCEEDED and outcome is not None:
            return {"received": True, "action": "granted" if outcome.applied else "duplicate"}
        return {"received": True, "action": status}
    if event.type in {"failed", "expired"}:
        await _mark_failed(db, tx, f"{gateway.provider} {event.type}")
        return {"received": True, "action": "failed"}
    if event.type == "refunded":
        return {"received": True, **(await _apply_refund(db, tx))}
    return {"received": True, "action": "ignored"}


def serialize_transaction(tx: PaymentTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "user_id": tx.user_id,
        "provider": tx.provider,
        "provider_ref": tx.provider_ref,
        "payment_ref": tx.payment_ref,
        "package_id": tx.package_id,
        "credits": tx.credits,
        "credits_granted": tx.credits_granted,
        "amount_cents": tx.amount_cents,
        "currency": tx.currency,
        "status": tx.status,
        "failure_reason": tx.failure_reason,
        "anomaly": tx.anomaly,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
        "completed_at": tx.completed_at.isoformat() if tx.completed_at else None,
        "refunded_at": tx.refunded_at.isoformat() if tx.refunded_at else None,
    }


async def list_transactions(
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    needs_review: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> List[PaymentTransaction]:
    query = select(PaymentTransaction)
    if needs_review:
        query = query.where(PaymentTransaction.anomaly.isnot(None))
    if user_id:
        query = query.where(PaymentTransaction.user_id == user_id)
    if status:
        query = query.where(PaymentTransaction.status == status)
    query = query.order_by(PaymentTransaction.created_at.desc()).offset(max(offset, 0)).limit(max(limit, 1))
    result = await db.execute(query)
    return list(result.scalars().all())
