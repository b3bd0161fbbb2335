"""Credit ledger and balance accounting.

Every balance change is one conditional ``UPDATE`` on ``users`` plus one
``INSERT`` into ``ledger_events`` inside a single database transaction, so the
cached balance and the ledger can never drift apart and a debit can never take
the balance below zero, even when requests for the same user race.
"""

from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import LedgerEvent
from models.user import User
from services.errors import AccountNotFoundError, LedgerWriteError

logger = logging.getLogger(__name__)


class LedgerCategory(str, enum.Enum):
    PURCHASE = "purchase"
    WELCOME_BONUS = "welcome_bonus"
    DAILY_BONUS = "daily_bonus"
    REFERRAL_BONUS = "referral_bonus"
    READING_SPEND = "reading_spend"
    FOLLOW_UP_SPEND = "follow_up_spend"
    QUESTION_SUMMARIZATION_SPEND = "question_summarization_spend"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    REFUND = "refund"
    PURCHASE_REVERSAL = "purchase_reversal"


SPEND_CATEGORIES = frozenset(
    {
        LedgerCategory.READING_SPEND.value,
        LedgerCategory.FOLLOW_UP_SPEND.value,
        LedgerCategory.QUESTION_SUMMARIZATION_SPEND.value,
    }
)

INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class BalanceSummary:
    balance: int
    lifetime_earned: int
    lifetime_spent: int


@dataclass(frozen=True)
class LedgerOutcome:
    """Result of a ledger mutation.

    ``applied`` is False when an idempotency key had already been used; the
    outcome then describes the earlier event and nothing was written.
    """

    ok: bool
    balance: int
    amount: int = 0
    event_id: Optional[str] = None
    applied: bool = False
    reason: Optional[str] = None
    required: int = 0

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ok": self.ok,
            "balance": self.balance,
            "amount": self.amount,
            "event_id": self.event_id,
            "applied": self.applied,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.required:
            payload["required"] = self.required
        return payload


def _category_value(category: Any) -> str:
    return category.value if isinstance(category, LedgerCategory) else str(category)


def generate_referral_code() -> str:
    return secrets.token_hex(4).upper()


async def get_balance(user_id: str, db: AsyncSession) -> BalanceSummary:
    result = await db.execute(
        select(User.credits, User.total_credits_earned, User.total_credits_spent).where(User.id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        raise AccountNotFoundError(user_id)
    return BalanceSummary(
        balance=int(row[0] or 0),
        lifetime_earned=int(row[1] or 0),
        lifetime_spent=int(row[2] or 0),
    )


async def _find_by_idempotency_key(db: AsyncSession, key: str) -> Optional[LedgerEvent]:
    result = await db.execute(select(LedgerEvent).where(LedgerEvent.idempotency_key == key))
    return result.scalar_one_or_none()


def _refund_key(event_id: str) -> str:
    return f"refund:{event_id}"


async def _live_spend_key(db: AsyncSession, key: str) -> str:
    """First generation of ``key`` whose spend has not been refunded.

    A refunded charge no longer answers for its key, so charging the same
    reference again debits under ``<key>#2``, ``<key>#3`` and so on.
    """
    candidate = key
    generation = 1
    while True:
        prior = await _find_by_idempotency_key(db, candidate)
        if prior is None or await _find_by_idempotency_key(db, _refund_key(prior.id)) is None:
            return candidate
        generation += 1
        candidate = f"{key}#{generation}"


async def _replay(user_id: str, db: AsyncSession, prior: LedgerEvent) -> LedgerOutcome:
    logger.info(
        "Duplicate ledger application ignored: key=%s event=%s user=%s",
        prior.idempotency_key,
        prior.id,
        user_id,
    )
    summary = await get_balance(user_id, db)
    return LedgerOutcome(
        ok=True,
        balance=summary.balance,
        amount=abs(int(prior.delta_credits)),
        event_id=prior.id,
        applied=False,
    )


async def _mutate_balance(
    db: AsyncSession,
    user_id: str,
    *,
    delta: int,
    earned_delta: int = 0,
    spent_delta: int = 0,
) -> bool:
    """Apply a guarded balance update; False when the guard rejected it."""
    statement = update(User).where(User.id == user_id)
    if delta < 0:
        statement = statement.where(User.credits >= -delta)
    statement = statement.values(
        credits=User.credits + delta,
        total_credits_earned=User.total_credits_earned + earned_delta,
        total_credits_spent=User.total_credits_spent + spent_delta,
    ).execution_options(synchronize_session=False)
    result = await db.execute(statement)
    return bool(result.rowcount)


async def _append_event(
    db: AsyncSession,
    user_id: str,
    *,
    delta: int,
    category: str,
    description: str,
    idempotency_key: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    provider: Optional[str] = None,
    provider_ref: Optional[str] = None,
    payment_amount_cents: Optional[int] = None,
    currency: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> LedgerEvent:
    balance_result = await db.execute(select(User.credits).where(User.id == user_id))
    balance_after = int(balance_result.scalar_one())
    event = LedgerEvent(
        user_id=user_id,
        entry_type=category,
        delta_credits=int(delta),
        balance_after=balance_after,
        reason=description,
        reference_type=reference_type,
        reference_id=reference_id,
        billing_provider=provider,
        billing_reference=provider_ref,
        payment_amount_cents=payment_amount_cents,
        currency=currency,
        idempotency_key=idempotency_key,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(event)
    await db.flush()
    return event


async def _apply(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    earned_delta: int,
    spent_delta: int,
    category: Any,
    description: str,
    idempotency_key: Optional[str] = None,
    commit: bool = True,
    **event_fields: Any,
) -> LedgerOutcome:
    category_value = _category_value(category)
    if idempotency_key:
        prior = await _find_by_idempotency_key(db, idempotency_key)
        if prior is not None:
            return await _replay(user_id, db, prior)

    try:
        applied = await _mutate_balance(
            db,
            user_id,
            delta=delta,
            earned_delta=earned_delta,
            spent_delta=spent_delta,
        )
        if not applied:
            await db.rollback()
            summary = await get_balance(user_id, db)
            logger.info(
                "Debit rejected for user %s: required=%s balance=%s category=%s",
                user_id,
                -delta,
                summary.balance,
                category_value,
            )
            return LedgerOutcome(
                ok=False,
                balance=summary.balance,
                reason=INSUFFICIENT_CREDITS,
                required=-delta,
            )
        event = await _append_event(
            db,
            user_id,
            delta=delta,
            category=category_value,
            description=description,
            idempotency_key=idempotency_key,
            **event_fields,
        )
        if commit:
            await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if idempotency_key:
            prior = await _find_by_idempotency_key(db, idempotency_key)
            if prior is not None:
                return await _replay(user_id, db, prior)
        logger.exception("Ledger write rejected by constraint for user %s", user_id)
        raise LedgerWriteError(f"Ledger write failed for user {user_id}") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Ledger write failed for user %s; balance left unchanged", user_id)
        raise LedgerWriteError(f"Ledger write failed for user {user_id}") from exc

    logger.info(
        "Ledger %s %+d credits for user %s (balance %s, event %s)",
        category_value,
        delta,
        user_id,
        event.balance_after,
        event.id,
    )
    return LedgerOutcome(
        ok=True,
        balance=int(event.balance_after),
        amount=abs(int(delta)),
        event_id=event.id,
        applied=True,
    )


async def credit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    category: Any,
    description: str,
    idempotency_key: Optional[str] = None,
    provider: Optional[str] = None,
    provider_ref: Optional[str] = None,
    payment_amount_cents: Optional[int] = None,
    currency: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    commit: bool = True,
) -> LedgerOutcome:
    """Grant credits. A reused ``idempotency_key`` is a no-op returning the prior event.

    With ``commit=False`` the caller owns the transaction; a duplicate-key race
    still rolls the session back, so the grant should be the first write.
    """
    grant = int(amount)
    if grant <= 0:
        raise ValueError("credit amount must be positive")
    return await _apply(
        user_id,
        db,
        delta=grant,
        earned_delta=grant,
        spent_delta=0,
        category=category,
        description=description,
        idempotency_key=idempotency_key,
        commit=commit,
        provider=provider,
        provider_ref=provider_ref,
        payment_amount_cents=payment_amount_cents,
        currency=currency,
        reference_type=reference_type,
        reference_id=reference_id,
    )


async def debit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    category: Any,
    description: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    commit: bool = True,
) -> LedgerOutcome:
    """Spend credits; returns an ``insufficient_credits`` outcome instead of overdrawing."""
    cost = int(amount)
    if cost <= 0:
        raise ValueError("debit amount must be positive")
    if idempotency_key:
        idempotency_key = await _live_spend_key(db, idempotency_key)
    return await _apply(
        user_id,
        db,
        delta=-cost,
        earned_delta=0,
        spent_delta=cost,
        category=category,
        description=description,
        idempotency_key=idempotency_key,
        commit=commit,
        reference_type=reference_type,
        reference_id=reference_id,
    )


async def adjust_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    admin_id: Optional[str] = None,
) -> LedgerOutcome:
    delta = int(amount)
    if delta == 0:
        raise ValueError("adjustment amount cannot be zero")
    description = f"Admin adjustment: {reason}"
    if delta > 0:
        return await credit(
            user_id,
            db,
            amount=delta,
            category=LedgerCategory.ADMIN_ADJUSTMENT,
            description=description,
            reference_type="admin",
            reference_id=admin_id,
        )
    return await debit(
        user_id,
        db,
        amount=-delta,
        category=LedgerCategory.ADMIN_ADJUSTMENT,
        description=description,
        reference_type="admin",
        reference_id=admin_id,
    )


async def refund_spend(
    user_id: str,
    db: AsyncSession,
    *,
    event_id: str,
    reason: str,
) -> LedgerOutcome:
    """Give back the credits of a spend whose downstream operation failed. At most once."""
    result = await db.execute(
        select(LedgerEvent).where(LedgerEvent.id == event_id, LedgerEvent.user_id == user_id)
    )
    spend = result.scalar_one_or_none()
    if spend is None:
        summary = await get_balance(user_id, db)
        return LedgerOutcome(ok=False, balance=summary.balance, reason="not_found")
    if spend.entry_type not in SPEND_CATEGORIES or int(spend.delta_credits) >= 0:
        summary = await get_balance(user_id, db)
        return LedgerOutcome(ok=False, balance=summary.balance, reason="not_eligible")

    amount = -int(spend.delta_credits)
    return await _apply(
        user_id,
        db,
        delta=amount,
        earned_delta=0,
        spent_delta=-amount,
        category=LedgerCategory.REFUND,
        description=f"Refund: {reason}",
        idempotency_key=_refund_key(spend.id),
        reference_type="ledger_event",
        reference_id=spend.id,
    )


async def reverse_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    provider: str,
    provider_ref: str,
    commit: bool = True,
) -> LedgerOutcome:
    """Remove purchased credits after a provider refund, never below a zero balance."""
    key = f"reversal:{provider}:{provider_ref}"
    prior = await _find_by_idempotency_key(db, key)
    if prior is not None:
        return await _replay(user_id, db, prior)

    for _ in range(3):
        summary = await get_balance(user_id, db)
        take = min(max(int(credits), 0), summary.balance)
        if take == 0:
            logger.warning(
                "Purchase reversal for %s found no credits left to remove (user %s)",
                provider_ref,
                user_id,
            )
            return LedgerOutcome(ok=True, balance=summary.balance, amount=0, applied=False)
        outcome = await _apply(
            user_id,
            db,
            delta=-take,
            earned_delta=-take,
            spent_delta=0,
            category=LedgerCategory.PURCHASE_REVERSAL,
            description=f"Refund processed via {provider}",
            idempotency_key=key,
            commit=commit,
            provider=provider,
            provider_ref=provider_ref,
        )
        if outcome.ok:
            return outcome
    return outcome


async def ensure_account(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    locale: Optional[str] = None,
) -> User:
    """Return the user's account, creating it with the welcome grant on first sight."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is not None:
        return user

    user = User(
        id=user_id,
        email=email or f"{user_id}@local.invalid",
        name=name,
        preferred_language=locale or settings.DEFAULT_LOCALE,
        credits=0,
        total_credits_earned=0,
        total_credits_spent=0,
        referral_code=generate_referral_code(),
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise
        return user

    # Account row and welcome grant commit together.
    welcome = max(int(settings.WELCOME_CREDITS), 0)
    if welcome:
        await credit(
            user_id,
            db,
            amount=welcome,
            category=LedgerCategory.WELCOME_BONUS,
            description="Welcome bonus",
            idempotency_key=f"welcome:{user_id}",
        )
    else:
        await db.commit()
    await db.refresh(user)
    logger.info("Created credit account for user %s with %s welcome credits", user_id, welcome)
    return user


async def list_events(
    user_id: str,
    db: AsyncSession,
    *,
    categories: Optional[Iterable[str]] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[LedgerEvent]:
    query = select(LedgerEvent).where(LedgerEvent.user_id == user_id)
    wanted = [str(item) for item in (categories or [])]
    if wanted:
        query = query.where(LedgerEvent.entry_type.in_(wanted))
    query = query.order_by(LedgerEvent.created_at.desc(), LedgerEvent.id).offset(max(offset, 0)).limit(max(limit, 1))
    result = await db.execute(query)
    return list(result.scalars().all())


def serialize_event(event: LedgerEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "entry_type": event.entry_type,
        "delta_credits": event.delta_credits,
        "balance_after": event.balance_after,
        "reason": event.reason,
        "reference_type": event.reference_type,
        "reference_id": event.reference_id,
        "billing_provider": event.billing_provider,
        "billing_reference": event.billing_reference,
        "payment_amount_cents": event.payment_amount_cents,
        "currency": event.currency,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


async def reconcile(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Recompute the balance from the ledger and compare with the cached fields."""
    summary = await get_balance(user_id, db)
    totals = await db.execute(
        select(
            func.coalesce(func.sum(LedgerEvent.delta_credits), 0),
            func.count(LedgerEvent.id),
        ).where(LedgerEvent.user_id == user_id)
    )
    ledger_sum, event_count = totals.one()
    ledger_sum = int(ledger_sum or 0)
    consistent = (
        summary.balance == ledger_sum
        and summary.balance == summary.lifetime_earned - summary.lifetime_spent
        and summary.balance >= 0
    )
    if not consistent:
        logger.error(
            "Ledger mismatch for user %s: balance=%s ledger_sum=%s earned=%s spent=%s",
            user_id,
            summary.balance,
            ledger_sum,
            summary.lifetime_earned,
            summary.lifetime_spent,
        )
    return {
        "user_id": user_id,
        "balance": summary.balance,
        "ledger_sum": ledger_sum,
        "lifetime_earned": summary.lifetime_earned,
        "lifetime_spent": summary.lifetime_spent,
        "event_count": int(event_count or 0),
        "consistent": consistent,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    from services.pricing import cost_table

    summary = await get_balance(user_id, db)
    entries = await list_events(user_id, db, limit=30)
    return {
        "balance": summary.balance,
        "lifetime_earned": summary.lifetime_earned,
        "lifetime_spent": summary.lifetime_spent,
        "costs": cost_table(),
        "recent_entries": [serialize_event(entry) for entry in entries],
    }
