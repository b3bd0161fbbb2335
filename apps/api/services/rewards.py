"""Free credit grants: daily login bonus and referral rewards."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from services.credits import LedgerCategory, credit, get_balance
from services.errors import AccountNotFoundError
from services.messages import translate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewardOutcome:
    ok: bool
    message: str
    credits: int = 0
    balance: Optional[int] = None
    reason: Optional[str] = None
    streak: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ok": self.ok,
            "credits": self.credits,
            "balance": self.balance,
            "message": self.message,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.streak is not None:
            payload["streak"] = self.streak
        return payload


async def _get_user(user_id: str, db: AsyncSession) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise AccountNotFoundError(user_id)
    return user


def daily_bonus_amount(streak: int) -> int:
    """Base grant, plus the weekly bonus on every seventh consecutive day."""
    amount = max(int(settings.DAILY_BONUS_BASE), 0)
    if streak > 0 and streak % 7 == 0:
        amount += max(int(settings.WEEKLY_STREAK_BONUS), 0)
    return amount


async def claim_daily_bonus(
    user_id: str,
    db: AsyncSession,
    *,
    today: Optional[date] = None,
    locale: str = "en",
) -> RewardOutcome:
    day = today or datetime.now(timezone.utc).date()
    user = await _get_user(user_id, db)
    if user.last_bonus_date == day:
        return RewardOutcome(
            ok=False,
            reason="already_claimed",
            message=translate("daily_bonus_already_claimed", locale),
            balance=int(user.credits),
            streak=int(user.login_streak or 0),
        )

    streak = int(user.login_streak or 0) + 1 if user.last_bonus_date == day - timedelta(days=1) else 1
    amount = daily_bonus_amount(streak)
    if amount <= 0:
        return RewardOutcome(ok=False, reason="disabled", message=translate("daily_bonus_already_claimed", locale))

    outcome = await credit(
        user_id,
        db,
        amount=amount,
        category=LedgerCategory.DAILY_BONUS,
        description=f"Daily login bonus (day {streak})",
        idempotency_key=f"daily:{user_id}:{day.isoformat()}",
        commit=False,
    )
    if not outcome.applied:
        summary = await get_balance(user_id, db)
        return RewardOutcome(
            ok=False,
            reason="already_claimed",
            message=translate("daily_bonus_already_claimed", locale),
            balance=summary.balance,
        )

    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(login_streak=streak, last_bonus_date=day)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Daily bonus of %s credits for user %s (streak %s)", amount, user_id, streak)
    return RewardOutcome(
        ok=True,
        credits=amount,
        balance=outcome.balance,
        streak=streak,
        message=translate("daily_bonus_claimed", locale, credits=amount, streak=streak),
    )


async def redeem_referral(
    user_id: str,
    db: AsyncSession,
    *,
    code: str,
    locale: str = "en",
) -> RewardOutcome:
    """Both the redeemer and the code owner receive the referral bonus, once per redeemer."""
    user = await _get_user(user_id, db)
    if user.referred_by_id:
        return RewardOutcome(
            ok=False,
            reason="already_redeemed",
            message=translate("referral_already_redeemed", locale),
        )

    normalized = str(code or "").strip().upper()
    result = await db.execute(select(User).where(User.referral_code == normalized))
    referrer = result.scalar_one_or_none() if normalized else None
    if referrer is None:
        return RewardOutcome(ok=False, reason="invalid_code", message=translate("referral_invalid", locale))
    if referrer.id == user_id:
        return RewardOutcome(ok=False, reason="own_code", message=translate("referral_own_code", locale))

    referrer_id = referrer.id
    referrer_name = referrer.name or referrer.referral_code
    claimed = await db.execute(
        update(User)
        .where(User.id == user_id, User.referred_by_id.is_(None))
        .values(referred_by_id=referrer_id)
        .execution_options(synchronize_session=False)
    )
    if not claimed.rowcount:
        await db.rollback()
        return RewardOutcome(
            ok=False,
            reason="already_redeemed",
            message=translate("referral_already_redeemed", locale),
        )

    bonus = max(int(settings.REFERRAL_BONUS), 0)
    balance: Optional[int] = None
    if bonus:
        outcome = await credit(
            user_id,
            db,
            amount=bonus,
            category=LedgerCategory.REFERRAL_BONUS,
            description="Referral bonus (redeemed code)",
            idempotency_key=f"referral:{user_id}",
            reference_type="user",
            reference_id=referrer_id,
            commit=False,
        )
        if not outcome.applied:
            await db.rollback()
            return RewardOutcome(
                ok=False,
                reason="already_redeemed",
                message=translate("referral_already_redeemed", locale),
            )
        balance = outcome.balance
        await credit(
            referrer_id,
            db,
            amount=bonus,
            category=LedgerCategory.REFERRAL_BONUS,
            description="Referral bonus (code used by a friend)",
            idempotency_key=f"referral:{user_id}:referrer",
            reference_type="user",
            reference_id=user_id,
            commit=False,
        )
    await db.commit()
    logger.info("User %s redeemed referral code of %s (+%s each)", user_id, referrer_id, bonus)
    return RewardOutcome(
        ok=True,
        credits=bonus,
        balance=balance,
        message=translate("referral_redeemed", locale, referrer=referrer_name, credits=bonus),
    )
