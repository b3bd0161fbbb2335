"""Spending limits and self-exclusion for real-money purchases.

Spend is the real-money amount (in cents) of ``purchase`` ledger events; a
purchase check also holds recent checkouts that are still pending. Spend
windows are calendar aligned in ``SPENDING_WINDOW_TIMEZONE``: a day runs from
local midnight to midnight, a week starts on Monday and a month on the 1st.
Self-exclusion expiry is evaluated whenever a purchase is checked; nothing
sweeps expired records in the background.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import LedgerEvent
from models.payment_transaction import PaymentTransaction
from models.self_exclusion import SelfExclusion
from models.spending_limit import SpendingLimit
from services.credits import SPEND_CATEGORIES, LedgerCategory
from services.messages import format_money, period_name, translate

logger = logging.getLogger(__name__)


PERIODS: Tuple[str, ...] = ("daily", "weekly", "monthly")
SELF_EXCLUSION_DAYS: Tuple[int, ...] = (1, 7, 30, 90)

SELF_EXCLUDED = "self_excluded"
LIMIT_REASONS = {period: f"{period}_limit" for period in PERIODS}


@dataclass(frozen=True)
class LimitStatus:
    period: str
    limit_cents: Optional[int]
    spent_cents: int
    remaining_cents: Optional[int]
    percentage: float
    warning: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "limit_cents": self.limit_cents,
            "spent_cents": self.spent_cents,
            "remaining_cents": self.remaining_cents,
            "percentage": round(self.percentage, 2),
            "warning": self.warning,
        }


@dataclass(frozen=True)
class PurchaseDecision:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    warning_level: str = "none"
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    limit_cents: Optional[int] = None
    spent_cents: Optional[int] = None
    excluded_until: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "message": self.message,
            "warning_level": self.warning_level,
            "warnings": list(self.warnings),
            "limit_cents": self.limit_cents,
            "spent_cents": self.spent_cents,
            "excluded_until": self.excluded_until,
        }


@dataclass(frozen=True)
class SelfExclusionOutcome:
    ok: bool
    enabled: bool
    message: str
    ends_at: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "enabled": self.enabled,
            "ends_at": self.ends_at,
            "message": self.message,
            "reason": self.reason,
        }


def window_timezone() -> ZoneInfo:
    return ZoneInfo(settings.SPENDING_WINDOW_TIMEZONE or "UTC")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc(now) if now is not None else datetime.now(timezone.utc)


def window_starts(now: datetime, tz: Optional[ZoneInfo] = None) -> Dict[str, datetime]:
    """Start of the current day, week (Monday) and month, as UTC instants."""
    zone = tz or window_timezone()
    local = _as_utc(now).astimezone(zone)
    day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = day_start - timedelta(days=day_start.weekday())
    month_start = day_start.replace(day=1)
    return {
        "daily": day_start.astimezone(timezone.utc),
        "weekly": week_start.astimezone(timezone.utc),
        "monthly": month_start.astimezone(timezone.utc),
    }


def warning_tier(spent_cents: int, limit_cents: Optional[int]) -> str:
    if limit_cents is None:
        return "none"
    percentage = (spent_cents / limit_cents) * 100
    if percentage >= 100:
        return "hard"
    if percentage >= settings.SPENDING_SOFT_WARNING_PERCENT:
        return "soft"
    return "none"


def _limit_value(row: Optional[SpendingLimit], period: str) -> Optional[int]:
    if row is None:
        return None
    value = getattr(row, f"{period}_cents")
    return int(value) if value is not None else None


async def _get_limits(user_id: str, db: AsyncSession) -> Optional[SpendingLimit]:
    result = await db.execute(select(SpendingLimit).where(SpendingLimit.user_id == user_id))
    return result.scalar_one_or_none()


async def get_limits(user_id: str, db: AsyncSession) -> Dict[str, Optional[int]]:
    row = await _get_limits(user_id, db)
    return {period: _limit_value(row, period) for period in PERIODS}


async def set_limit(
    user_id: str,
    db: AsyncSession,
    *,
    period: str,
    amount_cents: Optional[int],
    locale: Optional[str] = None,
) -> Dict[str, Any]:
    """Overwrite one cap. ``None`` removes it. Takes effect for the next purchase."""
    if period not in PERIODS:
        raise ValueError(f"period must be one of {', '.join(PERIODS)}")
    if amount_cents is not None and int(amount_cents) <= 0:
        raise ValueError("limit must be a positive amount")

    row = await _get_limits(user_id, db)
    if row is None:
        row = SpendingLimit(user_id=user_id)
        db.add(row)
    setattr(row, f"{period}_cents", int(amount_cents) if amount_cents is not None else None)
    await db.commit()

    title = period_name(period, locale or "en")
    if amount_cents is None:
        message = translate("limit_removed", locale, period=title.capitalize())
    else:
        message = translate("limit_set", locale, period=title.capitalize(), limit=format_money(amount_cents, locale or "en"))
    logger.info("Spending limit updated for user %s: %s=%s", user_id, period, amount_cents)
    return {"success": True, "period": period, "limit_cents": amount_cents, "message": message}


async def _purchase_events_since(user_id: str, db: AsyncSession, since: datetime) -> List[LedgerEvent]:
    result = await db.execute(
        select(LedgerEvent)
        .where(
            LedgerEvent.user_id == user_id,
            LedgerEvent.entry_type == LedgerCategory.PURCHASE.value,
            LedgerEvent.created_at >= since,
        )
        .order_by(LedgerEvent.created_at)
    )
    return list(result.scalars().all())


async def _pending_checkouts_since(user_id: str, db: AsyncSession, since: datetime) -> List[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction).where(
            PaymentTransaction.user_id == user_id,
            PaymentTransaction.status == "pending",
            PaymentTransaction.created_at >= since,
        )
    )
    return list(result.scalars().all())


async def spent_by_period(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    include_pending: bool = False,
) -> Dict[str, int]:
    """Settled purchase spend per window.

    With ``include_pending`` the amounts of checkouts still awaiting payment are
    held against the caps too, for ``PENDING_CHECKOUT_HOLD_MINUTES`` after they
    were opened.
    """
    current = _now(now)
    starts = window_starts(current)
    earliest = min(starts.values())
    totals = {period: 0 for period in PERIODS}

    dated: List[Tuple[datetime, int]] = [
        (_as_utc(event.created_at), int(event.payment_amount_cents or 0))
        for event in await _purchase_events_since(user_id, db, earliest)
    ]
    if include_pending:
        hold_from = current - timedelta(minutes=max(int(settings.PENDING_CHECKOUT_HOLD_MINUTES), 0))
        dated.extend(
            (_as_utc(tx.created_at), int(tx.amount_cents or 0))
            for tx in await _pending_checkouts_since(user_id, db, max(earliest, hold_from))
        )

    for created, amount in dated:
        for period, start in starts.items():
            if created >= start:
                totals[period] += amount
    return totals


async def get_limit_status(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    include_pending: bool = False,
) -> Dict[str, LimitStatus]:
    limits = await get_limits(user_id, db)
    spent = await spent_by_period(user_id, db, now=now, include_pending=include_pending)
    status: Dict[str, LimitStatus] = {}
    for period in PERIODS:
        limit = limits[period]
        period_spent = spent[period]
        if limit is None:
            status[period] = LimitStatus(period, None, period_spent, None, 0.0, "none")
            continue
        status[period] = LimitStatus(
            period=period,
            limit_cents=limit,
            spent_cents=period_spent,
            remaining_cents=max(0, limit - period_spent),
            percentage=(period_spent / limit) * 100,
            warning=warning_tier(period_spent, limit),
        )
    return status


async def get_self_exclusion(user_id: str, db: AsyncSession) -> Optional[SelfExclusion]:
    result = await db.execute(select(SelfExclusion).where(SelfExclusion.user_id == user_id))
    return result.scalar_one_or_none()


def is_exclusion_active(row: Optional[SelfExclusion], now: datetime) -> bool:
    if row is None or not row.enabled:
        return False
    ends_at = _as_utc(row.ends_at)
    if ends_at is None:
        return True
    return now < ends_at


def _format_until(ends_at: Optional[datetime]) -> Optional[str]:
    if ends_at is None:
        return None
    return _as_utc(ends_at).astimezone(window_timezone()).strftime("%Y-%m-%d %H:%M %Z")


async def check_purchase_allowed(
    user_id: str,
    db: AsyncSession,
    *,
    amount_cents: int,
    now: Optional[datetime] = None,
    locale: Optional[str] = None,
) -> PurchaseDecision:
    """Self-exclusion first, then each configured cap. A denial is an outcome, not an error."""
    current = _now(now)
    lang = locale or "en"

    exclusion = await get_self_exclusion(user_id, db)
    if is_exclusion_active(exclusion, current):
        until = _format_until(exclusion.ends_at)
        message = (
            translate("self_excluded", lang, until=until)
            if until
            else translate("self_excluded_indefinite", lang)
        )
        logger.info("Purchase denied for user %s: self-exclusion active", user_id)
        return PurchaseDecision(
            allowed=False,
            reason=SELF_EXCLUDED,
            message=message,
            warning_level="hard",
            excluded_until=_as_utc(exclusion.ends_at).isoformat() if exclusion.ends_at else None,
        )

    amount = max(int(amount_cents), 0)
    status = await get_limit_status(user_id, db, now=current, include_pending=True)
    for period in PERIODS:
        item = status[period]
        if item.limit_cents is not None and item.spent_cents + amount > item.limit_cents:
            logger.info(
                "Purchase denied for user %s: %s limit %s, spent %s, requested %s",
                user_id,
                period,
                item.limit_cents,
                item.spent_cents,
                amount,
            )
            return PurchaseDecision(
                allowed=False,
                reason=LIMIT_REASONS[period],
                message=translate(
                    LIMIT_REASONS[period],
                    lang,
                    limit=format_money(item.limit_cents, lang),
                    spent=format_money(item.spent_cents, lang),
                ),
                warning_level="hard",
                limit_cents=item.limit_cents,
                spent_cents=item.spent_cents,
            )

    warnings = tuple(
        translate(
            "approaching_limit",
            lang,
            period=period_name(period, lang),
            percent=f"{status[period].percentage:.0f}",
        )
        for period in PERIODS
        if status[period].warning == "soft"
    )
    if warnings:
        return PurchaseDecision(allowed=True, message=". ".join(warnings), warning_level="soft", warnings=warnings)
    return PurchaseDecision(allowed=True)


async def enable_self_exclusion(
    user_id: str,
    db: AsyncSession,
    *,
    days: Optional[int],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    locale: Optional[str] = None,
) -> SelfExclusionOutcome:
    """Start a time-locked purchase block. ``days=None`` is indefinite."""
    if days is not None and int(days) not in SELF_EXCLUSION_DAYS:
        raise ValueError(f"days must be one of {SELF_EXCLUSION_DAYS} or null")

    current = _now(now)
    new_end = current + timedelta(days=int(days)) if days is not None else None
    row = await get_self_exclusion(user_id, db)

    if is_exclusion_active(row, current):
        existing_end = _as_utc(row.ends_at)
        shortens = new_end is not None and (existing_end is None or new_end < existing_end)
        if shortens:
            return SelfExclusionOutcome(
                ok=False,
                enabled=True,
                message=translate("self_exclusion_shorten", locale),
                ends_at=existing_end.isoformat() if existing_end else None,
                reason="cannot_shorten",
            )

    if row is None:
        row = SelfExclusion(user_id=user_id)
        db.add(row)
    row.enabled = True
    if not is_exclusion_active(row, current) or row.started_at is None:
        row.started_at = current
    row.ends_at = new_end
    row.reason = reason
    await db.commit()

    logger.info("Self-exclusion enabled for user %s until %s", user_id, new_end.isoformat() if new_end else "indefinite")
    until = _format_until(new_end)
    message = (
        translate("self_exclusion_enabled", locale, until=until)
        if until
        else translate("self_exclusion_enabled_indefinite", locale)
    )
    return SelfExclusionOutcome(
        ok=True,
        enabled=True,
        message=message,
        ends_at=new_end.isoformat() if new_end else None,
    )


async def disable_self_exclusion(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    locale: Optional[str] = None,
) -> SelfExclusionOutcome:
    """Clear an exclusion only once its end date has passed."""
    current = _now(now)
    row = await get_self_exclusion(user_id, db)
    if row is None or not row.enabled:
        return SelfExclusionOutcome(
            ok=True,
            enabled=False,
            message=translate("self_exclusion_not_active", locale),
        )

    ends_at = _as_utc(row.ends_at)
    if ends_at is None:
        return SelfExclusionOutcome(
            ok=False,
            enabled=True,
            message=translate("self_exclusion_indefinite_locked", locale),
            reason="indefinite",
        )
    if current < ends_at:
        remaining = ends_at - current
        days_left = remaining.days + (1 if remaining.seconds or remaining.microseconds else 0)
        return SelfExclusionOutcome(
            ok=False,
            enabled=True,
            message=translate("self_exclusion_locked", locale, days=days_left),
            ends_at=ends_at.isoformat(),
            reason="locked",
        )

    row.enabled = False
    row.started_at = None
    row.ends_at = None
    row.reason = None
    await db.commit()
    logger.info("Self-exclusion cleared for user %s", user_id)
    return SelfExclusionOutcome(ok=True, enabled=False, message=translate("self_exclusion_ended", locale))


async def should_show_break_reminder(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """True after a burst of purchases each within the reminder window of the previous one."""
    current = _now(now)
    threshold = max(int(settings.BREAK_REMINDER_PURCHASES), 1)
    window = timedelta(minutes=max(int(settings.BREAK_REMINDER_WINDOW_MINUTES), 1))
    events = await _purchase_events_since(user_id, db, current - window * threshold)
    if not events or current - _as_utc(events[-1].created_at) >= window:
        return False

    streak = 1
    for previous, following in zip(events, events[1:]):
        if _as_utc(following.created_at) - _as_utc(previous.created_at) < window:
            streak += 1
        else:
            streak = 1
    return streak >= threshold


def self_exclusion_status(row: Optional[SelfExclusion], now: datetime) -> Dict[str, Any]:
    active = is_exclusion_active(row, now)
    ends_at = _as_utc(row.ends_at) if active and row.ends_at else None
    return {
        "enabled": active,
        "ends_at": ends_at.isoformat() if ends_at else None,
        "indefinite": active and row.ends_at is None,
    }


async def get_spending_overview(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Limit usage, self-exclusion state and break reminder in one payload."""
    current = _now(now)
    status = await get_limit_status(user_id, db, now=current)
    exclusion = await get_self_exclusion(user_id, db)
    return {
        "limits": {period: status[period].as_dict() for period in PERIODS},
        "self_exclusion": self_exclusion_status(exclusion, current),
        "break_reminder": await should_show_break_reminder(user_id, db, now=current),
    }


def problem_gambling_resources() -> List[Dict[str, str]]:
    return [
        {"name": "Joueurs Info Service (France)", "url": "https://www.joueurs-info-service.fr", "phone": "09 74 75 13 13"},
        {"name": "GamCare (UK)", "url": "https://www.gamcare.org.uk", "phone": "0808 8020 133"},
        {"name": "National Council on Problem Gambling (US)", "url": "https://www.ncpgambling.org", "phone": "1-800-522-4700"},
        {"name": "Gambling Help Online (Australia)", "url": "https://www.gamblinghelponline.org.au", "phone": "1800 858 858"},
    ]


async def export_spending_history(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """JSON-serializable record of purchases and credit spends for self-audit."""
    current = _now(now)
    categories = [LedgerCategory.PURCHASE.value, *sorted(SPEND_CATEGORIES)]
    result = await db.execute(
        select(LedgerEvent)
        .where(LedgerEvent.user_id == user_id, LedgerEvent.entry_type.in_(categories))
        .order_by(LedgerEvent.created_at)
    )
    events = list(result.scalars().all())
    spent = await spent_by_period(user_id, db, now=current)

    purchases = [
        {
            "date": _as_utc(event.created_at).isoformat(),
            "amount_cents": int(event.payment_amount_cents or 0),
            "currency": event.currency,
            "credits": int(event.delta_credits),
            "description": event.reason,
            "provider": event.billing_provider,
        }
        for event in events
        if event.entry_type == LedgerCategory.PURCHASE.value
    ]
    credit_spends = [
        {
            "date": _as_utc(event.created_at).isoformat(),
            "category": event.entry_type,
            "credits": -int(event.delta_credits),
            "description": event.reason,
        }
        for event in events
        if event.entry_type in SPEND_CATEGORIES
    ]
    return {
        "export_date": current.isoformat(),
        "window_timezone": settings.SPENDING_WINDOW_TIMEZONE,
        "limits": await get_limits(user_id, db),
        "purchases": purchases,
        "credit_spends": credit_spends,
        "totals": {
            "today_cents": spent["daily"],
            "this_week_cents": spent["weekly"],
            "this_month_cents": spent["monthly"],
            "all_time_cents": sum(item["amount_cents"] for item in purchases),
            "credits_spent": sum(item["credits"] for item in credit_spends),
        },
    }
