"""Account, balance and free-credit endpoints for the calling user."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_account, get_locale
from routers.rate_limit import rate_limit
from services.credits import get_balance, get_credit_summary, list_events, serialize_event
from services.rewards import claim_daily_bonus, redeem_referral

router = APIRouter()

REFERRAL_ERROR_STATUS = {"invalid_code": 404, "own_code": 400, "already_redeemed": 409}


class RedeemReferralRequest(BaseModel):
    code: str = Field(min_length=4, max_length=32)


@router.get("/me")
async def get_me(
    account: User = Depends(get_account),
    db: AsyncSession = Depends(get_db),
):
    summary = await get_balance(account.id, db)
    return {
        "user_id": account.id,
        "email": account.email,
        "name": account.name,
        "preferred_language": account.preferred_language,
        "credits": summary.balance,
        "total_credits_earned": summary.lifetime_earned,
        "total_credits_spent": summary.lifetime_spent,
        "referral_code": account.referral_code,
        "login_streak": account.login_streak,
        "last_bonus_date": account.last_bonus_date.isoformat() if account.last_bonus_date else None,
        "is_admin": bool(account.is_admin),
    }


@router.get("/me/credits")
async def get_my_credits(
    account: User = Depends(get_account),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(account.id, db)


@router.get("/me/ledger")
async def get_my_ledger(
    category: Optional[List[str]] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    account: User = Depends(get_account),
    db: AsyncSession = Depends(get_db),
):
    events = await list_events(account.id, db, categories=category, limit=limit, offset=offset)
    return {"items": [serialize_event(event) for event in events], "limit": limit, "offset": offset}


@router.post("/me/daily-bonus")
async def post_daily_bonus(
    _rate_limit: None = Depends(rate_limit("daily_bonus", limit=10, window_seconds=3600)),
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    outcome = await claim_daily_bonus(account.id, db, locale=locale)
    if not outcome.ok:
        raise HTTPException(status_code=409, detail=outcome.as_dict())
    return outcome.as_dict()


@router.post("/me/redeem-referral")
async def post_redeem_referral(
    request: RedeemReferralRequest,
    _rate_limit: None = Depends(rate_limit("redeem_referral", limit=10, window_seconds=3600)),
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    outcome = await redeem_referral(account.id, db, code=request.code, locale=locale)
    if not outcome.ok:
        raise HTTPException(status_code=REFERRAL_ERROR_STATUS.get(outcome.reason, 400), detail=outcome.as_dict())
    return outcome.as_dict()
