"""Spending limits, self-exclusion and responsible-play endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_account, get_locale
from services.spending_limits import (
    PERIODS,
    check_purchase_allowed,
    disable_self_exclusion,
    enable_self_exclusion,
    export_spending_history,
    get_spending_overview,
    problem_gambling_resources,
    set_limit,
)

router = APIRouter()


class SetLimitRequest(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0, le=10_000_000)


class PurchaseCheckRequest(BaseModel):
    amount_cents: int = Field(gt=0, le=10_000_000)


class SelfExclusionRequest(BaseModel):
    days: Optional[int] = None
    reason: Optional[str] = Field(default=None, max_length=500)


@router.get("/limits")
async def get_limits(
    account: User = Depends(get_account),
    db: AsyncSession = Depends(get_db),
):
    return await get_spending_overview(account.id, db)


@router.put("/limits/{period}")
async def put_limit(
    period: str,
    request: SetLimitRequest,
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    if period not in PERIODS:
        raise HTTPException(status_code=404, detail=f"Unknown limit period: {period}")
    return await set_limit(account.id, db, period=period, amount_cents=request.amount_cents, locale=locale)


@router.post("/check")
async def post_check(
    request: PurchaseCheckRequest,
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    decision = await check_purchase_allowed(account.id, db, amount_cents=request.amount_cents, locale=locale)
    return decision.as_dict()


@router.post("/self-exclusion")
async def post_self_exclusion(
    request: SelfExclusionRequest,
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    try:
        outcome = await enable_self_exclusion(
            account.id,
            db,
            days=request.days,
            reason=request.reason,
            locale=locale,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if not outcome.ok:
        raise HTTPException(status_code=409, detail=outcome.as_dict())
    return outcome.as_dict()


@router.delete("/self-exclusion")
async def delete_self_exclusion(
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    outcome = await disable_self_exclusion(account.id, db, locale=locale)
    if not outcome.ok:
        raise HTTPException(status_code=409, detail=outcome.as_dict())
    return outcome.as_dict()


@router.get("/export")
async def get_export(
    account: User = Depends(get_account),
    db: AsyncSession = Depends(get_db),
):
    return await export_spending_history(account.id, db)


@router.get("/resources")
async def get_resources():
    return {"resources": problem_gambling_resources()}
