"""Credit charges for the reading flow.

The reading generator is a separate service: it asks here to charge before
producing a reading and, with its service token, asks for a refund if
generation then fails. Users never refund their own charges.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_account, get_locale, request_locale, require_internal_service
from services.credits import LedgerCategory, LedgerOutcome, debit, refund_spend
from services.messages import translate
from services.pricing import (
    UnknownSpreadError,
    calculate_reading_cost,
    get_follow_up_cost,
    get_summarize_question_cost,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class ReadingChargeRequest(BaseModel):
    spread_type: str = Field(min_length=1, max_length=32)
    reading_id: Optional[str] = Field(default=None, max_length=128)
    has_extended_question: bool = False
    has_advanced_style: bool = False
    client_total: Optional[int] = Field(default=None, ge=0)


class FollowUpChargeRequest(BaseModel):
    question_id: Optional[str] = Field(default=None, max_length=128)


class SummarizeChargeRequest(BaseModel):
    request_id: Optional[str] = Field(default=None, max_length=128)


class RefundRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    event_id: str = Field(min_length=1, max_length=64)
    reason: str = Field(default="Reading generation failed", max_length=255)


def _charge_response(outcome: LedgerOutcome, locale: str, **extra):
    if not outcome.ok:
        raise HTTPException(
            status_code=402,
            detail={
                "reason": outcome.reason,
                "required": outcome.required,
                "balance": outcome.balance,
                "message": translate(
                    "insufficient_credits",
                    locale,
                    required=outcome.required,
                    balance=outcome.balance,
                ),
            },
        )
    return {**outcome.as_dict(), **extra}


@router.post("/charge")
async def charge_reading(
    request: ReadingChargeRequest,
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    try:
        cost = calculate_reading_cost(
            request.spread_type,
            has_extended_question=request.has_extended_question,
            has_advanced_style=request.has_advanced_style,
        )
    except UnknownSpreadError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    if request.client_total is not None and request.client_total != cost.total:
        logger.info(
            "Client total %s for %s differs from server total %s; charging server total",
            request.client_total,
            cost.spread_type,
            cost.total,
        )

    outcome = await debit(
        account.id,
        db,
        amount=cost.total,
        category=LedgerCategory.READING_SPEND,
        description=f"{cost.spread_type.replace('_', ' ').title()} reading",
        reference_type="reading",
        reference_id=request.reading_id,
        idempotency_key=f"reading:{account.id}:{request.reading_id}" if request.reading_id else None,
    )
    return _charge_response(outcome, locale, cost=cost.as_dict())


@router.post("/{reading_id}/follow-up/charge")
async def charge_follow_up(
    reading_id: str,
    request: FollowUpChargeRequest,
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    cost = get_follow_up_cost()
    outcome = await debit(
        account.id,
        db,
        amount=cost,
        category=LedgerCategory.FOLLOW_UP_SPEND,
        description="Follow-up question",
        reference_type="reading",
        reference_id=reading_id,
        idempotency_key=(
            f"follow_up:{account.id}:{reading_id}:{request.question_id}" if request.question_id else None
        ),
    )
    return _charge_response(outcome, locale, cost=cost)


@router.post("/summarize-question/charge")
async def charge_summarize_question(
    request: SummarizeChargeRequest,
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    cost = get_summarize_question_cost()
    outcome = await debit(
        account.id,
        db,
        amount=cost,
        category=LedgerCategory.QUESTION_SUMMARIZATION_SPEND,
        description="Question summarization",
        reference_type="question",
        reference_id=request.request_id,
        idempotency_key=f"summarize:{account.id}:{request.request_id}" if request.request_id else None,
    )
    return _charge_response(outcome, locale, cost=cost)


@router.post("/refund")
async def refund_reading_charge(
    request: RefundRequest,
    http_request: Request,
    _: bool = Depends(require_internal_service),
    db: AsyncSession = Depends(get_db),
):
    """Return a charge after the reading generator failed to deliver it."""
    locale = request_locale(http_request)
    outcome = await refund_spend(request.user_id, db, event_id=request.event_id, reason=request.reason)
    if outcome.reason == "not_found":
        raise HTTPException(status_code=404, detail="Charge not found.")
    if outcome.reason == "not_eligible":
        raise HTTPException(status_code=422, detail=translate("refund_not_eligible", locale))
    payload = outcome.as_dict()
    if not outcome.applied:
        payload["message"] = translate("refund_already_applied", locale)
    return payload
