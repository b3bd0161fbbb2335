"""Billing router: packages, checkout, verification and transaction history."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_account, get_locale, request_locale
from routers.rate_limit import rate_limit
from services.checkout import (
    VerificationState,
    cancel_checkout,
    create_checkout,
    list_transactions,
    serialize_transaction,
    verify_payment,
)
from services.errors import PaymentProviderError, PaymentProviderNotConfiguredError, TransactionNotFoundError
from services.messages import translate
from services.payments import PaymentGatewayRegistry, get_payment_gateways
from services.pricing import cost_table, list_active_packages

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=64)
    provider: str = Field(default="stripe", min_length=1, max_length=16)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class ProviderRefRequest(BaseModel):
    provider_ref: str = Field(min_length=1, max_length=255)


def _provider_unavailable(exc: PaymentProviderNotConfiguredError, locale: str) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={
            "reason": "provider_not_configured",
            "message": translate("provider_not_configured", locale, provider=exc.provider.capitalize()),
        },
    )


@router.get("/packages")
async def get_packages(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayRegistry = Depends(get_payment_gateways),
):
    locale = request_locale(request)
    packages = await list_active_packages(db)
    return {
        "packages": [package.localized(locale) for package in packages],
        "providers": gateways.available(),
    }


@router.get("/costs")
async def get_costs():
    return cost_table()


@router.post("/checkout")
async def post_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayRegistry = Depends(get_payment_gateways),
):
    try:
        outcome = await create_checkout(
            account.id,
            db,
            package_id=request.package_id,
            provider=request.provider,
            gateways=gateways,
            locale=locale,
            customer_email=None if account.email.endswith("@local.invalid") else account.email,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except PaymentProviderNotConfiguredError as exc:
        raise _provider_unavailable(exc, locale) from exc
    except PaymentProviderError as exc:
        logger.warning("Checkout creation failed at %s: %s", exc.provider, exc)
        raise HTTPException(status_code=502, detail=f"{exc.provider} checkout could not be created. Try again.") from exc

    if not outcome.ok:
        status_code = 404 if outcome.reason == "package_not_found" else 403
        detail = outcome.decision.as_dict() if outcome.decision is not None else outcome.as_dict()
        raise HTTPException(status_code=status_code, detail=detail)
    return outcome.as_dict()


@router.post("/verify")
async def post_verify(
    request: ProviderRefRequest,
    _rate_limit: None = Depends(rate_limit("billing_verify", limit=60, window_seconds=600)),
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayRegistry = Depends(get_payment_gateways),
):
    try:
        result = await verify_payment(
            account.id,
            db,
            provider_ref=request.provider_ref,
            gateways=gateways,
            locale=locale,
        )
    except TransactionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=translate("transaction_not_found", locale)) from exc
    except PaymentProviderNotConfiguredError as exc:
        raise _provider_unavailable(exc, locale) from exc

    if result.state == VerificationState.UNKNOWN:
        return JSONResponse(status_code=202, content=result.as_dict())
    return result.as_dict()


@router.post("/cancel")
async def post_cancel(
    request: ProviderRefRequest,
    account: User = Depends(get_account),
    locale: str = Depends(get_locale),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await cancel_checkout(account.id, db, provider_ref=request.provider_ref, locale=locale)
    except TransactionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=translate("transaction_not_found", locale)) from exc


@router.get("/transactions")
async def get_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    account: User = Depends(get_account),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_transactions(db, user_id=account.id, limit=limit, offset=offset)
    return {"items": [serialize_transaction(row) for row in rows], "limit": limit, "offset": offset}
