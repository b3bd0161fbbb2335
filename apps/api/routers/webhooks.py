"""Provider webhook receivers. Authenticated by signature, not by session."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.rate_limit import rate_limit
from services.checkout import process_webhook
from services.errors import PaymentProviderError, PaymentProviderNotConfiguredError
from services.payments import PaymentGatewayRegistry, WebhookSignatureError, get_payment_gateways

router = APIRouter()
logger = logging.getLogger(__name__)


async def _receive(provider: str, request: Request, db: AsyncSession, gateways: PaymentGatewayRegistry):
    body = await request.body()
    try:
        return await process_webhook(
            provider,
            db,
            body=body,
            headers=request.headers,
            gateways=gateways,
        )
    except WebhookSignatureError as exc:
        logger.warning("Rejected %s webhook: %s", provider, exc)
        raise HTTPException(status_code=400, detail="Invalid webhook signature.") from exc
    except PaymentProviderNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=f"{provider} webhooks are not configured.") from exc
    except PaymentProviderError as exc:
        # Non-2xx makes the provider redeliver later.
        logger.warning("%s webhook could not be processed yet: %s", provider, exc)
        raise HTTPException(status_code=502, detail="Provider unavailable; retry later.") from exc


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    _rate_limit: None = Depends(rate_limit("webhook_stripe", limit=600, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayRegistry = Depends(get_payment_gateways),
):
    return await _receive("stripe", request, db, gateways)


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    _rate_limit: None = Depends(rate_limit("webhook_paypal", limit=600, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayRegistry = Depends(get_payment_gateways),
):
    return await _receive("paypal", request, db, gateways)
