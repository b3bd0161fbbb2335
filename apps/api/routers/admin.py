"""Admin endpoints: package catalog, manual adjustments and ledger audits."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import require_admin
from services.checkout import list_transactions, serialize_transaction
from services.credits import adjust_credits, list_events, reconcile, serialize_event
from services.errors import AccountNotFoundError
from services.pricing import (
    CreditPackageView,
    create_package,
    deactivate_package,
    list_all_packages,
    seed_default_packages,
    update_package,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PackageUpdateRequest(BaseModel):
    credits: Optional[int] = None
    bonus_credits: Optional[int] = None
    price_cents: Optional[int] = None
    currency: Optional[str] = None
    name_en: Optional[str] = None
    name_fr: Optional[str] = None
    label_en: Optional[str] = None
    label_fr: Optional[str] = None
    discount_percent: Optional[int] = None
    badge: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class CreditAdjustmentRequest(BaseModel):
    amount: int = Field(ge=-100_000, le=100_000)
    reason: str = Field(min_length=3, max_length=255)


@router.get("/packages")
async def admin_list_packages(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"packages": [package.model_dump() for package in await list_all_packages(db)]}


@router.post("/packages", status_code=201)
async def admin_create_package(
    request: CreditPackageView,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        package = await create_package(request, db)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info("Admin %s created package %s", admin.id, package.id)
    return package.model_dump()


@router.patch("/packages/{package_id}")
async def admin_update_package(
    package_id: str,
    request: PackageUpdateRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        package = await update_package(package_id, request.model_dump(exclude_unset=True), db)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if package is None:
        raise HTTPException(status_code=404, detail="Package not found.")
    return package.model_dump()


@router.delete("/packages/{package_id}")
async def admin_deactivate_package(
    package_id: str,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if not await deactivate_package(package_id, db):
        raise HTTPException(status_code=404, detail="Package not found.")
    return {"id": package_id, "is_active": False}


@router.post("/packages/seed")
async def admin_seed_packages(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"created": await seed_default_packages(db)}


@router.post("/users/{user_id}/credits")
async def admin_adjust_credits(
    user_id: str,
    request: CreditAdjustmentRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if request.amount == 0:
        raise HTTPException(status_code=422, detail="Adjustment amount cannot be zero.")
    try:
        outcome = await adjust_credits(user_id, db, amount=request.amount, reason=request.reason, admin_id=admin.id)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not outcome.ok:
        raise HTTPException(status_code=402, detail=outcome.as_dict())
    logger.info("Admin %s adjusted user %s by %+d credits", admin.id, user_id, request.amount)
    return outcome.as_dict()


@router.get("/users/{user_id}/ledger")
async def admin_user_ledger(
    user_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    events = await list_events(user_id, db, limit=limit, offset=offset)
    return {"items": [serialize_event(event) for event in events], "limit": limit, "offset": offset}


@router.get("/users/{user_id}/reconcile")
async def admin_reconcile(
    user_id: str,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await reconcile(user_id, db)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/transactions")
async def admin_transactions(
    status: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    needs_review: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_transactions(
        db, user_id=user_id, status=status, needs_review=needs_review, limit=limit, offset=offset
    )
    return {"items": [serialize_transaction(row) for row in rows], "limit": limit, "offset": offset}
