"""Pricing catalog: feature costs and purchasable credit packages.

The server-side lookups here are authoritative; any total computed by a client
is advisory and is recomputed before a debit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_package import CreditPackage

logger = logging.getLogger(__name__)


SPREAD_SETTINGS = {
    "SINGLE": "CREDIT_COST_SINGLE",
    "TWO_CARD": "CREDIT_COST_TWO_CARD",
    "THREE_CARD": "CREDIT_COST_THREE_CARD",
    "FIVE_CARD": "CREDIT_COST_FIVE_CARD",
    "LOVE": "CREDIT_COST_LOVE",
    "CAREER": "CREDIT_COST_CAREER",
    "HORSESHOE": "CREDIT_COST_HORSESHOE",
    "CELTIC_CROSS": "CREDIT_COST_CELTIC_CROSS",
}


class UnknownSpreadError(ValueError):
    """Raised for a spread type the catalog does not price."""


def normalize_spread_type(spread_type: str) -> str:
    """'three-card', 'Three Card' and 'THREE_CARD' all map to 'THREE_CARD'."""
    return str(spread_type or "").strip().upper().replace("-", "_").replace(" ", "_")


def _cost(setting_name: str) -> int:
    return max(int(getattr(settings, setting_name)), 0)


def get_spread_cost(spread_type: str) -> int:
    key = normalize_spread_type(spread_type)
    setting_name = SPREAD_SETTINGS.get(key)
    if setting_name is None:
        raise UnknownSpreadError(f"Unknown spread type: {spread_type}")
    return _cost(setting_name)


def get_follow_up_cost() -> int:
    return _cost("CREDIT_COST_FOLLOW_UP")


def get_extended_question_cost() -> int:
    return _cost("CREDIT_COST_EXTENDED_QUESTION")


def get_summarize_question_cost() -> int:
    return _cost("CREDIT_COST_SUMMARIZE_QUESTION")


def get_advanced_style_cost() -> int:
    return _cost("CREDIT_COST_ADVANCED_STYLE")


@dataclass(frozen=True)
class ReadingCost:
    spread_type: str
    base: int
    extended: int
    style: int

    @property
    def total(self) -> int:
        return self.base + self.extended + self.style

    def as_dict(self) -> Dict[str, Any]:
        return {
            "spread_type": self.spread_type,
            "base_cost": self.base,
            "extended_cost": self.extended,
            "style_cost": self.style,
            "total_cost": self.total,
        }


def calculate_reading_cost(
    spread_type: str,
    *,
    has_extended_question: bool = False,
    has_advanced_style: bool = False,
) -> ReadingCost:
    return ReadingCost(
        spread_type=normalize_spread_type(spread_type),
        base=get_spread_cost(spread_type),
        extended=get_extended_question_cost() if has_extended_question else 0,
        style=get_advanced_style_cost() if has_advanced_style else 0,
    )


def cost_table() -> Dict[str, Any]:
    return {
        "spreads": {key.lower(): _cost(name) for key, name in SPREAD_SETTINGS.items()},
        "follow_up": get_follow_up_cost(),
        "extended_question": get_extended_question_cost(),
        "advanced_style": get_advanced_style_cost(),
        "summarize_question": get_summarize_question_cost(),
    }


class CreditPackageView(BaseModel):
    """Canonical credit package shape shared by every caller."""

    id: str = Field(min_length=1, max_length=64)
    credits: int = Field(gt=0)
    bonus_credits: int = Field(default=0, ge=0)
    price_cents: int = Field(gt=0)
    currency: str = "EUR"
    name_en: str
    name_fr: str
    label_en: Optional[str] = None
    label_fr: Optional[str] = None
    discount_percent: int = Field(default=0, ge=0, le=100)
    badge: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0

    model_config = {"from_attributes": True}

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits

    def localized(self, locale: str = "en") -> Dict[str, Any]:
        payload = self.model_dump()
        payload["total_credits"] = self.total_credits
        payload["name"] = self.name_fr if locale == "fr" else self.name_en
        payload["label"] = self.label_fr if locale == "fr" else self.label_en
        return payload


DEFAULT_PACKAGES: List[Dict[str, Any]] = [
    {
        "id": "starter",
        "credits": 10,
        "price_cents": 500,
        "name_en": "Starter",
        "name_fr": "Démarrage",
        "label_en": "Try It Out",
        "label_fr": "Essayez",
        "discount_percent": 0,
        "badge": None,
        "sort_order": 1,
    },
    {
        "id": "basic",
        "credits": 25,
        "price_cents": 1000,
        "name_en": "Basic",
        "name_fr": "Basique",
        "label_en": "Popular",
        "label_fr": "Populaire",
        "discount_percent": 20,
        "badge": None,
        "sort_order": 2,
    },
    {
        "id": "popular",
        "credits": 60,
        "price_cents": 2000,
        "name_en": "Popular",
        "name_fr": "Populaire",
        "label_en": "MOST POPULAR",
        "label_fr": "LE PLUS POPULAIRE",
        "discount_percent": 34,
        "badge": "popular",
        "sort_order": 3,
    },
    {
        "id": "value",
        "credits": 100,
        "price_cents": 3000,
        "name_en": "Value",
        "name_fr": "Avantage",
        "label_en": "BEST VALUE",
        "label_fr": "MEILLEUR PRIX",
        "discount_percent": 40,
        "badge": "value",
        "sort_order": 4,
    },
    {
        "id": "premium",
        "credits": 200,
        "price_cents": 5000,
        "name_en": "Premium",
        "name_fr": "Premium",
        "label_en": "POWER USER",
        "label_fr": "UTILISATEUR PRO",
        "discount_percent": 50,
        "badge": "premium",
        "sort_order": 5,
    },
]


async def list_active_packages(db: AsyncSession) -> List[CreditPackageView]:
    result = await db.execute(
        select(CreditPackage)
        .where(CreditPackage.is_active.is_(True))
        .order_by(CreditPackage.sort_order, CreditPackage.id)
    )
    return [CreditPackageView.model_validate(row) for row in result.scalars().all()]


async def list_all_packages(db: AsyncSession) -> List[CreditPackageView]:
    result = await db.execute(select(CreditPackage).order_by(CreditPackage.sort_order, CreditPackage.id))
    return [CreditPackageView.model_validate(row) for row in result.scalars().all()]


async def get_package(package_id: str, db: AsyncSession, *, active_only: bool = True) -> Optional[CreditPackageView]:
    result = await db.execute(select(CreditPackage).where(CreditPackage.id == package_id))
    row = result.scalar_one_or_none()
    if row is None or (active_only and not row.is_active):
        return None
    return CreditPackageView.model_validate(row)


async def create_package(view: CreditPackageView, db: AsyncSession) -> CreditPackageView:
    existing = await db.execute(select(CreditPackage.id).where(CreditPackage.id == view.id))
    if existing.scalar_one_or_none():
        raise ValueError(f"Credit package {view.id} already exists")
    row = CreditPackage(**view.model_dump())
    db.add(row)
    await db.commit()
    logger.info("Created credit package %s (%s credits, %s cents)", view.id, view.credits, view.price_cents)
    return CreditPackageView.model_validate(row)


async def update_package(package_id: str, changes: Dict[str, Any], db: AsyncSession) -> Optional[CreditPackageView]:
    result = await db.execute(select(CreditPackage).where(CreditPackage.id == package_id))
    row = result.scalar_one_or_none()
    if row is None:
        return None
    merged = CreditPackageView.model_validate(row).model_dump()
    merged.update({key: value for key, value in changes.items() if key != "id"})
    validated = CreditPackageView.model_validate(merged)
    for key, value in validated.model_dump().items():
        setattr(row, key, value)
    await db.commit()
    return validated


async def deactivate_package(package_id: str, db: AsyncSession) -> bool:
    result = await db.execute(select(CreditPackage).where(CreditPackage.id == package_id))
    row = result.scalar_one_or_none()
    if row is None:
        return False
    row.is_active = False
    await db.commit()
    logger.info("Deactivated credit package %s", package_id)
    return True


async def seed_default_packages(db: AsyncSession) -> int:
    """Insert missing default packages; existing rows are left untouched."""
    result = await db.execute(select(CreditPackage.id))
    existing = set(result.scalars().all())
    created = 0
    for raw in DEFAULT_PACKAGES:
        if raw["id"] in existing:
            continue
        view = CreditPackageView.model_validate({**raw, "currency": settings.PAYMENT_CURRENCY})
        db.add(CreditPackage(**view.model_dump()))
        created += 1
    if created:
        await db.commit()
        logger.info("Seeded %s default credit packages", created)
    return created
