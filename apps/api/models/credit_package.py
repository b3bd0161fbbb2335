"""CreditPackage model for the purchasable catalog."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditPackage(Base):
    """Purchasable credit bundle. Packages are deactivated, never deleted."""

    __tablename__ = "credit_packages"

    id = Column(String, primary_key=True)
    credits = Column(Integer, nullable=False)
    bonus_credits = Column(Integer, nullable=False, default=0)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="EUR")
    name_en = Column(String, nullable=False)
    name_fr = Column(String, nullable=False)
    label_en = Column(String, nullable=True)
    label_fr = Column(String, nullable=True)
    discount_percent = Column(Integer, nullable=False, default=0)
    badge = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
