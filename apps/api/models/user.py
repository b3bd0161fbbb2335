"""User model."""

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """User credit account, created on the first authenticated request."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    preferred_language = Column(String, nullable=False, default="en")
    credits = Column(Integer, nullable=False, default=0)
    total_credits_earned = Column(Integer, nullable=False, default=0)
    total_credits_spent = Column(Integer, nullable=False, default=0)
    referral_code = Column(String, unique=True, nullable=True, index=True)
    referred_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    login_streak = Column(Integer, nullable=False, default=0)
    last_bonus_date = Column(Date, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    account_status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    ledger_events = relationship("LedgerEvent", back_populates="user")
    payment_transactions = relationship("PaymentTransaction", back_populates="user")
    spending_limit = relationship("SpendingLimit", back_populates="user", uselist=False)
    self_exclusion = relationship("SelfExclusion", back_populates="user", uselist=False)
