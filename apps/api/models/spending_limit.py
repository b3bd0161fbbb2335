"""SpendingLimit model for per-user purchase caps."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SpendingLimit(Base):
    """Daily/weekly/monthly caps in cents. NULL means unlimited."""

    __tablename__ = "spending_limits"
    __table_args__ = (
        CheckConstraint("daily_cents IS NULL OR daily_cents > 0", name="ck_spending_limits_daily_positive"),
        CheckConstraint("weekly_cents IS NULL OR weekly_cents > 0", name="ck_spending_limits_weekly_positive"),
        CheckConstraint("monthly_cents IS NULL OR monthly_cents > 0", name="ck_spending_limits_monthly_positive"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    daily_cents = Column(Integer, nullable=True)
    weekly_cents = Column(Integer, nullable=True)
    monthly_cents = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="spending_limit")
