"""PaymentTransaction model tracking a checkout from creation to completion."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentTransaction(Base):
    """Real-money purchase intent.

    Status leaves ``pending`` once; ``failed`` and ``cancelled`` are final and a
    provider success arriving after them is recorded in ``anomaly``.
    """

    __tablename__ = "payment_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    provider_ref = Column(String, nullable=False, unique=True)
    payment_ref = Column(String, nullable=True, index=True)
    package_id = Column(String, ForeignKey("credit_packages.id"), nullable=False)
    credits = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="EUR")
    status = Column(String, nullable=False, default="pending", index=True)
    credits_granted = Column(Integer, nullable=True)
    ledger_event_id = Column(String, ForeignKey("ledger_events.id"), nullable=True)
    failure_reason = Column(String, nullable=True)
    anomaly = Column(String, nullable=True, index=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="payment_transactions")
