"""SelfExclusion model for time-locked purchase blocks."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from database import Base


class SelfExclusion(Base):
    """User-initiated purchase block. ends_at NULL means indefinite."""

    __tablename__ = "self_exclusions"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    reason = Column(String, nullable=True)

    user = relationship("User", back_populates="self_exclusion")
