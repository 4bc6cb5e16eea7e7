"""Subscription model: one record per user, written by payment reconciliation."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Subscription(Base):
    """Time-bound subscription override for a user."""

    __tablename__ = "subscriptions"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    plan_id = Column(String, nullable=True)  # starter, advanced, supreme
    status = Column(String, nullable=False, default="pending")
    active = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    provider_subscription_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscription")
