"""Payment event models: processed-event guard and reconciliation failures feed."""

import uuid

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class ProcessedPaymentEvent(Base):
    """One row per payment_id that has been applied; the primary key is the idempotency guard."""

    __tablename__ = "payment_events"

    payment_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    user_id = Column(String, nullable=True, index=True)
    product_id = Column(String, nullable=True)
    order_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=True)
    outcome = Column(String, nullable=False)  # granted, subscription_updated, recorded, ignored
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class ReconciliationFailure(Base):
    """Operator-facing record of a payment event that could not be applied."""

    __tablename__ = "reconciliation_failures"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_id = Column(String, nullable=False, unique=True)
    event_type = Column(String, nullable=True)
    user_id = Column(String, nullable=True, index=True)
    payload_json = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="retrying", index=True)  # retrying, dead, resolved
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "event_type": self.event_type,
            "user_id": self.user_id,
            "payload": self.payload_json,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
