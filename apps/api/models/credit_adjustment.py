"""CreditAdjustment model: the append-only audit stream of balance changes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditAdjustment(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_adjustments"
    __table_args__ = (
        Index("ix_credit_adjustments_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    credit_type = Column(String, nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)  # purchase, admin_grant, admin_revoke, admin_reset, consumption, refund
    actor = Column(String, nullable=False)
    reference_id = Column(String, nullable=True, index=True)
    operation_key = Column(String, nullable=False, unique=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_adjustments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "credit_type": self.credit_type,
            "delta": self.delta,
            "balance_after": self.balance_after,
            "reason": self.reason,
            "actor": self.actor,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
