"""CreditAccount model holding every credit balance for one user."""

from typing import Dict

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from services.credit_types import BALANCE_COLUMNS, CreditType


class CreditAccount(Base):
    """Per-user multi-type balance row. Mutated only through CreditLedgerService."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("ai_guru_balance >= 0", name="ck_credit_accounts_ai_guru_non_negative"),
        CheckConstraint("kundali_balance >= 0", name="ck_credit_accounts_kundali_non_negative"),
        CheckConstraint(
            "lifetime_prediction_balance >= 0",
            name="ck_credit_accounts_lifetime_prediction_non_negative",
        ),
        CheckConstraint("legacy_ai_questions >= 0", name="ck_credit_accounts_legacy_ai_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    ai_guru_balance = Column(Integer, nullable=False, default=0, server_default="0")
    kundali_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_prediction_balance = Column(Integer, nullable=False, default=0, server_default="0")
    # Mirror of ai_guru_balance for clients still reading the old `tickets` field.
    legacy_ai_questions = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="credit_account")

    def balances(self) -> Dict[str, int]:
        return {
            credit_type.value: int(getattr(self, column) or 0)
            for credit_type, column in BALANCE_COLUMNS.items()
        }

    def balance_of(self, credit_type: CreditType) -> int:
        return int(getattr(self, BALANCE_COLUMNS[credit_type]) or 0)
