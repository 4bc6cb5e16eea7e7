"""Credit type enumeration and legacy alias table."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple, Union


class CreditType(str, Enum):
    AI_GURU = "ai_guru"
    KUNDALI = "kundali"
    LIFETIME_PREDICTION = "lifetime_prediction"
    LEGACY_AI_QUESTION = "legacy_ai_question"
    LEGACY_KUNDALI_BASIC = "legacy_kundali_basic"


MODERN_CREDIT_TYPES: Tuple[CreditType, ...] = (
    CreditType.AI_GURU,
    CreditType.KUNDALI,
    CreditType.LIFETIME_PREDICTION,
)

# Legacy ticket names from the pre-ledger user documents.
LEGACY_ALIASES: Dict[CreditType, CreditType] = {
    CreditType.LEGACY_AI_QUESTION: CreditType.AI_GURU,
    CreditType.LEGACY_KUNDALI_BASIC: CreditType.KUNDALI,
}

# Attribute on CreditAccount holding each modern balance.
BALANCE_COLUMNS: Dict[CreditType, str] = {
    CreditType.AI_GURU: "ai_guru_balance",
    CreditType.KUNDALI: "kundali_balance",
    CreditType.LIFETIME_PREDICTION: "lifetime_prediction_balance",
}

# Modern types whose value is mirrored into a legacy column in the same write.
LEGACY_MIRROR_COLUMNS: Dict[CreditType, str] = {
    CreditType.AI_GURU: "legacy_ai_questions",
}


def parse_credit_type(value: Union[str, CreditType]) -> CreditType:
    """Parse a boundary value into a CreditType, rejecting unknown names."""
    if isinstance(value, CreditType):
        return value
    normalized = str(value or "").strip().lower()
    try:
        return CreditType(normalized)
    except ValueError as exc:
        raise ValueError(f"Unknown credit type '{value}'") from exc


def canonical_credit_type(value: Union[str, CreditType]) -> CreditType:
    """Resolve legacy aliases to the modern credit type they stand for."""
    credit_type = parse_credit_type(value)
    return LEGACY_ALIASES.get(credit_type, credit_type)


def balance_column(credit_type: Union[str, CreditType]) -> str:
    return BALANCE_COLUMNS[canonical_credit_type(credit_type)]


def legacy_mirror_column(credit_type: Union[str, CreditType]) -> str | None:
    return LEGACY_MIRROR_COLUMNS.get(canonical_credit_type(credit_type))
