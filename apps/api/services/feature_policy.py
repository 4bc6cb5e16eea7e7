"""
Feature access policy registry.

Maps every paid feature to the credit type it draws from and its cost per
use. The registry is fixed at import time and exposed read-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import List, Mapping

from services.credit_errors import PolicyNotFoundError
from services.credit_types import LEGACY_ALIASES, CreditType


@dataclass(frozen=True)
class FeaturePolicy:
    feature_key: str
    credit_type: CreditType
    cost_per_use: int
    label: str
    purchase_product_id: str

    def to_dict(self) -> dict:
        return {
            "feature": self.feature_key,
            "credit_type": self.credit_type.value,
            "cost_per_use": self.cost_per_use,
            "label": self.label,
            "purchase_product_id": self.purchase_product_id,
        }


_POLICIES = (
    FeaturePolicy("ai_question", CreditType.AI_GURU, 1, "AI Guru Question", "99"),
    FeaturePolicy("guru_vision", CreditType.AI_GURU, 2, "AI Guru Image Reading", "199"),
    FeaturePolicy("kundali", CreditType.KUNDALI, 1, "Full Kundali Report", "199"),
    FeaturePolicy("compatibility", CreditType.KUNDALI, 1, "Compatibility Analysis", "199"),
    FeaturePolicy("career", CreditType.KUNDALI, 1, "Career Analysis", "199"),
    FeaturePolicy("business", CreditType.KUNDALI, 1, "Business Compatibility", "199"),
    FeaturePolicy("predictions", CreditType.LIFETIME_PREDICTION, 1, "Lifetime Predictions", "299"),
    FeaturePolicy("timeline", CreditType.LIFETIME_PREDICTION, 1, "Life Timeline", "299"),
)

FEATURE_POLICIES: Mapping[str, FeaturePolicy] = MappingProxyType(
    {policy.feature_key: policy for policy in _POLICIES}
)


def resolve_policy(feature_key: str) -> FeaturePolicy:
    """Return the policy for a feature or raise PolicyNotFoundError."""
    policy = FEATURE_POLICIES.get(str(feature_key or "").strip())
    if policy is None:
        raise PolicyNotFoundError(feature_key)
    return policy


def list_policies() -> List[FeaturePolicy]:
    return list(FEATURE_POLICIES.values())


def validate_policies() -> None:
    """Fail fast on malformed policies at startup."""
    for policy in FEATURE_POLICIES.values():
        if int(policy.cost_per_use) < 1:
            raise ValueError(f"Feature '{policy.feature_key}' must cost at least 1 credit per use.")
        if policy.credit_type in LEGACY_ALIASES:
            raise ValueError(
                f"Feature '{policy.feature_key}' must reference a modern credit type, "
                f"not legacy '{policy.credit_type.value}'."
            )
