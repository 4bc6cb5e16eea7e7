"""
Non-authoritative access hints for UX.

Computed from a cached user snapshot (the shape the web client keeps
locally) so pages can show "remaining" counters and lock badges without a
round trip. Never consulted when deciding or spending: EntitlementResolver
and CreditLedgerService are the only authorities.
"""

from typing import Any, Dict, Mapping, Optional

from services.credit_types import CreditType
from services.feature_policy import list_policies


# Snapshot field carrying each credit type in the client's cached user document.
SNAPSHOT_FIELDS = {
    CreditType.AI_GURU: "aiGuruTickets",
    CreditType.KUNDALI: "kundaliTickets",
    CreditType.LIFETIME_PREDICTION: "lifetimePredictions",
}
LEGACY_SNAPSHOT_FIELD = "tickets"


def _as_int(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def snapshot_from_account(balances: Mapping[str, int], subscription_active: bool) -> Dict[str, Any]:
    """Build the client snapshot shape from server-side balances."""
    snapshot: Dict[str, Any] = {
        field: _as_int(balances.get(credit_type.value))
        for credit_type, field in SNAPSHOT_FIELDS.items()
    }
    snapshot[LEGACY_SNAPSHOT_FIELD] = snapshot[SNAPSHOT_FIELDS[CreditType.AI_GURU]]
    snapshot["subscription"] = {"active": bool(subscription_active)}
    return snapshot


def _snapshot_balance(snapshot: Mapping[str, Any], credit_type: CreditType) -> int:
    value = _as_int(snapshot.get(SNAPSHOT_FIELDS[credit_type]))
    if credit_type == CreditType.AI_GURU and not value:
        # Older cached documents only carry the legacy counter.
        value = _as_int(snapshot.get(LEGACY_SNAPSHOT_FIELD))
    return value


def _snapshot_has_subscription(snapshot: Mapping[str, Any]) -> bool:
    subscription: Optional[Any] = snapshot.get("subscription")
    if isinstance(subscription, Mapping):
        return subscription.get("active") is True
    return False


def compute_access_hints(snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    has_subscription = _snapshot_has_subscription(snapshot)
    features = {}
    for policy in list_policies():
        remaining = _snapshot_balance(snapshot, policy.credit_type)
        features[policy.feature_key] = {
            "can_access": has_subscription or remaining >= policy.cost_per_use,
            "remaining": remaining,
            "cost": policy.cost_per_use,
        }
    return {
        "authoritative": False,
        "has_subscription": has_subscription,
        "features": features,
    }
