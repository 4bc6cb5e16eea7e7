"""
Entitlement resolver: read-only access decisions.

Resolution order: subscription override → credit balance → deny.

The decision is advisory for the spend: it may be stale by the time the
caller runs CreditLedgerService.consume, which re-checks the balance inside
its own transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.credits import CreditLedgerService
from services.feature_policy import FeaturePolicy, resolve_policy
from services.subscriptions import get_subscription, is_subscription_active, utcnow

logger = logging.getLogger(__name__)

VIA_SUBSCRIPTION = "subscription"
VIA_CREDIT = "credit"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    via: Optional[str]
    feature_key: str
    credit_type: str
    cost: int
    remaining: int
    redirect_hint: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "via": self.via,
            "feature": self.feature_key,
            "credit_type": self.credit_type,
            "cost": self.cost,
            "remaining": self.remaining,
            "redirect_hint": self.redirect_hint,
        }


def purchase_redirect_hint(policy: FeaturePolicy) -> str:
    base = (settings.PURCHASE_REDIRECT_BASE or "/pay").rstrip("/")
    return f"{base}/{policy.purchase_product_id}?feature={policy.feature_key}"


class EntitlementResolver:
    """Combines subscription state and credit balance into ALLOW / DENY. Never writes."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[CreditLedgerService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ledger = ledger or CreditLedgerService(db)
        self._clock = clock

    async def check_access(self, user_id: str, feature_key: str) -> AccessDecision:
        policy = resolve_policy(feature_key)
        await self.ledger.require_user(user_id)

        balance = await self.ledger.get_balance(user_id, policy.credit_type)
        subscription = await get_subscription(self.db, user_id)
        if is_subscription_active(subscription, self._clock()):
            return AccessDecision(
                allowed=True,
                via=VIA_SUBSCRIPTION,
                feature_key=policy.feature_key,
                credit_type=policy.credit_type.value,
                cost=0,
                remaining=balance,
            )

        if balance >= policy.cost_per_use:
            return AccessDecision(
                allowed=True,
                via=VIA_CREDIT,
                feature_key=policy.feature_key,
                credit_type=policy.credit_type.value,
                cost=policy.cost_per_use,
                remaining=balance,
            )

        logger.info(
            "Denied %s for user %s: %s balance %s < %s",
            policy.feature_key,
            user_id,
            policy.credit_type.value,
            balance,
            policy.cost_per_use,
        )
        return AccessDecision(
            allowed=False,
            via=None,
            feature_key=policy.feature_key,
            credit_type=policy.credit_type.value,
            cost=policy.cost_per_use,
            remaining=balance,
            redirect_hint=purchase_redirect_hint(policy),
        )
