"""
Guarded feature gate.

Runs one paid feature use through
REQUESTED → RESOLVING → {ALLOWED_VIA_SUBSCRIPTION | ALLOWED_VIA_CREDIT → SPENDING → SPENT | DENIED}.

Credits are spent only after the guarded engine has produced its result. A
failed engine call spends nothing; a spend after a successful call is not
reversed automatically if the caller later abandons the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.credit_errors import InsufficientCreditsError
from services.credits import BalanceChange, CreditLedgerService
from services.entitlement import VIA_SUBSCRIPTION, AccessDecision, EntitlementResolver

logger = logging.getLogger(__name__)


class FeatureUseState(str, Enum):
    REQUESTED = "requested"
    RESOLVING = "resolving"
    ALLOWED_VIA_SUBSCRIPTION = "allowed_via_subscription"
    ALLOWED_VIA_CREDIT = "allowed_via_credit"
    SPENDING = "spending"
    SPENT = "spent"
    DENIED = "denied"


TERMINAL_STATES = (
    FeatureUseState.SPENT,
    FeatureUseState.DENIED,
    FeatureUseState.ALLOWED_VIA_SUBSCRIPTION,
)


@dataclass
class GuardedResult:
    state: FeatureUseState
    decision: Optional[AccessDecision] = None
    result: Any = None
    balance_change: Optional[BalanceChange] = None
    transitions: List[FeatureUseState] = field(default_factory=list)


async def run_guarded_feature(
    db: AsyncSession,
    user_id: str,
    feature_key: str,
    action: Callable[[], Awaitable[Any]],
    *,
    resolver: Optional[EntitlementResolver] = None,
    idempotency_key: Optional[str] = None,
) -> GuardedResult:
    """
    Check access, run ``action``, then spend if access came from credits.

    Raises InsufficientCreditsError when denied (``action`` is not called) or
    when a concurrent spend drained the balance between check and spend.
    Exceptions from ``action`` propagate with nothing spent.
    """
    ledger = resolver.ledger if resolver else CreditLedgerService(db)
    resolver = resolver or EntitlementResolver(db, ledger=ledger)
    outcome = GuardedResult(state=FeatureUseState.REQUESTED, transitions=[FeatureUseState.REQUESTED])

    def _move(state: FeatureUseState) -> None:
        outcome.state = state
        outcome.transitions.append(state)

    _move(FeatureUseState.RESOLVING)
    decision = await resolver.check_access(user_id, feature_key)
    outcome.decision = decision

    if not decision.allowed:
        _move(FeatureUseState.DENIED)
        raise InsufficientCreditsError(
            user_id,
            decision.credit_type,
            required=decision.cost,
            available=decision.remaining,
            feature_key=decision.feature_key,
            redirect_hint=decision.redirect_hint,
        )

    if decision.via == VIA_SUBSCRIPTION:
        _move(FeatureUseState.ALLOWED_VIA_SUBSCRIPTION)
        outcome.result = await action()
        return outcome

    _move(FeatureUseState.ALLOWED_VIA_CREDIT)
    outcome.result = await action()

    _move(FeatureUseState.SPENDING)
    try:
        outcome.balance_change = await ledger.consume(
            user_id,
            decision.credit_type,
            decision.cost,
            feature_key=decision.feature_key,
            idempotency_key=idempotency_key,
            redirect_hint=decision.redirect_hint,
        )
    except InsufficientCreditsError:
        logger.warning(
            "Balance for %s drained between check and spend for user %s",
            decision.feature_key,
            user_id,
        )
        _move(FeatureUseState.DENIED)
        raise
    _move(FeatureUseState.SPENT)
    return outcome
