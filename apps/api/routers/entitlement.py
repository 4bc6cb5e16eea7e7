"""Entitlement checks and credit consumption for paid features."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import CreditLedgerService
from services.entitlement import VIA_CREDIT, VIA_SUBSCRIPTION, EntitlementResolver
from services.credit_errors import InsufficientCreditsError

router = APIRouter()


@router.get("/{user_id}/{feature}")
async def check_entitlement(
    user_id: str,
    feature: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id)
    decision = await EntitlementResolver(db).check_access(scoped_user_id, feature)
    return decision.to_dict()


@router.post("/{user_id}/{feature}/consume")
async def consume_entitlement(
    user_id: str,
    feature: str,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("entitlement_consume", limit=120, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    """
    Spend one use of ``feature`` for the user.

    Subscribers are allowed without spending. Otherwise the balance is
    re-checked inside the spend, so a stale check still fails closed with 402.
    """
    scoped_user_id = ensure_user_scope(auth, user_id)
    idempotency_key = (idempotency_key or "").strip() or None
    ledger = CreditLedgerService(db)
    decision = await EntitlementResolver(db, ledger=ledger).check_access(scoped_user_id, feature)

    if decision.allowed and decision.via == VIA_SUBSCRIPTION:
        return {
            "allowed": True,
            "via": VIA_SUBSCRIPTION,
            "charged": 0,
            "balance": decision.remaining,
            "credit_type": decision.credit_type,
        }

    # A keyed retry falls through so an already-committed spend is replayed.
    if not decision.allowed and not idempotency_key:
        raise InsufficientCreditsError(
            scoped_user_id,
            decision.credit_type,
            required=decision.cost,
            available=decision.remaining,
            feature_key=decision.feature_key,
            redirect_hint=decision.redirect_hint,
        )

    change = await ledger.consume(
        scoped_user_id,
        decision.credit_type,
        decision.cost,
        actor=auth.user_id,
        feature_key=decision.feature_key,
        idempotency_key=idempotency_key,
        redirect_hint=decision.redirect_hint,
    )
    return {
        "allowed": True,
        "via": VIA_CREDIT,
        "charged": -change.delta,
        "balance": change.balance,
        "credit_type": change.credit_type,
        "adjustment_id": change.adjustment_id,
        "replayed": change.replayed,
    }
