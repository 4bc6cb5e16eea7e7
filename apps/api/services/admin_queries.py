"""Read-only projections for the admin console."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import and_, case, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_account import CreditAccount
from models.credit_adjustment import CreditAdjustment
from models.payment_event import ReconciliationFailure
from models.subscription import Subscription
from models.user import User
from services.credit_types import BALANCE_COLUMNS
from services.credits import CreditLedgerService
from services.subscriptions import (
    get_subscription,
    subscription_status_label,
    subscription_to_dict,
    utcnow,
)

MAX_PAGE_SIZE = 100
FAILURE_STATUSES = ("retrying", "dead", "resolved")


def _page_window(page: int, limit: int) -> tuple[int, int]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 50), 1), MAX_PAGE_SIZE)
    return page, limit


def _balances(account: Optional[CreditAccount]) -> Dict[str, int]:
    if account is None:
        return {credit_type.value: 0 for credit_type in BALANCE_COLUMNS}
    return account.balances()


async def list_accounts(
    db: AsyncSession,
    *,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    page, limit = _page_window(page, limit)
    now = now or utcnow()

    filters = []
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        filters.append(or_(User.id.ilike(pattern), User.email.ilike(pattern), User.name.ilike(pattern)))

    total_result = await db.execute(select(func.count(User.id)).where(*filters))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(User, CreditAccount, Subscription)
        .outerjoin(CreditAccount, CreditAccount.user_id == User.id)
        .outerjoin(Subscription, Subscription.user_id == User.id)
        .where(*filters)
        .order_by(User.created_at.desc(), User.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    users = []
    for user, account, subscription in result.all():
        users.append(
            {
                "uid": user.id,
                "email": user.email,
                "name": user.name,
                "created_at": user.created_at.isoformat() if user.created_at else None,
                "balances": _balances(account),
                "subscription_status": subscription_status_label(subscription, now),
            }
        )

    return {
        "users": users,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "has_more": page * limit < total,
        },
    }


async def get_account_detail(db: AsyncSession, user_id: str, *, adjustments_limit: int = 20) -> Dict[str, Any]:
    """Balances, legacy mirror, subscription and latest adjustments for one user."""
    ledger = CreditLedgerService(db)
    snapshot = await ledger.get_account_snapshot(user_id)
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one()
    subscription = await get_subscription(db, user_id)
    adjustments = await ledger.recent_adjustments(user_id, limit=adjustments_limit)
    return {
        "uid": user.id,
        "email": user.email,
        "name": user.name,
        "balances": snapshot["balances"],
        "legacy": snapshot["legacy"],
        "version": snapshot["version"],
        "subscription": subscription_to_dict(subscription),
        "recent_adjustments": [entry.to_dict() for entry in adjustments],
    }


async def list_adjustments(
    db: AsyncSession,
    user_id: str,
    *,
    page: int = 1,
    limit: int = 50,
    credit_type: Optional[str] = None,
) -> Dict[str, Any]:
    page, limit = _page_window(page, limit)
    await CreditLedgerService(db).require_user(user_id)

    filters = [CreditAdjustment.user_id == user_id]
    if credit_type:
        filters.append(CreditAdjustment.credit_type == credit_type)

    total = int((await db.execute(select(func.count(CreditAdjustment.id)).where(*filters))).scalar() or 0)
    result = await db.execute(
        select(CreditAdjustment)
        .where(*filters)
        .order_by(CreditAdjustment.created_at.desc(), CreditAdjustment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "adjustments": [entry.to_dict() for entry in result.scalars().all()],
        "pagination": {"page": page, "limit": limit, "total": total, "has_more": page * limit < total},
    }


async def subscription_status_counts(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or utcnow()
    unexpired = or_(Subscription.expires_at.is_(None), Subscription.expires_at > now)
    result = await db.execute(
        select(
            func.count(Subscription.user_id),
            func.sum(case((and_(Subscription.active.is_(True), unexpired), 1), else_=0)),
            func.sum(case((and_(Subscription.active.is_(True), Subscription.expires_at <= now), 1), else_=0)),
        )
    )
    subscribed, active, expired = result.one()
    subscribed, active, expired = int(subscribed or 0), int(active or 0), int(expired or 0)

    total_users = int((await db.execute(select(func.count(User.id)))).scalar() or 0)
    return {
        "active": active,
        "expired": expired,
        "inactive": subscribed - active - expired,
        "none": max(total_users - subscribed, 0),
        "total_users": total_users,
    }


async def list_failures(
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    page, limit = _page_window(page, limit)
    filters = []
    if status:
        if status not in FAILURE_STATUSES:
            raise ValueError(f"status must be one of {', '.join(FAILURE_STATUSES)}")
        filters.append(ReconciliationFailure.status == status)

    total = int((await db.execute(select(func.count(ReconciliationFailure.id)).where(*filters))).scalar() or 0)
    result = await db.execute(
        select(ReconciliationFailure)
        .where(*filters)
        .order_by(ReconciliationFailure.updated_at.desc(), ReconciliationFailure.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "failures": [failure.to_dict() for failure in result.scalars().all()],
        "pagination": {"page": page, "limit": limit, "total": total, "has_more": page * limit < total},
    }
