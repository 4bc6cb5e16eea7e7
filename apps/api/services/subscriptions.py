"""Subscription state: reads for the resolver, writes for payment reconciliation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import dialect_insert
from models.subscription import Subscription


SUBSCRIPTION_PLAN_IDS = ("starter", "advanced", "supreme")
ACTIVATING_EVENTS = ("subscription.activated", "subscription.charged")
DEACTIVATING_EVENTS = (
    "subscription.halted",
    "subscription.completed",
    "subscription.cancelled",
    "subscription.pending",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_subscription_active(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """Active flag set and not past expiry. A null expiry means open-ended."""
    if subscription is None or not subscription.active:
        return False
    expires_at = as_utc(subscription.expires_at)
    if expires_at is None:
        return True
    return (now or utcnow()) < expires_at


def subscription_status_label(subscription: Optional[Subscription], now: Optional[datetime] = None) -> str:
    if subscription is None:
        return "none"
    if is_subscription_active(subscription, now):
        return "active"
    if subscription.active:
        return "expired"
    return "inactive"


def subscription_to_dict(subscription: Optional[Subscription], now: Optional[datetime] = None) -> Dict[str, Any]:
    if subscription is None:
        return {"status": "none", "active": False, "plan_id": None, "expires_at": None}
    expires_at = as_utc(subscription.expires_at)
    return {
        "status": subscription_status_label(subscription, now),
        "provider_status": subscription.status,
        "active": is_subscription_active(subscription, now),
        "plan_id": subscription.plan_id,
        "expires_at": expires_at.isoformat() if expires_at else None,
    }


async def get_subscription(db: AsyncSession, user_id: str) -> Optional[Subscription]:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def upsert_subscription(
    db: AsyncSession,
    user_id: str,
    *,
    status: str,
    active: bool,
    plan_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    provider_subscription_id: Optional[str] = None,
) -> None:
    """Write the user's subscription record in the caller's transaction. Does not commit."""
    values: Dict[str, Any] = {
        "user_id": user_id,
        "status": status,
        "active": bool(active),
        "updated_at": utcnow(),
    }
    if plan_id is not None:
        values["plan_id"] = plan_id
    if expires_at is not None:
        values["expires_at"] = as_utc(expires_at)
    if provider_subscription_id is not None:
        values["provider_subscription_id"] = provider_subscription_id

    stmt = dialect_insert(db, Subscription.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={key: value for key, value in values.items() if key != "user_id"},
    )
    await db.execute(stmt)


def activation_expiry(current_end: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    if current_end is not None:
        return as_utc(current_end)
    return (now or utcnow()) + timedelta(days=max(int(settings.SUBSCRIPTION_PERIOD_DAYS), 1))
