"""
Payment reconciliation adapter.

Turns verified payment-gateway events into credit grants and subscription
updates. Every event is applied at most once: the processed-event row keyed
by payment_id is inserted in the same transaction as the grants, so a
replayed webhook collides on the primary key and is reported as a duplicate.

Events reach this module through the RQ payment queue. A failed attempt is
recorded in the reconciliation failures feed and re-raised so RQ retries with
backoff; events that can never succeed are marked dead immediately.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import reconcile_max_retries, settings
from database import async_session_maker, dialect_insert
from models.payment_event import ProcessedPaymentEvent, ReconciliationFailure
from services.credits import REASON_PURCHASE, CreditLedgerService
from services.credit_types import CreditType
from services.subscriptions import (
    ACTIVATING_EVENTS,
    DEACTIVATING_EVENTS,
    SUBSCRIPTION_PLAN_IDS,
    activation_expiry,
    upsert_subscription,
    utcnow,
)

logger = logging.getLogger(__name__)

PAYMENT_ACTOR = "payments"
GRANT_EVENTS = ("payment.captured", "order.paid")
RECORD_ONLY_EVENTS = ("payment.failed",)


@dataclass(frozen=True)
class Product:
    product_id: str
    name: str
    price_minor: int  # paise
    grants: Tuple[Tuple[CreditType, int], ...]

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "price_minor": self.price_minor,
            "grants": {credit_type.value: amount for credit_type, amount in self.grants},
        }


PRODUCTS: Mapping[str, Product] = MappingProxyType(
    {
        "99": Product("99", "Quick Reading", 9900, ((CreditType.AI_GURU, 1),)),
        "199": Product("199", "Deep Insight", 19900, ((CreditType.AI_GURU, 3), (CreditType.KUNDALI, 1))),
        "299": Product("299", "Supreme Reading", 29900, ((CreditType.AI_GURU, 5),)),
    }
)


class PaymentEvent(BaseModel):
    """Verified event handed over by the payment gateway collaborator."""

    event_type: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    order_id: Optional[str] = None
    uid: Optional[str] = None
    product_id: Optional[str] = None
    amount: Optional[int] = Field(default=None, ge=0)
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    current_end: Optional[datetime] = None


class PermanentReconciliationError(Exception):
    """The event can never be applied as-is; retrying will not help."""


@dataclass
class ReconciliationResult:
    payment_id: str
    status: str  # granted, subscription_updated, recorded, ignored, duplicate
    grants: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"payment_id": self.payment_id, "status": self.status, "grants": list(self.grants)}


def _outcome_for(event_type: str) -> str:
    if event_type in GRANT_EVENTS:
        return "granted"
    if event_type in ACTIVATING_EVENTS or event_type in DEACTIVATING_EVENTS:
        return "subscription_updated"
    if event_type in RECORD_ONLY_EVENTS:
        return "recorded"
    return "ignored"


async def _validate(event: PaymentEvent, ledger: CreditLedgerService) -> Optional[Product]:
    outcome = _outcome_for(event.event_type)
    product: Optional[Product] = None
    if outcome == "granted":
        product = PRODUCTS.get(str(event.product_id or ""))
        if product is None:
            raise PermanentReconciliationError(f"Unknown product '{event.product_id}'")
        if event.amount is not None and int(event.amount) != product.price_minor:
            raise PermanentReconciliationError(
                f"Amount {event.amount} does not match product {product.product_id} price {product.price_minor}"
            )
    if outcome == "subscription_updated" and event.plan_id and event.plan_id not in SUBSCRIPTION_PLAN_IDS:
        raise PermanentReconciliationError(f"Unknown subscription plan '{event.plan_id}'")
    if outcome in ("granted", "subscription_updated"):
        if not event.uid:
            raise PermanentReconciliationError("Event is missing the user id")
        if not await ledger.user_exists(event.uid):
            raise PermanentReconciliationError(f"User '{event.uid}' not found")
    return product


async def _already_processed(db: AsyncSession, payment_id: str) -> bool:
    result = await db.execute(
        select(ProcessedPaymentEvent.payment_id).where(ProcessedPaymentEvent.payment_id == payment_id)
    )
    return result.scalar_one_or_none() is not None


async def reconcile_payment_event(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    ledger: Optional[CreditLedgerService] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ReconciliationResult:
    """Apply one verified event exactly once. Raises PermanentReconciliationError for unusable events."""
    ledger = ledger or CreditLedgerService(db)
    if await _already_processed(db, event.payment_id):
        logger.info("Duplicate payment event %s skipped", event.payment_id)
        return ReconciliationResult(payment_id=event.payment_id, status="duplicate")

    product = await _validate(event, ledger)
    outcome = _outcome_for(event.event_type)

    async def _work() -> ReconciliationResult:
        db.add(
            ProcessedPaymentEvent(
                payment_id=event.payment_id,
                event_type=event.event_type,
                user_id=event.uid,
                product_id=event.product_id,
                order_id=event.order_id,
                amount=event.amount,
                outcome=outcome,
            )
        )
        await db.flush()

        result = ReconciliationResult(payment_id=event.payment_id, status=outcome)
        if product is not None:
            for credit_type, amount in product.grants:
                entry = await ledger.apply_credit(
                    event.uid,
                    credit_type,
                    amount,
                    reason=REASON_PURCHASE,
                    actor=PAYMENT_ACTOR,
                    operation_key=f"payment:{event.payment_id}:{credit_type.value}",
                    reference_id=event.payment_id,
                )
                result.grants.append(
                    {"credit_type": entry.credit_type, "amount": entry.delta, "balance": entry.balance_after}
                )
        elif event.event_type in ACTIVATING_EVENTS:
            await upsert_subscription(
                db,
                event.uid,
                status="active",
                active=True,
                plan_id=event.plan_id,
                expires_at=activation_expiry(event.current_end, clock()),
                provider_subscription_id=event.subscription_id,
            )
        elif event.event_type in DEACTIVATING_EVENTS:
            await upsert_subscription(
                db,
                event.uid,
                status=event.event_type.split(".", 1)[1],
                active=False,
                plan_id=event.plan_id,
                provider_subscription_id=event.subscription_id,
            )
        return result

    async def _recover() -> Optional[ReconciliationResult]:
        if await _already_processed(db, event.payment_id):
            return ReconciliationResult(payment_id=event.payment_id, status="duplicate")
        return None

    result = await ledger.run_atomic("reconcile_payment", _work, recover=_recover)
    if result.status == "duplicate":
        logger.info("Duplicate payment event %s skipped", event.payment_id)
    elif result.status == "ignored":
        logger.info("Ignored payment event %s of type %s", event.payment_id, event.event_type)
    else:
        logger.info(
            "Reconciled payment event %s (%s) for user %s: %s",
            event.payment_id,
            event.event_type,
            event.uid,
            result.status,
        )
    return result


# ---------------------------------------------------------------------------
# Failures feed
# ---------------------------------------------------------------------------

async def record_failure(
    db: AsyncSession,
    payload: Dict[str, Any],
    error_message: str,
    *,
    permanent: bool = False,
) -> None:
    """Upsert the failure row for a payment_id, bumping attempts. Commits."""
    table = ReconciliationFailure.__table__
    max_attempts = reconcile_max_retries() + 1
    payment_id = str(payload.get("payment_id") or "unknown")
    now = utcnow()

    first_status = "dead" if permanent or max_attempts <= 1 else "retrying"
    next_status = "dead" if permanent else case((table.c.attempts + 1 >= max_attempts, "dead"), else_="retrying")
    stmt = dialect_insert(db, table).values(
        payment_id=payment_id,
        event_type=payload.get("event_type"),
        user_id=payload.get("uid"),
        payload_json=payload,
        error_message=error_message[:2000],
        attempts=1,
        status=first_status,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["payment_id"],
        set_={
            "payload_json": payload,
            "error_message": error_message[:2000],
            "attempts": table.c.attempts + 1,
            "status": next_status,
            "updated_at": now,
        },
    )
    await db.execute(stmt)
    await db.commit()


async def mark_resolved(db: AsyncSession, payment_id: str) -> None:
    await db.execute(
        update(ReconciliationFailure)
        .where(ReconciliationFailure.payment_id == payment_id, ReconciliationFailure.status != "resolved")
        .values(status="resolved", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _record_failure_logged(
    db: AsyncSession,
    payload: Dict[str, Any],
    error_message: str,
    *,
    permanent: bool,
) -> None:
    try:
        await record_failure(db, payload, error_message, permanent=permanent)
    except Exception:
        await db.rollback()
        logger.exception("Could not record reconciliation failure for %s", payload.get("payment_id"))


async def process_payment_event_async(payload: Dict[str, Any]) -> Optional[ReconciliationResult]:
    """Queue job body: apply the event, feeding failures to the operator feed."""
    async with async_session_maker() as db:
        try:
            event = PaymentEvent.model_validate(payload)
        except ValidationError as exc:
            logger.error("Malformed payment event %s: %s", payload.get("payment_id"), exc)
            await _record_failure_logged(db, payload, f"Malformed event: {exc}", permanent=True)
            return None

        try:
            result = await reconcile_payment_event(db, event)
        except PermanentReconciliationError as exc:
            logger.error("Payment event %s cannot be applied: %s", event.payment_id, exc)
            await _record_failure_logged(db, payload, str(exc), permanent=True)
            return None
        except Exception as exc:
            logger.exception("Payment event %s failed: %s", event.payment_id, exc)
            await db.rollback()
            await _record_failure_logged(db, payload, str(exc), permanent=False)
            raise

        await mark_resolved(db, event.payment_id)
        return result


def process_payment_event_job(payload: Dict[str, Any]) -> Optional[dict]:
    """RQ worker entrypoint for payment events."""
    result = asyncio.run(process_payment_event_async(payload))
    return result.to_dict() if result else None


async def replay_failure(db: AsyncSession, failure_id: str) -> ReconciliationResult:
    """Operator-triggered inline replay of a recorded failure."""
    result = await db.execute(select(ReconciliationFailure).where(ReconciliationFailure.id == failure_id))
    failure = result.scalar_one_or_none()
    if failure is None:
        raise LookupError(f"Reconciliation failure '{failure_id}' not found")

    payload = dict(failure.payload_json or {})
    try:
        event = PaymentEvent.model_validate(payload)
        outcome = await reconcile_payment_event(db, event)
    except (ValidationError, PermanentReconciliationError) as exc:
        await db.rollback()
        await record_failure(db, payload, str(exc), permanent=True)
        raise PermanentReconciliationError(str(exc)) from exc
    except Exception as exc:
        await db.rollback()
        await record_failure(db, payload, str(exc), permanent=False)
        raise

    await mark_resolved(db, event.payment_id)
    logger.info("Replayed reconciliation failure %s for payment %s: %s", failure_id, event.payment_id, outcome.status)
    return outcome


# ---------------------------------------------------------------------------
# Gateway envelope
# ---------------------------------------------------------------------------

def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Constant-time check of the hex HMAC-SHA256 the gateway sends over the raw body."""
    secret = settings.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def _entity(data: Mapping[str, Any], name: str) -> Dict[str, Any]:
    container = (data.get("payload") or {}).get(name) or {}
    entity = container.get("entity") if isinstance(container, Mapping) else None
    return dict(entity) if isinstance(entity, Mapping) else {}


def event_from_gateway_payload(data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Flatten a gateway webhook envelope into PaymentEvent fields.

    Payment events carry the user and product in the entity notes. Subscription
    events without a payment are keyed by subscription id, event and period end
    so each billing cycle is applied once.
    """
    if data.get("payment_id"):
        return dict(data)

    event_type = str(data.get("event") or "")
    payment = _entity(data, "payment")
    subscription = _entity(data, "subscription")
    order = _entity(data, "order")
    notes = payment.get("notes") or subscription.get("notes") or order.get("notes") or {}
    if not isinstance(notes, Mapping):
        notes = {}

    current_end = subscription.get("current_end")
    payment_id = payment.get("id")
    if not payment_id and subscription.get("id"):
        payment_id = f"{subscription['id']}:{event_type}:{current_end or data.get('created_at') or ''}"

    return {
        "event_type": event_type,
        "payment_id": payment_id or "",
        "order_id": payment.get("order_id") or order.get("id"),
        "uid": notes.get("uid") or notes.get("userId"),
        "product_id": notes.get("productId") or notes.get("product_id"),
        "amount": payment.get("amount") if payment else order.get("amount_paid"),
        "plan_id": notes.get("planId") or notes.get("plan_id"),
        "subscription_id": subscription.get("id") or payment.get("subscription_id"),
        "current_end": current_end,
    }
