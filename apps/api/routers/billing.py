"""Billing router: credit summary, product catalog and the payment webhook."""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.payment_event import ProcessedPaymentEvent
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.access_hints import compute_access_hints, snapshot_from_account
from services.credits import CreditLedgerService
from services.feature_policy import list_policies
from services.payment_queue import enqueue_payment_event
from services.payment_reconciliation import (
    PRODUCTS,
    event_from_gateway_payload,
    record_failure,
    verify_webhook_signature,
)
from services.subscriptions import get_subscription, is_subscription_active, subscription_to_dict

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id)
    ledger = CreditLedgerService(db)
    snapshot = await ledger.get_account_snapshot(scoped_user_id)
    subscription = await get_subscription(db, scoped_user_id)
    adjustments = await ledger.recent_adjustments(scoped_user_id, limit=30)
    hints = compute_access_hints(
        snapshot_from_account(snapshot["balances"], is_subscription_active(subscription))
    )
    return {
        "user_id": scoped_user_id,
        "balances": snapshot["balances"],
        "subscription": subscription_to_dict(subscription),
        "feature_costs": [policy.to_dict() for policy in list_policies()],
        "recent_adjustments": [entry.to_dict() for entry in adjustments],
        "access_hints": hints,
    }


@router.get("/products")
async def list_products():
    return {"products": [product.to_dict() for product in PRODUCTS.values()]}


@router.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    _rate_limit: None = Depends(rate_limit("payment_webhook", limit=600, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    """Verify, then hand the event to the reconciliation queue."""
    if not settings.PAYMENTS_ENABLED:
        raise HTTPException(status_code=503, detail="Payments are disabled.")

    body = await request.body()
    if not verify_webhook_signature(body, x_razorpay_signature):
        logger.warning("Rejected payment webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature.")

    try:
        data = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON.") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object.")

    payload = event_from_gateway_payload(data)
    payment_id = str(payload.get("payment_id") or "").strip()
    if not payment_id:
        logger.warning("Payment webhook %s carried no payment or subscription id", payload.get("event_type"))
        raise HTTPException(status_code=400, detail="Webhook event has no payment identifier.")

    processed = await db.execute(
        select(ProcessedPaymentEvent.payment_id).where(ProcessedPaymentEvent.payment_id == payment_id)
    )
    if processed.scalar_one_or_none() is not None:
        logger.info("Payment webhook %s already processed", payment_id)
        return {"received": True, "queued": False, "duplicate": True}

    try:
        job = enqueue_payment_event(payload)
    except Exception as exc:
        logger.exception("Payment queue unavailable for %s", payment_id)
        await record_failure(db, payload, f"queue_unavailable: {exc}")
        raise HTTPException(
            status_code=503,
            detail="Payment queue unavailable. The gateway should retry delivery.",
        ) from exc

    return {"received": True, "queued": True, "job_id": job.id}
