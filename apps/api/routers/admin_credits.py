"""Admin router: credit adjustments, account views and the reconciliation feed."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from routers.rate_limit import rate_limit
from services.admin_queries import (
    get_account_detail,
    list_accounts,
    list_adjustments,
    list_failures,
    subscription_status_counts,
)
from services.credit_types import CreditType
from services.credits import CreditLedgerService
from services.payment_reconciliation import PermanentReconciliationError, replay_failure

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditAdjustmentRequest(BaseModel):
    credit_type: CreditType
    amount: int = Field(ge=1, le=100000)
    note: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


class ResetRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    adjustment_id: str = Field(min_length=1)
    note: Optional[str] = Field(default=None, max_length=500)


@router.post("/credits/{user_id}/grant")
async def grant_credits(
    user_id: str,
    request: CreditAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    _rate_limit: None = Depends(rate_limit("admin_credit_write", limit=120, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    change = await CreditLedgerService(db).grant(
        user_id,
        request.credit_type,
        request.amount,
        admin.user_id,
        note=request.note,
        idempotency_key=request.idempotency_key,
    )
    return change.to_dict()


@router.post("/credits/{user_id}/revoke")
async def revoke_credits(
    user_id: str,
    request: CreditAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    _rate_limit: None = Depends(rate_limit("admin_credit_write", limit=120, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    change = await CreditLedgerService(db).revoke(
        user_id,
        request.credit_type,
        request.amount,
        admin.user_id,
        note=request.note,
    )
    return change.to_dict()


@router.post("/credits/{user_id}/reset")
async def reset_credits(
    user_id: str,
    request: Optional[ResetRequest] = None,
    admin: AuthContext = Depends(require_admin),
    _rate_limit: None = Depends(rate_limit("admin_credit_write", limit=120, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    result = await CreditLedgerService(db).reset_all(
        user_id,
        admin.user_id,
        note=request.note if request else None,
    )
    return result.to_dict()


@router.post("/credits/{user_id}/refund")
async def refund_consumption(
    user_id: str,
    request: RefundRequest,
    admin: AuthContext = Depends(require_admin),
    _rate_limit: None = Depends(rate_limit("admin_credit_write", limit=120, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    change = await CreditLedgerService(db).refund(
        user_id,
        request.adjustment_id,
        admin.user_id,
        note=request.note,
    )
    return change.to_dict()


@router.get("/credits")
async def list_credit_accounts(
    search: Optional[str] = Query(default=None, max_length=200),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await list_accounts(db, search=search, page=page, limit=limit)


@router.get("/credits/{user_id}")
async def credit_account_detail(
    user_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_account_detail(db, user_id)


@router.get("/credits/{user_id}/adjustments")
async def credit_account_adjustments(
    user_id: str,
    credit_type: Optional[CreditType] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await list_adjustments(
        db,
        user_id,
        page=page,
        limit=limit,
        credit_type=credit_type.value if credit_type else None,
    )


@router.get("/subscriptions/summary")
async def subscriptions_summary(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await subscription_status_counts(db)


@router.get("/reconciliation/failures")
async def reconciliation_failures(
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await list_failures(db, status=status, page=page, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/reconciliation/failures/{failure_id}/replay")
async def replay_reconciliation_failure(
    failure_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await replay_failure(db, failure_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PermanentReconciliationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    logger.info("Admin %s replayed reconciliation failure %s", admin.user_id, failure_id)
    return result.to_dict()
