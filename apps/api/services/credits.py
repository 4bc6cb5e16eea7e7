"""Credit ledger: balances, atomic spends, and audited adjustments."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import dialect_insert
from models.credit_account import CreditAccount
from models.credit_adjustment import CreditAdjustment
from models.user import User
from services.credit_errors import (
    AdjustmentNotRefundableError,
    IdempotencyKeyConflictError,
    InsufficientCreditsError,
    LedgerError,
    RevokeWouldUnderflowError,
    TransientStorageConflictError,
    UserNotFoundError,
)
from services.credit_types import (
    BALANCE_COLUMNS,
    LEGACY_MIRROR_COLUMNS,
    MODERN_CREDIT_TYPES,
    CreditType,
    canonical_credit_type,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

REASON_PURCHASE = "purchase"
REASON_ADMIN_GRANT = "admin_grant"
REASON_ADMIN_REVOKE = "admin_revoke"
REASON_ADMIN_RESET = "admin_reset"
REASON_CONSUMPTION = "consumption"
REASON_REFUND = "refund"

# Postgres serialization_failure and deadlock_detected.
_TRANSIENT_SQLSTATES = {"40001", "40P01"}


@dataclass(frozen=True)
class BalanceChange:
    user_id: str
    credit_type: str
    delta: int
    balance: int
    adjustment_id: str
    reason: str
    replayed: bool = False

    @classmethod
    def from_adjustment(cls, entry: CreditAdjustment, replayed: bool = False) -> "BalanceChange":
        return cls(
            user_id=entry.user_id,
            credit_type=entry.credit_type,
            delta=int(entry.delta),
            balance=int(entry.balance_after),
            adjustment_id=entry.id,
            reason=entry.reason,
            replayed=replayed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "credit_type": self.credit_type,
            "delta": self.delta,
            "balance": self.balance,
            "adjustment_id": self.adjustment_id,
            "reason": self.reason,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class ResetResult:
    user_id: str
    zeroed: Dict[str, int] = field(default_factory=dict)
    adjustment_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "zeroed": dict(self.zeroed),
            "adjustment_ids": list(self.adjustment_ids),
        }


def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError) or exc.connection_invalidated:
        return True
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in _TRANSIENT_SQLSTATES


def _positive_amount(amount: int) -> int:
    value = int(amount)
    if value < 1:
        raise ValueError("amount must be at least 1")
    return value


def _new_operation_key() -> str:
    return f"op:{uuid.uuid4()}"


class CreditLedgerService:
    """
    Sole write path for credit balances.

    One instance per request / job, bound to an AsyncSession. Every mutation
    is a single database transaction: balances change through conditional
    UPDATE statements evaluated by the database, never by reading a value
    into Python and writing it back. Each write appends CreditAdjustment rows
    carrying a unique operation key, which makes retries after an ambiguous
    failure detectable instead of double-applying.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        max_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
    ):
        self.db = db
        self.max_attempts = max(int(max_attempts or settings.LEDGER_MAX_ATTEMPTS), 1)
        if retry_backoff_seconds is None:
            retry_backoff_seconds = settings.LEDGER_RETRY_BACKOFF_SECONDS
        self.retry_backoff_seconds = max(float(retry_backoff_seconds), 0.0)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def user_exists(self, user_id: str) -> bool:
        result = await self.db.execute(select(User.id).where(User.id == user_id))
        return result.scalar_one_or_none() is not None

    async def require_user(self, user_id: str) -> None:
        if not await self.user_exists(user_id):
            raise UserNotFoundError(user_id)

    async def get_balance(self, user_id: str, credit_type: CreditType | str) -> int:
        column = getattr(CreditAccount, BALANCE_COLUMNS[canonical_credit_type(credit_type)])
        result = await self.db.execute(select(column).where(CreditAccount.user_id == user_id))
        return int(result.scalar_one_or_none() or 0)

    async def get_account_snapshot(self, user_id: str) -> Dict[str, Any]:
        """Balances straight from the database, zeros when no account exists yet."""
        await self.require_user(user_id)
        table = CreditAccount.__table__
        result = await self.db.execute(select(table).where(table.c.user_id == user_id))
        row = result.mappings().one_or_none()
        balances = {
            credit_type.value: int(row[column]) if row else 0
            for credit_type, column in BALANCE_COLUMNS.items()
        }
        return {
            "user_id": user_id,
            "balances": balances,
            "legacy": {
                column: int(row[column]) if row else 0
                for column in LEGACY_MIRROR_COLUMNS.values()
            },
            "version": int(row["version"]) if row else 0,
            "updated_at": row["updated_at"].isoformat() if row and row["updated_at"] else None,
        }

    async def find_adjustment(self, operation_key: str) -> Optional[CreditAdjustment]:
        result = await self.db.execute(
            select(CreditAdjustment).where(CreditAdjustment.operation_key == operation_key)
        )
        return result.scalar_one_or_none()

    async def recent_adjustments(self, user_id: str, limit: int = 30) -> List[CreditAdjustment]:
        result = await self.db.execute(
            select(CreditAdjustment)
            .where(CreditAdjustment.user_id == user_id)
            .order_by(CreditAdjustment.created_at.desc(), CreditAdjustment.id.desc())
            .limit(max(int(limit), 1))
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transaction runner
    # ------------------------------------------------------------------

    async def run_atomic(
        self,
        operation: str,
        work: Callable[[], Awaitable[T]],
        *,
        recover: Optional[Callable[[], Awaitable[Optional[T]]]] = None,
    ) -> T:
        """
        Run ``work`` and commit it as one transaction.

        Transient storage errors are retried up to ``max_attempts`` times.
        Before each retry, and on unique-key conflicts, ``recover`` re-queries
        whether the operation already committed and returns that result.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await work()
                await self.db.commit()
                return result
            except IntegrityError:
                await self.db.rollback()
                recovered = await recover() if recover is not None else None
                if recovered is not None:
                    return recovered
                raise
            except DBAPIError as exc:
                await self.db.rollback()
                if not _is_transient(exc):
                    raise
                if recover is not None:
                    recovered = await recover()
                    if recovered is not None:
                        logger.info("%s had already committed before the storage error", operation)
                        return recovered
                logger.warning(
                    "%s hit a transient storage error (attempt %s/%s): %s",
                    operation,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_backoff_seconds * attempt)
            except Exception:
                await self.db.rollback()
                raise
        raise TransientStorageConflictError(operation, self.max_attempts)

    def _recover_by_key(self, operation_key: str) -> Callable[[], Awaitable[Optional[BalanceChange]]]:
        async def _recover() -> Optional[BalanceChange]:
            entry = await self.find_adjustment(operation_key)
            return BalanceChange.from_adjustment(entry, replayed=True) if entry else None

        return _recover

    # ------------------------------------------------------------------
    # In-transaction primitives (caller commits through run_atomic)
    # ------------------------------------------------------------------

    async def _ensure_account(self, user_id: str) -> None:
        stmt = (
            dialect_insert(self.db, CreditAccount.__table__)
            .values(user_id=user_id)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self.db.execute(stmt)

    async def _append(
        self,
        *,
        user_id: str,
        credit_type: CreditType,
        delta: int,
        balance_after: int,
        reason: str,
        actor: str,
        operation_key: str,
        reference_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CreditAdjustment:
        entry = CreditAdjustment(
            id=str(uuid.uuid4()),
            user_id=user_id,
            credit_type=credit_type.value,
            delta=int(delta),
            balance_after=int(balance_after),
            reason=reason,
            actor=actor,
            reference_id=reference_id,
            operation_key=operation_key,
            note=note[:500] if note else None,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def apply_credit(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int,
        *,
        reason: str,
        actor: str,
        operation_key: str,
        reference_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CreditAdjustment:
        """Increment a balance (creating the account lazily) and record it. Does not commit."""
        canonical = canonical_credit_type(credit_type)
        amount = _positive_amount(amount)
        await self.require_user(user_id)
        await self._ensure_account(user_id)

        column_name = BALANCE_COLUMNS[canonical]
        column = getattr(CreditAccount, column_name)
        values: Dict[str, Any] = {column_name: column + amount, "version": CreditAccount.version + 1}
        mirror = LEGACY_MIRROR_COLUMNS.get(canonical)
        if mirror:
            values[mirror] = column + amount
        await self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        balance = await self.get_balance(user_id, canonical)
        return await self._append(
            user_id=user_id,
            credit_type=canonical,
            delta=amount,
            balance_after=balance,
            reason=reason,
            actor=actor,
            operation_key=operation_key,
            reference_id=reference_id,
            note=note,
        )

    async def apply_debit(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int,
        *,
        reason: str,
        actor: str,
        operation_key: str,
        on_shortfall: Callable[[int], LedgerError],
        reference_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CreditAdjustment:
        """
        Decrement a balance only if it covers ``amount``. Does not commit.

        The sufficiency check lives in the UPDATE's WHERE clause so the
        database evaluates it against the row it locks.
        """
        canonical = canonical_credit_type(credit_type)
        amount = _positive_amount(amount)

        column_name = BALANCE_COLUMNS[canonical]
        column = getattr(CreditAccount, column_name)
        values: Dict[str, Any] = {column_name: column - amount, "version": CreditAccount.version + 1}
        mirror = LEGACY_MIRROR_COLUMNS.get(canonical)
        if mirror:
            # SET expressions see pre-update values, so the mirror lands on the new balance.
            values[mirror] = column - amount
        result = await self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, column >= amount)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.require_user(user_id)
            raise on_shortfall(await self.get_balance(user_id, canonical))

        balance = await self.get_balance(user_id, canonical)
        return await self._append(
            user_id=user_id,
            credit_type=canonical,
            delta=-amount,
            balance_after=balance,
            reason=reason,
            actor=actor,
            operation_key=operation_key,
            reference_id=reference_id,
            note=note,
        )

    # ------------------------------------------------------------------
    # Consumption transaction
    # ------------------------------------------------------------------

    async def consume(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int = 1,
        *,
        actor: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        feature_key: Optional[str] = None,
        redirect_hint: Optional[str] = None,
    ) -> BalanceChange:
        """
        Spend ``amount`` credits atomically.

        Raises InsufficientCreditsError (no mutation) when the balance does not
        cover the spend, UserNotFoundError for unknown users. With an
        ``idempotency_key`` a repeated call returns the original result.
        """
        canonical = canonical_credit_type(credit_type)
        amount = _positive_amount(amount)
        reference_id = reference_id or feature_key

        async def _replay() -> Optional[BalanceChange]:
            existing = await self.find_adjustment(operation_key)
            if existing is None:
                return None
            if (
                existing.reason != REASON_CONSUMPTION
                or existing.credit_type != canonical.value
                or -int(existing.delta) != amount
                or existing.reference_id != reference_id
            ):
                raise IdempotencyKeyConflictError(idempotency_key, existing.id)
            logger.info("Replayed consumption %s for user %s", idempotency_key, user_id)
            return BalanceChange.from_adjustment(existing, replayed=True)

        if idempotency_key:
            operation_key = f"consume:{user_id}:{idempotency_key}"
            replayed = await _replay()
            if replayed is not None:
                return replayed
        else:
            operation_key = _new_operation_key()

        def _shortfall(available: int) -> LedgerError:
            return InsufficientCreditsError(
                user_id,
                canonical.value,
                required=amount,
                available=available,
                feature_key=feature_key,
                redirect_hint=redirect_hint,
            )

        async def _work() -> BalanceChange:
            entry = await self.apply_debit(
                user_id,
                canonical,
                amount,
                reason=REASON_CONSUMPTION,
                actor=actor or user_id,
                operation_key=operation_key,
                on_shortfall=_shortfall,
                reference_id=reference_id,
            )
            return BalanceChange.from_adjustment(entry)

        try:
            change = await self.run_atomic(
                "consume", _work, recover=_replay if idempotency_key else self._recover_by_key(operation_key)
            )
        except InsufficientCreditsError:
            # A concurrent request with the same key may have spent the last credit.
            if not idempotency_key:
                raise
            replayed = await _replay()
            if replayed is None:
                raise
            return replayed
        logger.info(
            "Consumed %s %s credit(s) for user %s; balance now %s",
            amount,
            canonical.value,
            user_id,
            change.balance,
        )
        return change

    # ------------------------------------------------------------------
    # Adjustment operations
    # ------------------------------------------------------------------

    async def grant(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int,
        actor: str,
        *,
        reason: str = REASON_ADMIN_GRANT,
        reference_id: Optional[str] = None,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> BalanceChange:
        canonical = canonical_credit_type(credit_type)
        operation_key = f"grant:{user_id}:{idempotency_key}" if idempotency_key else _new_operation_key()
        if idempotency_key:
            existing = await self.find_adjustment(operation_key)
            if existing is not None:
                return BalanceChange.from_adjustment(existing, replayed=True)

        async def _work() -> BalanceChange:
            entry = await self.apply_credit(
                user_id,
                canonical,
                amount,
                reason=reason,
                actor=actor,
                operation_key=operation_key,
                reference_id=reference_id,
                note=note,
            )
            return BalanceChange.from_adjustment(entry)

        change = await self.run_atomic("grant", _work, recover=self._recover_by_key(operation_key))
        logger.info(
            "Granted %s %s credit(s) to user %s by %s (%s)",
            change.delta,
            canonical.value,
            user_id,
            actor,
            reason,
        )
        return change

    async def revoke(
        self,
        user_id: str,
        credit_type: CreditType | str,
        amount: int,
        actor: str,
        *,
        note: Optional[str] = None,
    ) -> BalanceChange:
        """Remove credits; rejected with RevokeWouldUnderflowError rather than clamping."""
        canonical = canonical_credit_type(credit_type)
        amount = _positive_amount(amount)
        operation_key = _new_operation_key()

        def _underflow(available: int) -> LedgerError:
            return RevokeWouldUnderflowError(user_id, canonical.value, amount, available)

        async def _work() -> BalanceChange:
            entry = await self.apply_debit(
                user_id,
                canonical,
                amount,
                reason=REASON_ADMIN_REVOKE,
                actor=actor,
                operation_key=operation_key,
                on_shortfall=_underflow,
                note=note,
            )
            return BalanceChange.from_adjustment(entry)

        change = await self.run_atomic("revoke", _work, recover=self._recover_by_key(operation_key))
        logger.info("Revoked %s %s credit(s) from user %s by %s", amount, canonical.value, user_id, actor)
        return change

    async def reset_all(self, user_id: str, actor: str, *, note: Optional[str] = None) -> ResetResult:
        """Zero every balance and the legacy mirror, one admin_reset record per zeroed type."""
        operation_key = _new_operation_key()
        table = CreditAccount.__table__

        async def _work() -> ResetResult:
            await self.require_user(user_id)
            # Bumping the version first takes the row lock on every backend.
            locked = await self.db.execute(
                update(table).where(table.c.user_id == user_id).values(version=table.c.version + 1)
            )
            if locked.rowcount != 1:
                return ResetResult(user_id=user_id)

            row = (await self.db.execute(select(table).where(table.c.user_id == user_id))).mappings().one()
            previous = {
                credit_type: int(row[BALANCE_COLUMNS[credit_type]] or 0)
                for credit_type in MODERN_CREDIT_TYPES
            }
            zero_values = {column: 0 for column in BALANCE_COLUMNS.values()}
            zero_values.update({column: 0 for column in LEGACY_MIRROR_COLUMNS.values()})
            await self.db.execute(update(table).where(table.c.user_id == user_id).values(**zero_values))

            zeroed: Dict[str, int] = {}
            adjustment_ids: List[str] = []
            for credit_type, balance in previous.items():
                if balance <= 0:
                    continue
                entry = await self._append(
                    user_id=user_id,
                    credit_type=credit_type,
                    delta=-balance,
                    balance_after=0,
                    reason=REASON_ADMIN_RESET,
                    actor=actor,
                    operation_key=f"{operation_key}:{credit_type.value}",
                    note=note,
                )
                zeroed[credit_type.value] = balance
                adjustment_ids.append(entry.id)
            return ResetResult(user_id=user_id, zeroed=zeroed, adjustment_ids=adjustment_ids)

        result = await self.run_atomic("reset_all", _work)
        logger.info("Reset credits for user %s by %s: %s", user_id, actor, result.zeroed)
        return result

    async def refund(
        self,
        user_id: str,
        adjustment_id: str,
        actor: str,
        *,
        note: Optional[str] = None,
    ) -> BalanceChange:
        """Explicitly reverse one consumption. Each consumption can be refunded once."""
        result = await self.db.execute(select(CreditAdjustment).where(CreditAdjustment.id == adjustment_id))
        original = result.scalar_one_or_none()
        if original is None or original.user_id != user_id:
            raise AdjustmentNotRefundableError(adjustment_id, "no such adjustment for this user")
        if original.reason != REASON_CONSUMPTION or int(original.delta) >= 0:
            raise AdjustmentNotRefundableError(adjustment_id, "only consumption adjustments can be refunded")

        operation_key = f"refund:{adjustment_id}"
        existing = await self.find_adjustment(operation_key)
        if existing is not None:
            return BalanceChange.from_adjustment(existing, replayed=True)

        credit_type = original.credit_type
        amount = -int(original.delta)

        async def _work() -> BalanceChange:
            entry = await self.apply_credit(
                user_id,
                credit_type,
                amount,
                reason=REASON_REFUND,
                actor=actor,
                operation_key=operation_key,
                reference_id=adjustment_id,
                note=note,
            )
            return BalanceChange.from_adjustment(entry)

        change = await self.run_atomic("refund", _work, recover=self._recover_by_key(operation_key))
        logger.info("Refunded adjustment %s (%s %s) to user %s by %s", adjustment_id, amount, credit_type, user_id, actor)
        return change
