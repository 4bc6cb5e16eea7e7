import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from conftest import seed_user
from models.credit_adjustment import CreditAdjustment
from services.credit_errors import (
    AdjustmentNotRefundableError,
    IdempotencyKeyConflictError,
    InsufficientCreditsError,
    RevokeWouldUnderflowError,
    TransientStorageConflictError,
    UserNotFoundError,
)
from services.credit_types import CreditType
from services.credits import (
    REASON_ADMIN_GRANT,
    REASON_ADMIN_RESET,
    REASON_CONSUMPTION,
    REASON_REFUND,
    CreditLedgerService,
)


async def _snapshot(maker, user_id):
    async with maker() as session:
        return await CreditLedgerService(session).get_account_snapshot(user_id)


async def _adjustments(maker, user_id):
    async with maker() as session:
        result = await session.execute(
            select(CreditAdjustment).where(CreditAdjustment.user_id == user_id).order_by(CreditAdjustment.created_at)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_grant_creates_account_lazily_and_mirrors_legacy_counter(session_maker):
    await seed_user(session_maker, "grant-user")

    async with session_maker() as session:
        change = await CreditLedgerService(session).grant("grant-user", CreditType.AI_GURU, 3, "admin-1")

    assert change.delta == 3
    assert change.balance == 3
    assert change.reason == REASON_ADMIN_GRANT

    snapshot = await _snapshot(session_maker, "grant-user")
    assert snapshot["balances"] == {"ai_guru": 3, "kundali": 0, "lifetime_prediction": 0}
    assert snapshot["legacy"] == {"legacy_ai_questions": 3}
    assert snapshot["version"] == 1


@pytest.mark.asyncio
async def test_unknown_user_reads_zero_snapshot_only_when_user_exists(session_maker):
    await seed_user(session_maker, "fresh-user")
    snapshot = await _snapshot(session_maker, "fresh-user")
    assert snapshot["balances"] == {"ai_guru": 0, "kundali": 0, "lifetime_prediction": 0}
    assert snapshot["version"] == 0

    with pytest.raises(UserNotFoundError):
        await _snapshot(session_maker, "ghost-user")


@pytest.mark.asyncio
async def test_consume_until_empty_then_fail_closed(session_maker):
    await seed_user(session_maker, "kundali-user", kundali=2)

    async with session_maker() as session:
        ledger = CreditLedgerService(session)
        first = await ledger.consume("kundali-user", CreditType.KUNDALI, 1, feature_key="kundali")
        second = await ledger.consume("kundali-user", CreditType.KUNDALI, 1, feature_key="kundali")
        assert (first.balance, second.balance) == (1, 0)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.consume(
                "kundali-user",
                CreditType.KUNDALI,
                1,
                feature_key="kundali",
                redirect_hint="/pay/199?feature=kundali",
            )

    error = exc_info.value
    assert error.required == 1
    assert error.available == 0
    assert error.http_status == 402
    assert error.to_dict()["redirect_hint"] == "/pay/199?feature=kundali"

    snapshot = await _snapshot(session_maker, "kundali-user")
    assert snapshot["balances"]["kundali"] == 0
    entries = await _adjustments(session_maker, "kundali-user")
    assert [entry.reason for entry in entries] == [REASON_CONSUMPTION, REASON_CONSUMPTION]
    assert sorted(entry.balance_after for entry in entries) == [0, 1]


@pytest.mark.asyncio
async def test_consume_without_account_is_insufficient(session_maker):
    await seed_user(session_maker, "no-account-user")

    async with session_maker() as session:
        with pytest.raises(InsufficientCreditsError):
            await CreditLedgerService(session).consume("no-account-user", CreditType.LIFETIME_PREDICTION)


@pytest.mark.asyncio
async def test_consume_unknown_user_raises_not_found(session_maker):
    async with session_maker() as session:
        with pytest.raises(UserNotFoundError):
            await CreditLedgerService(session).consume("ghost-user", CreditType.AI_GURU)


@pytest.mark.asyncio
async def test_consume_rejects_non_positive_amounts(session_maker):
    await seed_user(session_maker, "amount-user", ai_guru=5)

    async with session_maker() as session:
        with pytest.raises(ValueError):
            await CreditLedgerService(session).consume("amount-user", CreditType.AI_GURU, 0)


@pytest.mark.asyncio
async def test_consume_with_idempotency_key_spends_once(session_maker):
    await seed_user(session_maker, "idem-user", ai_guru=3)

    async with session_maker() as session:
        ledger = CreditLedgerService(session)
        first = await ledger.consume("idem-user", CreditType.AI_GURU, 1, idempotency_key="req-1")
        replay = await ledger.consume("idem-user", CreditType.AI_GURU, 1, idempotency_key="req-1")

    assert first.replayed is False
    assert replay.replayed is True
    assert replay.adjustment_id == first.adjustment_id
    assert replay.balance == 2

    snapshot = await _snapshot(session_maker, "idem-user")
    assert snapshot["balances"]["ai_guru"] == 2
    assert snapshot["legacy"]["legacy_ai_questions"] == 2


@pytest.mark.asyncio
async def test_idempotency_key_reused_for_other_credit_type_is_rejected(session_maker):
    await seed_user(session_maker, "key-reuser", kundali=1, lifetime_prediction=1)

    async with session_maker() as session:
        ledger = CreditLedgerService(session)
        await ledger.consume("key-reuser", CreditType.KUNDALI, 1, idempotency_key="k", feature_key="kundali")
        with pytest.raises(IdempotencyKeyConflictError):
            await ledger.consume(
                "key-reuser", CreditType.LIFETIME_PREDICTION, 1, idempotency_key="k", feature_key="predictions"
            )

    snapshot = await _snapshot(session_maker, "key-reuser")
    assert snapshot["balances"]["kundali"] == 0
    assert snapshot["balances"]["lifetime_prediction"] == 1


@pytest.mark.asyncio
async def test_idempotency_key_reused_for_other_feature_or_amount_is_rejected(session_maker):
    await seed_user(session_maker, "same-type", ai_guru=5)

    async with session_maker() as session:
        ledger = CreditLedgerService(session)
        await ledger.consume("same-type", CreditType.AI_GURU, 1, idempotency_key="q-1", feature_key="ai_question")
        with pytest.raises(IdempotencyKeyConflictError):
            await ledger.consume("same-type", CreditType.AI_GURU, 2, idempotency_key="q-1", feature_key="guru_vision")
        with pytest.raises(IdempotencyKeyConflictError):
            await ledger.consume("same-type", CreditType.AI_GURU, 2, idempotency_key="q-1", feature_key="ai_question")

    snapshot = await _snapshot(session_maker, "same-type")
    assert snapshot["balances"]["ai_guru"] == 4


@pytest.mark.asyncio
async def test_legacy_alias_consumes_modern_balance(session_maker):
    await seed_user(session_maker, "alias-user", ai_guru=2)

    async with session_maker() as session:
        change = await CreditLedgerService(session).consume("alias-user", "legacy_ai_question")

    assert change.credit_type == "ai_guru"
    snapshot = await _snapshot(session_maker, "alias-user")
    assert snapshot["balances"]["ai_guru"] == 1
    assert snapshot["legacy"]["legacy_ai_questions"] == 1


@pytest.mark.asyncio
async def test_revoke_underflow_is_rejected_and_balance_unchanged(session_maker):
    await seed_user(session_maker, "revoke-user", ai_guru=3)

    async with session_maker() as session:
        ledger = CreditLedgerService(session)
        with pytest.raises(RevokeWouldUnderflowError) as exc_info:
            await ledger.revoke("revoke-user", CreditType.AI_GURU, 5, "admin-1")
        assert exc_info.value.available == 3
        assert exc_info.value.http_status == 409

        change = await ledger.revoke("revoke-user", CreditType.AI_GURU, 2, "admin-1", note="chargeback")

    assert change.delta == -2
    assert change.balance == 1
    snapshot = await _snapshot(session_maker, "revoke-user")
    assert snapshot["balances"]["ai_guru"] == 1
    assert snapshot["legacy"]["legacy_ai_questions"] == 1
    entries = await _adjustments(session_maker, "revoke-user")
    assert len(entries) == 1
    assert entries[0].note == "chargeback"


@pytest.mark.asyncio
async def test_reset_all_zeroes_every_balance_with_one_record_per_type(session_maker):
    await seed_user(session_maker, "reset-user", ai_guru=4, kundali=2)

    async with session_maker() as session:
        result = await CreditLedgerService(session).reset_all("reset-user", "admin-1", note="abuse")

    assert result.zeroed == {"ai_guru": 4, "kundali": 2}
    assert len(result.adjustment_ids) == 2

    snapshot = await _snapshot(session_maker, "reset-user")
    assert snapshot["balances"] == {"ai_guru": 0, "kundali": 0, "lifetime_prediction": 0}
    assert snapshot["legacy"]["legacy_ai_questions"] == 0

    entries = await _adjustments(session_maker, "reset-user")
    assert {entry.credit_type: entry.delta for entry in entries} == {"ai_guru": -4, "kundali": -2}
    assert all(entry.reason == REASON_ADMIN_RESET and entry.balance_after == 0 for entry in entries)


@pytest.mark.asyncio
async def test_reset_all_without_account_is_a_no_op(session_maker):
    await seed_user(session_maker, "empty-reset-user")

    async with session_maker() as session:
        result = await CreditLedgerService(session).reset_all("empty-reset-user", "admin-1")

    assert result.zeroed == {}
    assert await _adjustments(session_maker, "empty-reset-user") == []


@pytest.mark.asyncio
async def test_refund_reverses_one_consumption_once(session_maker):
    await seed_user(session_maker, "refund-user", lifetime_prediction=1)
    await seed_user(session_maker, "other-user")

    async with session_maker() as session:
        ledger = CreditLedgerService(session)
        spent = await ledger.consume("refund-user", CreditType.LIFETIME_PREDICTION, feature_key="predictions")
        refunded = await ledger.refund("refund-user", spent.adjustment_id, "admin-1")
        again = await ledger.refund("refund-user", spent.adjustment_id, "admin-1")

        with pytest.raises(AdjustmentNotRefundableError):
            await ledger.refund("other-user", spent.adjustment_id, "admin-1")
        with pytest.raises(AdjustmentNotRefundableError):
            await ledger.refund("refund-user", refunded.adjustment_id, "admin-1")

    assert refunded.reason == REASON_REFUND
    assert refunded.balance == 1
    assert again.replayed is True
    assert again.adjustment_id == refunded.adjustment_id

    snapshot = await _snapshot(session_maker, "refund-user")
    assert snapshot["balances"]["lifetime_prediction"] == 1


@pytest.mark.asyncio
async def test_run_atomic_retries_transient_errors(session_maker):
    async with session_maker() as session:
        ledger = CreditLedgerService(session, max_attempts=3, retry_backoff_seconds=0)
        calls = []

        async def _flaky():
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE credit_accounts", {}, Exception("database is locked"))
            return "committed"

        assert await ledger.run_atomic("flaky", _flaky) == "committed"
        assert len(calls) == 2


@pytest.mark.asyncio
async def test_run_atomic_returns_recovered_result_after_ambiguous_failure(session_maker):
    async with session_maker() as session:
        ledger = CreditLedgerService(session, max_attempts=3, retry_backoff_seconds=0)
        calls = []

        async def _lost_ack():
            calls.append(1)
            raise OperationalError("COMMIT", {}, Exception("connection reset"))

        async def _recover():
            return "already-applied"

        assert await ledger.run_atomic("lost_ack", _lost_ack, recover=_recover) == "already-applied"
        assert len(calls) == 1


@pytest.mark.asyncio
async def test_run_atomic_gives_up_with_transient_conflict(session_maker):
    async with session_maker() as session:
        ledger = CreditLedgerService(session, max_attempts=2, retry_backoff_seconds=0)

        async def _always_locked():
            raise OperationalError("UPDATE credit_accounts", {}, Exception("database is locked"))

        with pytest.raises(TransientStorageConflictError) as exc_info:
            await ledger.run_atomic("locked", _always_locked)

    assert exc_info.value.attempts == 2
    assert exc_info.value.http_status == 503
