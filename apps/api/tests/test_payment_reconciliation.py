import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from conftest import seed_user
from models.payment_event import ProcessedPaymentEvent, ReconciliationFailure
from services.credits import CreditLedgerService
from services.payment_reconciliation import (
    PaymentEvent,
    PermanentReconciliationError,
    event_from_gateway_payload,
    process_payment_event_async,
    reconcile_payment_event,
    record_failure,
    replay_failure,
    verify_webhook_signature,
)
from services.subscriptions import get_subscription, is_subscription_active


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _captured(payment_id="pay_001", uid="buyer", product_id="99", amount=9900):
    return PaymentEvent(
        event_type="payment.captured",
        payment_id=payment_id,
        order_id="order_001",
        uid=uid,
        product_id=product_id,
        amount=amount,
    )


async def _snapshot(maker, user_id):
    async with maker() as session:
        return await CreditLedgerService(session).get_account_snapshot(user_id)


async def _failures(maker):
    async with maker() as session:
        result = await session.execute(select(ReconciliationFailure))
        return {failure.payment_id: failure for failure in result.scalars().all()}


@pytest.mark.asyncio
async def test_same_payment_event_grants_exactly_once(session_maker):
    await seed_user(session_maker, "buyer")

    async with session_maker() as session:
        first = await reconcile_payment_event(session, _captured())
    async with session_maker() as session:
        second = await reconcile_payment_event(session, _captured())

    assert first.status == "granted"
    assert first.grants == [{"credit_type": "ai_guru", "amount": 1, "balance": 1}]
    assert second.status == "duplicate"

    snapshot = await _snapshot(session_maker, "buyer")
    assert snapshot["balances"]["ai_guru"] == 1
    assert snapshot["legacy"]["legacy_ai_questions"] == 1


@pytest.mark.asyncio
async def test_bundle_product_grants_every_credit_type(session_maker):
    await seed_user(session_maker, "bundle-buyer", ai_guru=1)

    async with session_maker() as session:
        result = await reconcile_payment_event(
            session,
            _captured(payment_id="pay_bundle", uid="bundle-buyer", product_id="199", amount=19900),
        )

    assert result.status == "granted"
    snapshot = await _snapshot(session_maker, "bundle-buyer")
    assert snapshot["balances"] == {"ai_guru": 4, "kundali": 1, "lifetime_prediction": 0}


@pytest.mark.asyncio
async def test_unusable_events_are_permanent_errors(session_maker):
    await seed_user(session_maker, "buyer")

    async with session_maker() as session:
        with pytest.raises(PermanentReconciliationError):
            await reconcile_payment_event(session, _captured(product_id="999"))
        with pytest.raises(PermanentReconciliationError):
            await reconcile_payment_event(session, _captured(amount=100))
        with pytest.raises(PermanentReconciliationError):
            await reconcile_payment_event(session, _captured(uid="ghost-buyer"))

        processed = await session.execute(select(ProcessedPaymentEvent))
        assert processed.scalars().all() == []


@pytest.mark.asyncio
async def test_subscription_lifecycle_events_update_override(session_maker):
    await seed_user(session_maker, "subscriber")
    period_end = NOW + timedelta(days=30)

    async with session_maker() as session:
        activated = await reconcile_payment_event(
            session,
            PaymentEvent(
                event_type="subscription.activated",
                payment_id="sub_1:subscription.activated:1",
                uid="subscriber",
                plan_id="supreme",
                subscription_id="sub_1",
                current_end=period_end,
            ),
            clock=lambda: NOW,
        )
        subscription = await get_subscription(session, "subscriber")
        assert activated.status == "subscription_updated"
        assert subscription.plan_id == "supreme"
        assert is_subscription_active(subscription, NOW) is True

    async with session_maker() as session:
        await reconcile_payment_event(
            session,
            PaymentEvent(
                event_type="subscription.cancelled",
                payment_id="sub_1:subscription.cancelled:2",
                uid="subscriber",
                subscription_id="sub_1",
            ),
        )
        subscription = await get_subscription(session, "subscriber")
        assert subscription.status == "cancelled"
        assert is_subscription_active(subscription, NOW) is False


@pytest.mark.asyncio
async def test_activation_without_period_end_uses_default_period(session_maker):
    await seed_user(session_maker, "monthly-user")

    with patch("services.subscriptions.settings.SUBSCRIPTION_PERIOD_DAYS", 30):
        async with session_maker() as session:
            await reconcile_payment_event(
                session,
                PaymentEvent(event_type="subscription.charged", payment_id="pay_sub_charge", uid="monthly-user"),
                clock=lambda: NOW,
            )
            subscription = await get_subscription(session, "monthly-user")

    assert is_subscription_active(subscription, NOW + timedelta(days=29)) is True
    assert is_subscription_active(subscription, NOW + timedelta(days=31)) is False


@pytest.mark.asyncio
async def test_failed_and_unknown_events_are_recorded_without_grants(session_maker):
    async with session_maker() as session:
        failed = await reconcile_payment_event(
            session, PaymentEvent(event_type="payment.failed", payment_id="pay_failed", amount=9900)
        )
        ignored = await reconcile_payment_event(
            session, PaymentEvent(event_type="refund.processed", payment_id="rfnd_1")
        )

    assert failed.status == "recorded"
    assert ignored.status == "ignored"


@pytest.mark.asyncio
async def test_record_failure_counts_attempts_then_marks_dead(session_maker):
    payload = {"event_type": "payment.captured", "payment_id": "pay_flaky", "uid": "buyer"}

    with patch("config.settings.RECONCILE_RETRY_INTERVALS", [1, 1]):
        async with session_maker() as session:
            await record_failure(session, payload, "connection refused")
            await record_failure(session, payload, "connection refused")
            assert (await _failures(session_maker))["pay_flaky"].status == "retrying"
            await record_failure(session, payload, "connection refused")

    failure = (await _failures(session_maker))["pay_flaky"]
    assert failure.attempts == 3
    assert failure.status == "dead"


@pytest.mark.asyncio
async def test_worker_job_marks_permanent_failures_dead(session_maker):
    await seed_user(session_maker, "buyer")
    payload = {"event_type": "payment.captured", "payment_id": "pay_bad_product", "uid": "buyer", "product_id": "1"}

    with patch("services.payment_reconciliation.async_session_maker", session_maker):
        result = await process_payment_event_async(payload)

    assert result is None
    failure = (await _failures(session_maker))["pay_bad_product"]
    assert failure.status == "dead"
    assert failure.attempts == 1
    assert "Unknown product" in failure.error_message


@pytest.mark.asyncio
async def test_worker_job_reraises_transient_failures_for_queue_retry(session_maker):
    await seed_user(session_maker, "buyer")
    payload = _captured(payment_id="pay_transient").model_dump()

    async def _boom(*args, **kwargs):
        raise ConnectionError("database went away")

    with patch("services.payment_reconciliation.async_session_maker", session_maker):
        with patch("services.payment_reconciliation.reconcile_payment_event", side_effect=_boom):
            with pytest.raises(ConnectionError):
                await process_payment_event_async(payload)

        failure = (await _failures(session_maker))["pay_transient"]
        assert failure.status == "retrying"

        result = await process_payment_event_async(payload)

    assert result.status == "granted"
    assert (await _failures(session_maker))["pay_transient"].status == "resolved"
    snapshot = await _snapshot(session_maker, "buyer")
    assert snapshot["balances"]["ai_guru"] == 1


@pytest.mark.asyncio
async def test_replay_failure_applies_event_once(session_maker):
    payload = {
        "event_type": "order.paid",
        "payment_id": "pay_late_user",
        "uid": "late-user",
        "product_id": "299",
        "amount": 29900,
    }
    async with session_maker() as session:
        await record_failure(session, payload, "User 'late-user' not found", permanent=True)

    failure = (await _failures(session_maker))["pay_late_user"]
    assert failure.status == "dead"

    await seed_user(session_maker, "late-user")
    async with session_maker() as session:
        result = await replay_failure(session, failure.id)
    async with session_maker() as session:
        again = await replay_failure(session, failure.id)

    assert result.status == "granted"
    assert again.status == "duplicate"
    assert (await _failures(session_maker))["pay_late_user"].status == "resolved"
    snapshot = await _snapshot(session_maker, "late-user")
    assert snapshot["balances"]["ai_guru"] == 5

    async with session_maker() as session:
        with pytest.raises(LookupError):
            await replay_failure(session, "missing-failure")


def test_event_from_gateway_payload_flattens_payment_envelope():
    envelope = {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": "pay_abc",
                    "order_id": "order_abc",
                    "amount": 19900,
                    "notes": {"userId": "buyer", "productId": "199"},
                }
            }
        },
    }

    event = PaymentEvent.model_validate(event_from_gateway_payload(envelope))
    assert event.payment_id == "pay_abc"
    assert event.uid == "buyer"
    assert event.product_id == "199"
    assert event.amount == 19900


def test_event_from_gateway_payload_keys_subscription_cycles():
    envelope = {
        "event": "subscription.charged",
        "payload": {
            "subscription": {
                "entity": {
                    "id": "sub_42",
                    "current_end": 1792000000,
                    "notes": {"uid": "subscriber", "planId": "starter"},
                }
            }
        },
    }

    flattened = event_from_gateway_payload(envelope)
    assert flattened["payment_id"] == "sub_42:subscription.charged:1792000000"
    event = PaymentEvent.model_validate(flattened)
    assert event.plan_id == "starter"
    assert event.current_end == datetime.fromtimestamp(1792000000, tz=timezone.utc)
    json.dumps(flattened)


def test_verify_webhook_signature():
    body = b'{"event":"payment.captured"}'
    secret = "whsec_test_0123456789"
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    assert verify_webhook_signature(body, signature, secret=secret) is True
    assert verify_webhook_signature(body, "0" * 64, secret=secret) is False
    assert verify_webhook_signature(body, None, secret=secret) is False
    assert verify_webhook_signature(body, signature, secret="") is False


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_payment_grant_once(session_maker):
    await seed_user(session_maker, "buyer")

    async def _deliver():
        async with session_maker() as session:
            return await reconcile_payment_event(session, _captured(payment_id="pay_parallel"))

    results = await asyncio.gather(*[_deliver() for _ in range(4)])

    assert sorted(result.status for result in results) == ["duplicate", "duplicate", "duplicate", "granted"]
    snapshot = await _snapshot(session_maker, "buyer")
    assert snapshot["balances"]["ai_guru"] == 1
