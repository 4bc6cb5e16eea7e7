from unittest.mock import patch

import pytest

from conftest import auth_header, seed_user


@pytest.mark.asyncio
async def test_check_reports_credit_access(api_client, session_maker):
    await seed_user(session_maker, "reader", kundali=1)

    resp = await api_client.get("/entitlement/reader/kundali", headers=auth_header("reader"))

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["allowed"] is True
    assert payload["via"] == "credit"
    assert payload["remaining"] == 1
    assert payload["cost"] == 1


@pytest.mark.asyncio
async def test_consume_spends_then_returns_402_with_redirect(api_client, session_maker):
    await seed_user(session_maker, "spender", kundali=1)
    headers = auth_header("spender")

    first = await api_client.post("/entitlement/spender/compatibility/consume", headers=headers)
    assert first.status_code == 200
    assert first.json()["balance"] == 0
    assert first.json()["charged"] == 1

    second = await api_client.post("/entitlement/spender/compatibility/consume", headers=headers)
    assert second.status_code == 402
    detail = second.json()["detail"]
    assert detail["error"] == "insufficient_credits"
    assert detail["redirect_hint"] == "/pay/199?feature=compatibility"


@pytest.mark.asyncio
async def test_consume_replays_with_idempotency_key_after_balance_drained(api_client, session_maker):
    await seed_user(session_maker, "retrying-client", ai_guru=1)
    headers = {**auth_header("retrying-client"), "Idempotency-Key": "chat-msg-7"}

    first = await api_client.post("/entitlement/retrying-client/ai_question/consume", headers=headers)
    replay = await api_client.post("/entitlement/retrying-client/ai_question/consume", headers=headers)

    assert first.status_code == 200
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True
    assert replay.json()["adjustment_id"] == first.json()["adjustment_id"]
    assert replay.json()["balance"] == 0


@pytest.mark.asyncio
async def test_consume_rejects_idempotency_key_reused_for_unpaid_feature(api_client, session_maker):
    await seed_user(session_maker, "key-reuser", kundali=1)
    headers = {**auth_header("key-reuser"), "Idempotency-Key": "k"}

    paid = await api_client.post("/entitlement/key-reuser/kundali/consume", headers=headers)
    reused = await api_client.post("/entitlement/key-reuser/predictions/consume", headers=headers)

    assert paid.status_code == 200
    assert reused.status_code == 409
    assert reused.json()["detail"]["error"] == "idempotency_key_conflict"
    assert reused.json()["detail"]["adjustment_id"] == paid.json()["adjustment_id"]

    check = await api_client.get("/entitlement/key-reuser/predictions", headers=auth_header("key-reuser"))
    assert check.json()["allowed"] is False


@pytest.mark.asyncio
async def test_unknown_feature_and_unknown_user(api_client, session_maker):
    await seed_user(session_maker, "curious")

    unknown_feature = await api_client.get("/entitlement/curious/palm_reading", headers=auth_header("curious"))
    assert unknown_feature.status_code == 500
    assert unknown_feature.json()["detail"]["error"] == "policy_not_found"

    with patch("routers.auth_scope.settings.ADMIN_USER_IDS", ["admin-1"]):
        unknown_user = await api_client.get("/entitlement/ghost/kundali", headers=auth_header("admin-1"))
    assert unknown_user.status_code == 404


@pytest.mark.asyncio
async def test_cross_user_access_is_forbidden(api_client, session_maker):
    await seed_user(session_maker, "victim", ai_guru=5)

    resp = await api_client.post("/entitlement/victim/ai_question/consume", headers=auth_header("attacker"))
    assert resp.status_code == 403

    missing_token = await api_client.get("/entitlement/victim/ai_question")
    assert missing_token.status_code == 401
