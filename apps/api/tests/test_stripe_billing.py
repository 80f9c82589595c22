import asyncio
import hashlib
import hmac
import json
import logging
import time
from types import SimpleNamespace

import pytest
import stripe

from conftest import OTHER_STUDENT_ID, OTHER_TRAINER_ID, PLAN_ID, STUDENT_ID, TRAINER_ID, auth_header
from config import settings
from models.user import User
from services.ledger_views import get_balance, list_transactions, reconcile_account


WEBHOOK_SECRET = "whsec_test_secret"


def _checkout_event(event_id="evt_1", student_id=STUDENT_ID, plan_id=PLAN_ID, credits="100", event_type=None):
    metadata = {"studentId": student_id, "planId": plan_id, "credits": credits}
    return {
        "id": event_id,
        "type": event_type or "checkout.session.completed",
        "data": {"object": {"id": "cs_test_1", "object": "checkout.session", "metadata": metadata}},
    }


def _signed(event, secret=WEBHOOK_SECRET, timestamp=None):
    body = json.dumps(event)
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={ts},v1={signature}", "Content-Type": "application/json"}


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest.mark.asyncio
async def test_completed_checkout_credits_the_student_once(client, session_maker, webhook_secret):
    body, headers = _signed(_checkout_event("evt_paid"))

    first = await client.post("/billing/webhook", content=body, headers=headers)
    assert first.status_code == 200
    assert first.json() == {"received": True, "handled": True, "fulfilled": True, "status": "credited"}

    replay = await client.post("/billing/webhook", content=body, headers=headers)
    assert replay.status_code == 200
    assert replay.json()["status"] == "duplicate"

    async with session_maker() as db:
        balance = await get_balance(db, STUDENT_ID)
        page = await list_transactions(db, STUDENT_ID)
        reconciled = await reconcile_account(db, STUDENT_ID)

    assert balance["credits"] == 100
    assert balance["current_plan"]["plan_id"] == PLAN_ID
    assert balance["current_plan"]["plan_name"] == "Basic"
    assert page["total_count"] == 1
    entry = page["items"][0]
    assert entry["type"] == "purchase"
    assert entry["description"] == "Purchased: Basic"
    assert entry["trainer_id"] == TRAINER_ID
    assert entry["reference_id"] == "evt_paid"
    assert reconciled["consistent"]


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature_without_crediting(client, session_maker, webhook_secret):
    body, headers = _signed(_checkout_event("evt_forged"), secret="whsec_wrong")
    response = await client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "signature_invalid"

    missing = await client.post(
        "/billing/webhook",
        content=body,
        headers={"Content-Type": "application/json"},
    )
    assert missing.status_code == 400

    async with session_maker() as db:
        balance = await get_balance(db, STUDENT_ID)
    assert balance["credits"] == 0


@pytest.mark.asyncio
async def test_webhook_rejects_stale_timestamp(client, webhook_secret):
    body, headers = _signed(_checkout_event("evt_old"), timestamp=int(time.time()) - 3600)
    response = await client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_missing_metadata_is_a_bad_request(client, session_maker, webhook_secret):
    event = _checkout_event("evt_nometa")
    del event["data"]["object"]["metadata"]["planId"]
    body, headers = _signed(event)

    response = await client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Webhook Error: Missing metadata."

    async with session_maker() as db:
        balance = await get_balance(db, STUDENT_ID)
    assert balance["credits"] == 0


@pytest.mark.asyncio
async def test_webhook_acknowledges_when_fulfillment_fails(client, session_maker, webhook_secret, caplog):
    body, headers = _signed(_checkout_event("evt_gone_plan", plan_id="plan-deleted"))

    with caplog.at_level(logging.ERROR, logger="services.funding"):
        response = await client.post("/billing/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": True, "fulfilled": False}
    assert any("evt_gone_plan" in record.getMessage() for record in caplog.records)

    async with session_maker() as db:
        balance = await get_balance(db, STUDENT_ID)
        page = await list_transactions(db, STUDENT_ID)
    assert balance["credits"] == 0
    assert page["total_count"] == 0


@pytest.mark.asyncio
async def test_webhook_ignores_other_event_types(client, session_maker, webhook_secret):
    body, headers = _signed(_checkout_event("evt_other", event_type="payment_intent.created"))
    response = await client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}


@pytest.mark.asyncio
async def test_webhook_without_configured_secret_is_unavailable(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    body, headers = _signed(_checkout_event("evt_unconfigured"))
    response = await client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_checkout_session_routes_payment_to_trainer(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(id="cs_test_abc", url="https://checkout.stripe.test/cs_test_abc")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    response = await client.post(
        "/billing/checkout",
        json={"plan_id": PLAN_ID},
        headers=auth_header(STUDENT_ID),
    )
    assert response.status_code == 200
    assert response.json() == {
        "session_id": "cs_test_abc",
        "checkout_url": "https://checkout.stripe.test/cs_test_abc",
    }

    assert captured["api_key"] == "sk_test_123"
    assert captured["mode"] == "payment"
    assert captured["line_items"][0]["price_data"]["unit_amount"] == 1000
    assert captured["payment_intent_data"] == {
        "application_fee_amount": 100,
        "transfer_data": {"destination": "acct_test_ada"},
    }
    assert captured["metadata"] == {"studentId": STUDENT_ID, "planId": PLAN_ID, "credits": "100"}


@pytest.mark.asyncio
async def test_checkout_rejects_plans_from_other_trainers(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    response = await client.post(
        "/billing/checkout",
        json={"plan_id": PLAN_ID},
        headers=auth_header(OTHER_STUDENT_ID),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_checkout_without_stripe_key_is_unavailable(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
    response = await client.post(
        "/billing/checkout",
        json={"plan_id": PLAN_ID},
        headers=auth_header(STUDENT_ID),
    )
    assert response.status_code == 503
    assert response.json()["error"] == "payments_not_configured"


@pytest.mark.asyncio
async def test_checkout_processor_error_is_transient(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")

    def failing_create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", failing_create)
    response = await client.post(
        "/billing/checkout",
        json={"plan_id": PLAN_ID},
        headers=auth_header(STUDENT_ID),
    )
    assert response.status_code == 503
    assert response.json()["error"] == "transient_failure"


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_event_credit_once(client, session_maker, webhook_secret, monkeypatch):
    monkeypatch.setattr(settings, "LEDGER_MAX_ATTEMPTS", 6)
    body, headers = _signed(_checkout_event("evt_burst"))

    responses = await asyncio.gather(
        *[client.post("/billing/webhook", content=body, headers=headers) for _ in range(3)]
    )
    assert [response.status_code for response in responses] == [200, 200, 200]
    assert sorted(response.json()["status"] for response in responses) == ["credited", "duplicate", "duplicate"]

    async with session_maker() as db:
        balance = await get_balance(db, STUDENT_ID)
        page = await list_transactions(db, STUDENT_ID)
        reconciled = await reconcile_account(db, STUDENT_ID)

    assert balance["credits"] == 100
    assert page["total_count"] == 1
    assert reconciled["consistent"], reconciled["problems"]


@pytest.mark.asyncio
async def test_webhook_with_non_object_checkout_is_a_bad_request(client, session_maker, webhook_secret):
    event = _checkout_event("evt_string_object")
    event["data"]["object"] = "cs_test_1"
    body, headers = _signed(event)

    response = await client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Webhook Error: Missing metadata."

    event["data"] = ["not", "a", "mapping"]
    body, headers = _signed(event)
    listed = await client.post("/billing/webhook", content=body, headers=headers)
    assert listed.status_code == 400

    async with session_maker() as db:
        balance = await get_balance(db, STUDENT_ID)
    assert balance["credits"] == 0


@pytest.mark.asyncio
async def test_connect_creates_express_account_once_and_returns_onboarding_link(client, session_maker, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "FRONTEND_URL", "https://app.test")
    created = []
    links = []

    def fake_account_create(**kwargs):
        created.append(kwargs)
        return SimpleNamespace(id="acct_new_bo")

    def fake_link_create(**kwargs):
        links.append(kwargs)
        return SimpleNamespace(url=f"https://connect.stripe.test/{kwargs['account']}")

    monkeypatch.setattr(stripe.Account, "create", fake_account_create)
    monkeypatch.setattr(stripe.AccountLink, "create", fake_link_create)

    response = await client.post("/billing/connect", headers=auth_header(OTHER_TRAINER_ID, "trainer"))
    assert response.status_code == 200
    assert response.json() == {
        "url": "https://connect.stripe.test/acct_new_bo",
        "stripe_account_id": "acct_new_bo",
    }
    assert len(created) == 1
    assert created[0]["type"] == "express"
    assert created[0]["email"] == "bo@example.com"
    assert created[0]["api_key"] == "sk_test_123"
    assert links[0]["type"] == "account_onboarding"
    assert links[0]["refresh_url"] == "https://app.test/trainer/settings/payments"
    assert links[0]["return_url"].endswith("account_id=acct_new_bo")

    async with session_maker() as db:
        trainer = await db.get(User, OTHER_TRAINER_ID)
    assert trainer.stripe_account_id == "acct_new_bo"

    again = await client.post("/billing/connect", headers=auth_header(OTHER_TRAINER_ID, "trainer"))
    assert again.status_code == 200
    assert again.json()["stripe_account_id"] == "acct_new_bo"
    assert len(created) == 1

    existing = await client.post("/billing/connect", headers=auth_header(TRAINER_ID, "trainer"))
    assert existing.json()["url"] == "https://connect.stripe.test/acct_test_ada"
    assert len(created) == 1
    assert len(links) == 3


@pytest.mark.asyncio
async def test_connect_requires_trainer_and_configured_stripe(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
    unconfigured = await client.post("/billing/connect", headers=auth_header(TRAINER_ID, "trainer"))
    assert unconfigured.status_code == 503
    assert unconfigured.json()["error"] == "payments_not_configured"

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    as_student = await client.post("/billing/connect", headers=auth_header(STUDENT_ID))
    assert as_student.status_code == 403

    def failing_link(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.AccountLink, "create", failing_link)
    failed = await client.post("/billing/connect", headers=auth_header(TRAINER_ID, "trainer"))
    assert failed.status_code == 503
    assert failed.json()["error"] == "transient_failure"
