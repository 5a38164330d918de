# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
import json
import time
from dataclasses import replace
from datetime import datetime
from enum import Enum

import pytest
from sqlalchemy import func, select

import main
from database import crud
from database.models import SubscriptionRecord, WebhookEvent
from svc.webhooks import WebhookIngestor, ensure_exhaustive

PERIOD_1 = (1735689600, 1738368000)  # 2025-01-01 .. 2025-02-01
PERIOD_2 = (1738368000, 1740787200)  # 2025-02-01 .. 2025-03-01


def _order_session(session_id="cs_test_1", **extra):
    session = {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": "pi_123",
        "payment_status": "paid",
        "metadata": {"userId": "user-1", "orderId": "order-42", "type": "order"},
    }
    session.update(extra)
    return session


def _subscription_session(subscription_id="sub_1", tier="starter"):
    return {
        "id": f"cs_sub_{subscription_id}",
        "object": "checkout.session",
        "customer": "cus_1",
        "subscription": subscription_id,
        "metadata": {"userId": "user-1", "tier": tier, "type": "subscription"},
    }


def _subscription(subscription_id="sub_1", status="active", period=PERIOD_1, metadata=None):
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "current_period_start": period[0],
        "current_period_end": period[1],
        "metadata": {"userId": "user-1"} if metadata is None else metadata,
    }


def _create_order(client, amount="19.99"):
    response = client.post("/api/payments/create-order-checkout", json={"userId": "user-1", "amount": amount})
    return response.json()["sessionId"]


def _ledger_count(db) -> int:
    return db.execute(select(func.count()).select_from(WebhookEvent)).scalar_one()


def _subscription_row(db, user_id="user-1"):
    db.expire_all()
    return crud.get_subscription(db, user_id)


def _payment(db, session_id):
    db.expire_all()
    return crud.get_payment_by_session(db, session_id)


# --- Stripe one-off payments ----------------------------------------------


def test_checkout_completed_marks_payment_completed(client, db, send_stripe_event):
    session_id = _create_order(client)

    response = send_stripe_event("checkout.session.completed", _order_session(session_id))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    payment = _payment(db, session_id)
    assert payment.status == "completed"
    assert payment.provider_payment_id == "pi_123"


def test_checkout_completed_replay_is_idempotent(client, db, send_stripe_event):
    session_id = _create_order(client)
    send_stripe_event("checkout.session.completed", _order_session(session_id), event_id="evt_a")
    first_update = _payment(db, session_id).updated_at

    # Same event id hits the ledger; a new id for the same session is a no-op transition.
    assert send_stripe_event("checkout.session.completed", _order_session(session_id), event_id="evt_a").status_code == 200
    assert send_stripe_event("checkout.session.completed", _order_session(session_id), event_id="evt_b").status_code == 200

    payment = _payment(db, session_id)
    assert payment.status == "completed"
    assert payment.updated_at == first_update
    assert _ledger_count(db) == 2


def test_terminal_payment_never_regresses(client, db, send_stripe_event):
    session_id = _create_order(client)
    send_stripe_event("checkout.session.completed", _order_session(session_id), event_id="evt_done")

    response = send_stripe_event("checkout.session.expired", _order_session(session_id), event_id="evt_expired")

    assert response.status_code == 200
    assert _payment(db, session_id).status == "completed"


def test_failure_then_late_success_stays_failed(client, db, send_stripe_event):
    session_id = _create_order(client)
    send_stripe_event("checkout.session.async_payment_failed", _order_session(session_id), event_id="evt_fail")
    assert _payment(db, session_id).status == "failed"

    send_stripe_event("checkout.session.async_payment_succeeded", _order_session(session_id), event_id="evt_ok")

    assert _payment(db, session_id).status == "failed"


def test_completed_before_record_exists_asks_for_retry(client, db, send_stripe_event):
    response = send_stripe_event("checkout.session.completed", _order_session("cs_test_1"), event_id="evt_early")

    assert response.status_code == 409
    assert response.json() == {"received": False, "retry": True}
    assert _ledger_count(db) == 0

    _create_order(client)
    response = send_stripe_event("checkout.session.completed", _order_session("cs_test_1"), event_id="evt_early")

    assert response.status_code == 200
    assert _payment(db, "cs_test_1").status == "completed"


def test_foreign_session_is_ignored(client, db, send_stripe_event):
    response = send_stripe_event("checkout.session.completed", _order_session("cs_elsewhere", metadata={}))

    assert response.status_code == 200
    assert _ledger_count(db) == 1


def test_unknown_event_type_is_acknowledged(client, db, send_stripe_event):
    session_id = _create_order(client)

    response = send_stripe_event("invoice.paid", _order_session(session_id))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert _payment(db, session_id).status == "pending"


def test_stripe_missing_signature_is_rejected(client, db, send_stripe_event):
    session_id = _create_order(client)

    response = send_stripe_event("checkout.session.completed", _order_session(session_id), signed=False)

    assert response.status_code == 401
    assert _payment(db, session_id).status == "pending"


def test_stripe_bad_signature_is_rejected(client, db):
    session_id = _create_order(client)
    payload = b'{"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}}'

    response = client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": "t=1700000000,v1=deadbeef"},
    )

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid signature"}
    assert _payment(db, session_id).status == "pending"
    assert _ledger_count(db) == 0


def test_stripe_replayed_old_delivery_is_rejected(client, db, stripe_signer):
    session_id = _create_order(client)
    event = {"id": "evt_old", "type": "checkout.session.completed", "data": {"object": _order_session(session_id)}}
    payload = json.dumps(event).encode("utf-8")
    week_ago = int(time.time()) - 7 * 24 * 3600

    response = client.post(
        "/api/webhooks/stripe", content=payload, headers={"Stripe-Signature": stripe_signer(payload, timestamp=week_ago)}
    )

    assert response.status_code == 401
    assert _payment(db, session_id).status == "pending"
    assert _ledger_count(db) == 0


def test_webhook_ingest_runs_in_threadpool(client, db, send_stripe_event, mocker):
    offloaded = mocker.patch("main.run_in_threadpool", wraps=main.run_in_threadpool)
    session_id = _create_order(client)

    assert send_stripe_event("checkout.session.completed", _order_session(session_id)).status_code == 200

    offloaded.assert_awaited_once()
    target, provider, payload = offloaded.await_args.args[:3]
    assert target.__func__ is WebhookIngestor.ingest
    assert provider == "stripe"
    assert json.loads(payload)["id"] == "evt_1"
    assert _payment(db, session_id).status == "completed"


def test_malformed_json_is_400(client, stripe_signer):
    payload = b"{not json"

    response = client.post("/api/webhooks/stripe", content=payload, headers={"Stripe-Signature": stripe_signer(payload)})

    assert response.status_code == 400


def test_unsigned_webhooks_accepted_without_secret(client, db, provider_config):
    unverified = replace(provider_config, stripe_webhook_secret=None)
    client.app.dependency_overrides[main.get_provider_config] = lambda: unverified
    session_id = _create_order(client)
    event = {
        "id": "evt_nosig",
        "type": "checkout.session.completed",
        "data": {"object": {"id": session_id, "payment_intent": "pi_9", "metadata": {"type": "order"}}},
    }
    payload = json.dumps(event).encode("utf-8")

    response = client.post("/api/webhooks/stripe", content=payload)

    assert response.status_code == 200
    assert _payment(db, session_id).status == "completed"


# --- Stripe subscriptions -------------------------------------------------


def test_subscription_checkout_completed_creates_record(client, db, send_stripe_event):
    response = send_stripe_event("checkout.session.completed", _subscription_session("sub_1", "professional"))

    assert response.status_code == 200
    row = _subscription_row(db)
    assert row.stripe_subscription_id == "sub_1"
    assert row.stripe_customer_id == "cus_1"
    assert row.tier == "professional"
    assert row.status == "active"


def test_subscription_upgrade_replaces_in_place(client, db, send_stripe_event):
    send_stripe_event("checkout.session.completed", _subscription_session("sub_1", "starter"), event_id="evt_1")
    send_stripe_event("checkout.session.completed", _subscription_session("sub_2", "enterprise"), event_id="evt_2")

    rows = db.execute(select(SubscriptionRecord).where(SubscriptionRecord.user_id == "user-1")).scalars().all()
    assert len(rows) == 1
    row = _subscription_row(db)
    assert row.tier == "enterprise"
    assert row.stripe_subscription_id == "sub_2"


def test_events_for_superseded_subscription_are_ignored(client, db, send_stripe_event):
    send_stripe_event("checkout.session.completed", _subscription_session("sub_1", "starter"), event_id="evt_1")
    send_stripe_event("checkout.session.completed", _subscription_session("sub_2", "enterprise"), event_id="evt_2")
    before = _subscription_row(db).current_period_end

    updated = send_stripe_event(
        "customer.subscription.updated", _subscription("sub_1", status="past_due", period=PERIOD_2), event_id="evt_3"
    )
    deleted = send_stripe_event("customer.subscription.deleted", _subscription("sub_1", status="canceled"), event_id="evt_4")

    assert updated.status_code == 200
    assert deleted.status_code == 200
    row = _subscription_row(db)
    assert row.stripe_subscription_id == "sub_2"
    assert row.tier == "enterprise"
    assert row.status == "active"
    assert row.current_period_end == before
    assert _ledger_count(db) == 4


def test_subscription_checkout_for_unknown_user_is_ignored(client, db, send_stripe_event):
    session = _subscription_session()
    session["metadata"]["userId"] = "ghost"

    assert send_stripe_event("checkout.session.completed", session).status_code == 200
    assert _subscription_row(db, "ghost") is None


def test_subscription_updated_sets_status_and_period(client, db, send_stripe_event):
    send_stripe_event("checkout.session.completed", _subscription_session(), event_id="evt_1")

    send_stripe_event("customer.subscription.updated", _subscription(status="past_due"), event_id="evt_2")

    row = _subscription_row(db)
    assert row.status == "past_due"
    assert row.current_period_start == datetime(2025, 1, 1)
    assert row.current_period_end == datetime(2025, 2, 1)


@pytest.mark.parametrize(
    "provider_status, expected",
    [("active", "active"), ("trialing", "trialing"), ("past_due", "past_due"), ("unpaid", "canceled")],
)
def test_subscription_status_mapping(client, db, send_stripe_event, provider_status, expected):
    send_stripe_event("checkout.session.completed", _subscription_session(), event_id="evt_1")

    send_stripe_event("customer.subscription.updated", _subscription(status=provider_status), event_id="evt_2")

    assert _subscription_row(db).status == expected


def test_subscription_period_read_from_items(client, db, send_stripe_event):
    send_stripe_event("checkout.session.completed", _subscription_session(), event_id="evt_1")
    subscription = _subscription()
    del subscription["current_period_start"], subscription["current_period_end"]
    subscription["items"] = {"data": [{"current_period_start": PERIOD_2[0], "current_period_end": PERIOD_2[1]}]}

    send_stripe_event("customer.subscription.updated", subscription, event_id="evt_2")

    assert _subscription_row(db).current_period_end == datetime(2025, 3, 1)


def test_stale_subscription_update_does_not_roll_back_period(client, db, send_stripe_event):
    send_stripe_event("checkout.session.completed", _subscription_session(), event_id="evt_1")
    send_stripe_event("customer.subscription.updated", _subscription(period=PERIOD_2), event_id="evt_new")

    send_stripe_event("customer.subscription.updated", _subscription(status="past_due", period=PERIOD_1), event_id="evt_old")

    row = _subscription_row(db)
    assert row.status == "active"
    assert row.current_period_end == datetime(2025, 3, 1)


def test_subscription_deleted_cancels_and_stays_canceled(client, db, send_stripe_event):
    send_stripe_event("checkout.session.completed", _subscription_session(), event_id="evt_1")

    assert send_stripe_event("customer.subscription.deleted", _subscription(status="canceled"), event_id="evt_2").status_code == 200
    assert _subscription_row(db).status == "canceled"

    # Late deliveries for the same subscription must not resurrect it.
    send_stripe_event("customer.subscription.updated", _subscription(status="active", period=PERIOD_2), event_id="evt_3")
    send_stripe_event("checkout.session.completed", _subscription_session(), event_id="evt_4")

    assert _subscription_row(db).status == "canceled"


def test_subscription_event_before_checkout_asks_for_retry(client, db, send_stripe_event):
    response = send_stripe_event("customer.subscription.updated", _subscription(), event_id="evt_early")
    assert response.status_code == 409

    response = send_stripe_event("customer.subscription.deleted", _subscription(metadata={}), event_id="evt_foreign")
    assert response.status_code == 200


def test_get_subscription_endpoint(client, send_stripe_event):
    assert client.get("/api/subscriptions/user-1").json() is None

    send_stripe_event("checkout.session.completed", _subscription_session("sub_9", "enterprise"))

    body = client.get("/api/subscriptions/user-1").json()
    assert body["stripeSubscriptionId"] == "sub_9"
    assert body["tier"] == "enterprise"
    assert body["status"] == "active"


# --- Coinbase ---------------------------------------------------------------


def _create_charge(client):
    response = client.post("/api/payments/create-coinbase-checkout", json={"userId": "user-2", "amount": "30"})
    return response.json()["chargeId"]


def _charge(code, metadata=None):
    return {"code": code, "metadata": {"userId": "user-2", "orderId": ""} if metadata is None else metadata}


def _coinbase_payment(db, code):
    db.expire_all()
    return next(p for p in crud.list_payments(db, "user-2") if p.provider_payment_id == code)


def test_coinbase_confirmed_completes_payment(client, db, send_coinbase_event):
    code = _create_charge(client)

    response = send_coinbase_event("charge:confirmed", _charge(code))

    assert response.status_code == 200
    assert _coinbase_payment(db, code).status == "completed"


def test_coinbase_tampered_signature_changes_nothing(client, db, send_coinbase_event):
    code = _create_charge(client)

    response = send_coinbase_event("charge:confirmed", _charge(code), signature="0" * 64)

    assert response.status_code == 401
    assert _coinbase_payment(db, code).status == "pending"
    assert _ledger_count(db) == 0


def test_coinbase_failed_after_confirmed_is_noop(client, db, send_coinbase_event):
    code = _create_charge(client)
    send_coinbase_event("charge:confirmed", _charge(code), event_id="cb-1")

    assert send_coinbase_event("charge:failed", _charge(code), event_id="cb-2").status_code == 200
    assert _coinbase_payment(db, code).status == "completed"


def test_coinbase_informational_events_are_acknowledged(client, db, send_coinbase_event):
    code = _create_charge(client)

    for index, kind in enumerate(["charge:created", "charge:pending", "charge:delayed", "charge:mystery"]):
        assert send_coinbase_event(kind, _charge(code), event_id=f"cb-{index}").status_code == 200

    assert _coinbase_payment(db, code).status == "pending"


def test_coinbase_unknown_charge_retry_only_when_ours(client, db, send_coinbase_event):
    assert send_coinbase_event("charge:confirmed", _charge("NOPE"), event_id="cb-1").status_code == 409
    assert send_coinbase_event("charge:confirmed", _charge("NOPE", metadata={}), event_id="cb-2").status_code == 200


# --- verification fallback ------------------------------------------------


def test_verify_session_reconciles_paid_session(client, db, stripe_gateway):
    session_id = _create_order(client)
    stripe_gateway.sessions[session_id] = _order_session(session_id)

    response = client.post("/api/payments/verify-session", json={"sessionId": session_id})

    assert response.status_code == 200
    assert response.json() == {"status": "applied"}
    assert _payment(db, session_id).status == "completed"


def test_verify_session_unpaid_stays_pending(client, db, stripe_gateway):
    session_id = _create_order(client)
    stripe_gateway.sessions[session_id] = _order_session(session_id, payment_status="unpaid")

    response = client.post("/api/payments/verify-session", json={"sessionId": session_id})

    assert response.json() == {"status": "pending"}
    assert _payment(db, session_id).status == "pending"


@pytest.mark.parametrize(
    "metadata",
    [
        {"userId": "user-1", "orderId": "order-42", "type": "order"},
        {},
    ],
    ids=["ours-without-row", "foreign"],
)
def test_verify_session_paid_without_local_row_reports_pending(client, db, stripe_gateway, metadata):
    stripe_gateway.sessions["cs_elsewhere"] = _order_session("cs_elsewhere", metadata=metadata)

    response = client.post("/api/payments/verify-session", json={"sessionId": "cs_elsewhere"})

    assert response.status_code == 200
    assert response.json() == {"status": "pending"}
    assert _payment(db, "cs_elsewhere") is None


def test_verify_session_requires_id(client):
    assert client.post("/api/payments/verify-session", json={}).status_code == 400


# --- dispatch table ---------------------------------------------------------


def test_ensure_exhaustive_reports_missing_handlers():
    class Kinds(str, Enum):
        ONE = "one"
        TWO = "two"

    ensure_exhaustive(Kinds, {Kinds.ONE: lambda db, obj: None, Kinds.TWO: lambda db, obj: None})
    with pytest.raises(RuntimeError, match="two"):
        ensure_exhaustive(Kinds, {Kinds.ONE: lambda db, obj: None})
