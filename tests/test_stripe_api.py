"""/stripe/checkout and /stripe/webhook over HTTP."""
import json
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlmodel import select

from app.core.config import settings
from app.main import app
from app.models import BillingEvent, SecurityLog
from app.services import billing


@pytest.fixture
def stripe_calls(monkeypatch):
    """Records Customer.create / checkout.Session.create instead of calling Stripe."""
    calls = {"customer": [], "session": []}

    def _customer_create(**kwargs):
        calls["customer"].append(kwargs)
        return SimpleNamespace(id="cus_new")

    def _session_create(**kwargs):
        calls["session"].append(kwargs)
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1")

    monkeypatch.setattr(stripe.Customer, "create", _customer_create)
    monkeypatch.setattr(stripe.checkout.Session, "create", _session_create)
    return calls


@pytest.fixture
def post_event(client: TestClient, stripe_signature):
    def _post(event: dict, signature: str | None = None):
        payload = json.dumps(event)
        header = signature if signature is not None else stripe_signature(payload)
        return client.post(
            "/stripe/webhook",
            content=payload,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )
    return _post


def test_checkout_creates_customer_once(client: TestClient, make_profile, fetch_profile, stripe_calls):
    make_profile(name="Ada")
    r = client.post("/stripe/checkout", json={"user_id": "user-1"})
    assert r.status_code == 200, r.text
    assert r.json() == {"session_id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}
    assert fetch_profile().stripe_customer_id == "cus_new"
    assert stripe_calls["customer"][0]["email"] == "user-1@example.com"
    assert stripe_calls["customer"][0]["metadata"] == {"user_id": "user-1"}

    session = stripe_calls["session"][0]
    assert session["customer"] == "cus_new"
    assert session["mode"] == "subscription"
    assert session["line_items"] == [{"price": "price_test_pro", "quantity": 1}]
    assert session["client_reference_id"] == "user-1"
    assert session["success_url"].endswith("/dashboard?upgrade=success")
    assert session["cancel_url"].endswith("/dashboard?upgrade=cancelled")

    # second checkout reuses the stored customer
    assert client.post("/stripe/checkout", json={"user_id": "user-1"}).status_code == 200
    assert len(stripe_calls["customer"]) == 1
    assert stripe_calls["session"][1]["customer"] == "cus_new"


def test_checkout_custom_urls_and_existing_customer(client: TestClient, make_profile, stripe_calls):
    make_profile(stripe_customer_id="cus_existing")
    r = client.post(
        "/stripe/checkout",
        json={"user_id": "user-1", "success_url": "https://app.example.com/ok", "cancel_url": "https://app.example.com/no"},
    )
    assert r.status_code == 200
    assert stripe_calls["customer"] == []
    session = stripe_calls["session"][0]
    assert session["customer"] == "cus_existing"
    assert session["success_url"] == "https://app.example.com/ok"
    assert session["cancel_url"] == "https://app.example.com/no"


def test_checkout_missing_profile_is_404(client: TestClient, stripe_calls):
    r = client.post("/stripe/checkout", json={"user_id": "ghost"})
    assert r.status_code == 404
    assert stripe_calls["session"] == []


def test_checkout_stripe_error_is_502(client: TestClient, make_profile, monkeypatch):
    def _fail(**kwargs):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.checkout.Session, "create", _fail)
    make_profile(stripe_customer_id="cus_existing")
    r = client.post("/stripe/checkout", json={"user_id": "user-1"})
    assert r.status_code == 502
    assert r.json()["error"] == "Failed to create checkout session"


def test_checkout_not_configured_is_503(client: TestClient, make_profile, monkeypatch, stripe_calls):
    monkeypatch.setattr(settings, "stripe_price_id_pro_monthly", "")
    make_profile()
    assert client.post("/stripe/checkout", json={"user_id": "user-1"}).status_code == 503
    assert stripe_calls["customer"] == []


def test_webhook_checkout_completed_grants_pro(post_event, make_profile, fetch_profile, monkeypatch):
    monkeypatch.setattr(billing, "fetch_subscription_period_end", lambda subscription_id: None)
    make_profile(analyses_count=7)
    r = post_event({
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "data": {"object": {
            "client_reference_id": "user-1",
            "customer": "cus_123",
            "subscription": "sub_123",
        }},
    })
    assert r.status_code == 200
    assert r.json() == {"received": True}
    p = fetch_profile()
    assert p.subscription_tier == "pro"
    assert p.subscription_status == "active"
    assert p.stripe_customer_id == "cus_123"
    assert p.stripe_subscription_id == "sub_123"
    assert p.analyses_count == 7


def test_webhook_unknown_customer_is_acknowledged(post_event, make_profile, fetch_profile, db):
    make_profile(subscription_tier="pro", subscription_status="active", stripe_customer_id="cus_mine")
    r = post_event({"id": "evt_del", "type": "customer.subscription.deleted", "data": {"object": {"customer": "cus_other"}}})
    assert r.status_code == 200
    assert fetch_profile().subscription_tier == "pro"
    recorded = db.exec(select(BillingEvent)).one()
    assert recorded.stripe_event_id == "evt_del"
    assert recorded.applied is False


def test_webhook_unhandled_type_is_acknowledged(post_event):
    r = post_event({"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    assert r.status_code == 200
    assert r.json() == {"received": True}


@pytest.mark.parametrize("signature", ["", "t=1,v1=deadbeef", "garbage"])
def test_webhook_bad_signature_is_400(post_event, make_profile, fetch_profile, db, signature):
    make_profile(subscription_tier="pro", subscription_status="active", stripe_customer_id="cus_1")
    r = post_event(
        {"id": "evt_forged", "type": "customer.subscription.deleted", "data": {"object": {"customer": "cus_1"}}},
        signature=signature,
    )
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid signature"
    assert fetch_profile().subscription_tier == "pro"
    db.expire_all()
    assert [log.event for log in db.exec(select(SecurityLog)).all()] == ["invalid_signature"]
    assert db.exec(select(BillingEvent)).all() == []


def test_webhook_signed_with_other_secret_is_400(post_event, stripe_signature, make_profile, fetch_profile):
    make_profile(stripe_customer_id="cus_1", subscription_status="active")
    event = {"id": "evt_pf", "type": "invoice.payment_failed", "data": {"object": {"customer": "cus_1"}}}
    r = post_event(event, signature=stripe_signature(json.dumps(event), secret="whsec_someone_else"))
    assert r.status_code == 400
    assert fetch_profile().subscription_status == "active"


def test_webhook_redelivery_applies_once(post_event, make_profile, fetch_profile, db):
    make_profile(subscription_tier="pro", subscription_status="active", stripe_customer_id="cus_1")
    event = {"id": "evt_pf", "type": "invoice.payment_failed", "data": {"object": {"customer": "cus_1"}}}
    assert post_event(event).status_code == 200
    assert fetch_profile().subscription_status == "past_due"

    p = fetch_profile()
    p.subscription_status = "active"
    db.add(p)
    db.commit()
    assert post_event(event).status_code == 200
    assert fetch_profile().subscription_status == "active"


def test_webhook_apply_failure_is_500_and_redelivery_applies(make_profile, fetch_profile, stripe_signature, db, monkeypatch):
    applied = billing.apply_event

    def _store_down(session, event):
        raise RuntimeError("database unavailable")

    make_profile(subscription_tier="pro", subscription_status="active", stripe_customer_id="cus_1")
    event = {"id": "evt_retry", "type": "invoice.payment_failed", "data": {"object": {"customer": "cus_1"}}}
    payload = json.dumps(event)
    headers = {"stripe-signature": stripe_signature(payload), "content-type": "application/json"}

    with TestClient(app, raise_server_exceptions=False) as c:
        monkeypatch.setattr(billing, "apply_event", _store_down)
        r = c.post("/stripe/webhook", content=payload, headers=headers)
        assert r.status_code == 500
        assert r.json()["error"] == "Webhook handler failed"
        assert fetch_profile().subscription_status == "active"
        assert db.exec(select(BillingEvent)).all() == []

        monkeypatch.setattr(billing, "apply_event", applied)
        r = c.post("/stripe/webhook", content=payload, headers=headers)
        assert r.status_code == 200
    assert fetch_profile().subscription_status == "past_due"
