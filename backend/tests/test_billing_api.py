"""API tests for Stripe checkout, portal, webhook and billing status routes."""

from sqlalchemy.exc import OperationalError

from backend.features.billing.provider import CheckoutSessionSnapshot
from backend.models.subscription import SubscriptionStatus
from backend.tests.mocks import event_dict, subscription_object

ALICE = {"X-User-Id": "user_alice", "X-User-Email": "alice@example.com", "X-User-Name": "Alice"}


def test_checkout_requires_auth(client):
    resp = client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_checkout_requires_price(client):
    resp = client.post("/api/stripe/checkout", json={}, headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_checkout_returns_url(client, provider):
    resp = client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"}, headers=ALICE)

    assert resp.status_code == 200
    assert resp.json()["url"].startswith("https://checkout.stripe.test/")
    request = provider.checkout_requests[0]
    assert request.success_url == "http://localhost:3000/api/stripe/checkout?session_id={CHECKOUT_SESSION_ID}"
    assert request.cancel_url == "http://localhost:3000/pricing?checkout=canceled"
    assert request.trial_period_days == 14
    assert provider.customers[0]["email"] == "alice@example.com"


def test_checkout_provider_failure_is_generic(client, provider):
    provider.fail_with = "create_checkout_session"
    resp = client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"}, headers=ALICE)

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "billing_unavailable"
    assert "create_checkout_session" not in body["error"]["message"]


def test_checkout_return_without_session_id(client):
    resp = client.get("/api/stripe/checkout", follow_redirects=False)
    assert resp.status_code in (302, 303, 307)
    assert resp.headers["location"] == "http://localhost:3000/pricing"


def test_checkout_return_success(client, provider, billing_service, store):
    client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"}, headers=ALICE)
    customer_id = provider.customers[0]["id"]
    provider.checkout_sessions["cs_1"] = CheckoutSessionSnapshot(
        session_id="cs_1",
        customer_id=customer_id,
        subscription=subscription_object(customer=customer_id, status="trialing"),
    )

    resp = client.get("/api/stripe/checkout", params={"session_id": "cs_1"}, follow_redirects=False)

    assert resp.headers["location"] == "http://localhost:3000/dashboard?checkout=success"
    assert store.get_by_user("user_alice").status == SubscriptionStatus.TRIALING


def test_checkout_return_failure_redirects_to_pricing(client):
    resp = client.get("/api/stripe/checkout", params={"session_id": "cs_missing"}, follow_redirects=False)
    assert resp.headers["location"] == "http://localhost:3000/pricing?checkout=error"


def test_checkout_return_storage_failure_redirects_to_pricing(client, provider, store, monkeypatch):
    client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"}, headers=ALICE)
    customer_id = provider.customers[0]["id"]
    provider.checkout_sessions["cs_1"] = CheckoutSessionSnapshot(
        session_id="cs_1",
        customer_id=customer_id,
        subscription=subscription_object(customer=customer_id),
    )

    def boom(record):
        raise OperationalError("UPDATE user_subscriptions", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "save", boom)
    resp = client.get("/api/stripe/checkout", params={"session_id": "cs_1"}, follow_redirects=False)

    assert resp.status_code in (302, 303, 307)
    assert resp.headers["location"] == "http://localhost:3000/pricing?checkout=error"


def test_portal_without_customer(client):
    resp = client.post("/api/stripe/portal", headers=ALICE)

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "no_billing_customer"
    assert body["redirectTo"] == "/pricing"


def test_portal_returns_url(client, provider):
    client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"}, headers=ALICE)
    resp = client.post("/api/stripe/portal", headers=ALICE)

    assert resp.status_code == 200
    assert resp.json()["url"].startswith("https://billing.stripe.test/")
    assert provider.portal_sessions[0]["return_url"] == "http://localhost:3000/dashboard/settings"


def test_webhook_rejects_bad_signature(client, provider):
    body, _ = provider.signed(event_dict("customer.subscription.created", subscription_object()))
    resp = client.post("/api/stripe/webhook", content=body, headers={"Stripe-Signature": "t=1,v1=bad"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_missing_signature(client, provider):
    body, _ = provider.signed(event_dict("customer.subscription.created", subscription_object()))
    resp = client.post("/api/stripe/webhook", content=body)
    assert resp.status_code == 400


def test_webhook_applies_event(client, provider, store):
    client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"}, headers=ALICE)
    customer_id = provider.customers[0]["id"]
    body, signature = provider.signed(event_dict(
        "customer.subscription.created",
        subscription_object(customer=customer_id, status="active", price_id="price_pro_month"),
    ))

    resp = client.post("/api/stripe/webhook", content=body, headers={"Stripe-Signature": signature})

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_1", "action": "applied"}
    assert store.get_by_user("user_alice").plan_id.value == "pro"


def test_webhook_unknown_customer_acknowledged(client, provider):
    body, signature = provider.signed(event_dict(
        "customer.subscription.deleted", subscription_object(customer="cus_ghost", status="canceled"),
    ))
    resp = client.post("/api/stripe/webhook", content=body, headers={"Stripe-Signature": signature})

    assert resp.status_code == 200
    assert resp.json()["action"] == "ignored"


def test_webhook_storage_failure_is_500(client, provider, store, monkeypatch):
    client.post("/api/stripe/checkout", json={"priceId": "price_plus_month"}, headers=ALICE)
    customer_id = provider.customers[0]["id"]

    def boom(record):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "save", boom)
    body, signature = provider.signed(event_dict(
        "customer.subscription.created", subscription_object(customer=customer_id),
    ))
    resp = client.post("/api/stripe/webhook", content=body, headers={"Stripe-Signature": signature})

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "billing_unavailable"
    assert "database" not in resp.json()["error"]["message"]


def test_status_for_new_user(client):
    resp = client.get("/api/billing/status", headers=ALICE)

    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_id"] == "free"
    assert body["status"] == "inactive"
    assert body["generation_limit"] == 5
    assert body["has_customer"] is False


def test_status_requires_auth(client):
    assert client.get("/api/billing/status").status_code == 401


def test_plans_catalogue(client):
    resp = client.get("/api/billing/plans")

    assert resp.status_code == 200
    plans = {p["id"]: p for p in resp.json()}
    assert list(plans) == ["free", "plus", "pro"]
    assert plans["free"]["purchasable"] is False
    assert plans["plus"]["monthly_price_id"] == "price_plus_month"
    assert plans["plus"]["trial_days"] == 14
    assert plans["pro"]["generation_limit"] == -1
    assert plans["plus"]["is_popular"] is True
