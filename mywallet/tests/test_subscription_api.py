from sqlalchemy import select

from mywallet.api.deps import get_billing_services
from mywallet.core.config import settings
from mywallet.core.database import get_db_session, users
from mywallet.features.billing.service import BillingServices
from mywallet.features.billing.webhooks import WebhookReconciler
from mywallet.features.plans.service import PlanRegistry
from mywallet.main import app

HEADERS = {"X-User-Id": "user-1"}


def _user(user_id="user-1"):
    with get_db_session() as session:
        return session.execute(select(users).where(users.c.id == user_id)).one()


def test_plans_catalog(client, monkeypatch):
    monkeypatch.setattr(settings, "MP_PUBLIC_KEY", "TEST-public-key")

    response = client.get("/subscription/plans")

    assert response.status_code == 200
    body = response.json()
    assert body["public_key"] == "TEST-public-key"
    assert [p["id"] for p in body["plans"]] == ["MONTHLY", "ANNUAL", "LIFETIME"]


def test_subscribe_lifetime_returns_checkout(client, owner, fake_gateway):
    response = client.post("/subscription/subscribe", json={"planType": "LIFETIME"}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {
        "type": "preference",
        "id": "pref-1",
        "init_point": "https://mp.test/checkout/pref-1",
    }
    assert fake_gateway.charges == [("LIFETIME", "user-1")]
    assert _user().plan == "FREE"


def test_subscribe_recurring_stores_pending_subscription(client, owner):
    response = client.post(
        "/subscription/subscribe",
        json={"planType": "MONTHLY", "cardTokenId": "tok-1"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {"type": "subscription", "id": "preapproval-1", "status": "pending"}

    status = client.get("/subscription/status", headers=HEADERS).json()
    assert status["plan"] == "FREE"
    assert status["status"] == "INACTIVE"
    assert status["subscription_id"] == "preapproval-1"
    assert status["is_active"] is False


def test_subscribe_recurring_without_card_token(client, owner):
    response = client.post("/subscription/subscribe", json={"plan_type": "ANNUAL"}, headers=HEADERS)

    assert response.status_code == 400
    assert _user().subscription_id is None


def test_subscribe_unknown_plan(client, owner):
    response = client.post("/subscription/subscribe", json={"planType": "GOLD"}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_plan"


def test_subscribe_requires_identity(client):
    response = client.post("/subscription/subscribe", json={"planType": "LIFETIME"})

    assert response.status_code == 401


def test_subscribe_when_billing_disabled(client, owner):
    app.dependency_overrides[get_billing_services] = lambda: BillingServices(
        provider=None,
        plan_registry=PlanRegistry(None),
        reconciler=WebhookReconciler(None),
    )

    response = client.post("/subscription/subscribe", json={"planType": "LIFETIME"}, headers=HEADERS)

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "billing_disabled"


def test_status_after_lifetime_payment(client, owner, fake_gateway):
    fake_gateway.payments["PAY1"] = {"id": "PAY1", "status": "approved", "external_reference": "user-1:LIFETIME"}
    client.post("/webhooks/payment-gateway", json={"type": "payment", "data": {"id": "PAY1"}})

    status = client.get("/subscription/status", headers=HEADERS).json()

    assert status["plan"] == "LIFETIME"
    assert status["status"] == "ACTIVE"
    assert status["expires_at"] is None
    assert status["is_active"] is True

    history = client.get("/subscription/history", headers=HEADERS).json()["payments"]
    assert [p["external_payment_id"] for p in history] == ["PAY1"]


def test_status_unknown_user(client):
    response = client.get("/subscription/status", headers={"X-User-Id": "ghost"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "user_not_found"


def test_cancel_without_subscription(client, owner):
    response = client.post("/subscription/cancel", headers=HEADERS)

    assert response.status_code == 404


def test_cancel_recurring_subscription(client, owner, fake_gateway):
    client.post("/subscription/subscribe", json={"planType": "MONTHLY", "cardTokenId": "tok-1"}, headers=HEADERS)

    response = client.post("/subscription/cancel", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    assert fake_gateway.cancelled == ["preapproval-1"]


def test_history_empty(client, owner):
    assert client.get("/subscription/history", headers=HEADERS).json() == {"payments": []}
