import hashlib
import hmac

from sqlalchemy import select

from mywallet.core.config import settings
from mywallet.core.database import get_db_session, users
from mywallet.core.metrics import webhook_events_total
from mywallet.features.billing.webhooks import verify_signature

SECRET = "whsec-test"


def _sign(data_id, request_id, ts="1704067200", secret=SECRET):
    manifest = f"id:{str(data_id).lower()};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def _plan(user_id):
    with get_db_session() as session:
        return session.execute(select(users.c.plan).where(users.c.id == user_id)).scalar()


def test_verify_signature():
    header = _sign("ABC123", "req-1")

    assert verify_signature(SECRET, header, "req-1", "ABC123")
    assert verify_signature(SECRET, header, "req-1", "abc123")
    assert not verify_signature(SECRET, header, "req-2", "ABC123")
    assert not verify_signature("other-secret", header, "req-1", "ABC123")
    assert not verify_signature(SECRET, "ts=1704067200", "req-1", "ABC123")
    assert not verify_signature(SECRET, None, "req-1", "ABC123")
    assert not verify_signature(None, header, "req-1", "ABC123")


def test_signature_manifest_omits_missing_parts():
    manifest = "ts:99;"
    digest = hmac.new(SECRET.encode(), manifest.encode(), hashlib.sha256).hexdigest()

    assert verify_signature(SECRET, f"ts=99,v1={digest}", None, None)


def test_webhook_acknowledges_and_processes_in_background(client, fake_gateway, make_user):
    make_user("user42")
    fake_gateway.payments["PAY1"] = {"id": "PAY1", "status": "approved", "external_reference": "user42:LIFETIME"}

    response = client.post("/webhooks/payment-gateway", json={"type": "payment", "data": {"id": "PAY1"}})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert _plan("user42") == "LIFETIME"


def test_processing_failure_still_returns_200(client, fake_gateway):
    fake_gateway.fail_reads = True

    response = client.post("/webhooks/payment-gateway", json={"type": "payment", "data": {"id": "PAY1"}})

    assert response.status_code == 200
    assert webhook_events_total.value({"type": "payment", "outcome": "error"}) == 1


def test_malformed_body_is_acknowledged(client):
    response = client.post(
        "/webhooks/payment-gateway",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_subscription_webhook_alias(client, fake_gateway, make_user):
    make_user("user42")
    fake_gateway.subscriptions["pre-1"] = {"id": "pre-1", "status": "authorized", "external_reference": "user42:MONTHLY"}

    response = client.post("/subscription/webhook", json={"type": "subscription_preapproval", "data": {"id": "pre-1"}})

    assert response.status_code == 200
    assert _plan("user42") == "MONTHLY"


def test_invalid_signature_rejected_when_required(client, fake_gateway, make_user, monkeypatch):
    monkeypatch.setattr(settings, "MP_WEBHOOK_SECRET", SECRET)
    monkeypatch.setattr(settings, "MP_WEBHOOK_SIGNATURE_REQUIRED", True)
    make_user("user42")
    fake_gateway.payments["PAY1"] = {"id": "PAY1", "status": "approved", "external_reference": "user42:LIFETIME"}

    response = client.post(
        "/webhooks/payment-gateway",
        json={"type": "payment", "data": {"id": "PAY1"}},
        headers={"x-signature": _sign("PAY1", "req-1", secret="forged"), "x-request-id": "req-1"},
    )

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_signature"
    assert _plan("user42") == "FREE"
    assert webhook_events_total.value({"type": "payment", "outcome": "rejected"}) == 1


def test_valid_signature_accepted_when_required(client, fake_gateway, make_user, monkeypatch):
    monkeypatch.setattr(settings, "MP_WEBHOOK_SECRET", SECRET)
    monkeypatch.setattr(settings, "MP_WEBHOOK_SIGNATURE_REQUIRED", True)
    make_user("user42")
    fake_gateway.payments["PAY1"] = {"id": "PAY1", "status": "approved", "external_reference": "user42:LIFETIME"}

    response = client.post(
        "/webhooks/payment-gateway?data.id=PAY1&type=payment",
        json={"type": "payment", "data": {"id": "PAY1"}},
        headers={"x-signature": _sign("PAY1", "req-1"), "x-request-id": "req-1"},
    )

    assert response.status_code == 200
    assert _plan("user42") == "LIFETIME"
