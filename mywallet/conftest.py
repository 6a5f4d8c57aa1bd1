# mywallet/conftest.py
import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import insert

from mywallet.core.auth import Owner
from mywallet.core.config import settings
from mywallet.core.database import (
    bank_accounts,
    create_all_tables,
    credit_cards,
    dispose_engine,
    drop_all_tables,
    get_db_session,
    init_engine,
    users,
)
from mywallet.core.metrics import METRICS


@pytest.fixture(scope="function", autouse=True)
def db():
    """
    Fresh in-memory SQLite database per test.

    The static pool keeps one connection so every session sees the same
    in-memory database.
    """
    init_engine("sqlite://")
    create_all_tables()
    METRICS.reset()
    yield
    drop_all_tables()
    dispose_engine()


@pytest.fixture
def make_user():
    def _make(user_id=None, name="Maria Silva", email=None, **values):
        user_id = user_id or str(uuid.uuid4())
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    id=user_id,
                    name=name,
                    email=email or f"{user_id}@example.com",
                    **values,
                )
            )
        return user_id
    return _make


@pytest.fixture
def owner(make_user):
    return Owner(user_id=make_user("user-1"))


@pytest.fixture
def make_account():
    def _make(owner, balance="1000.00", bank_name="Nubank"):
        account_id = str(uuid.uuid4())
        with get_db_session() as session:
            session.execute(
                insert(bank_accounts).values(
                    id=account_id,
                    user_id=owner.user_id,
                    profile_id=owner.profile_id,
                    bank_name=bank_name,
                    balance=Decimal(balance),
                )
            )
        return account_id
    return _make


@pytest.fixture
def make_card():
    def _make(owner, bank_account_id=None, name="Roxinho"):
        card_id = str(uuid.uuid4())
        with get_db_session() as session:
            session.execute(
                insert(credit_cards).values(
                    id=card_id,
                    user_id=owner.user_id,
                    profile_id=owner.profile_id,
                    name=name,
                    brand="MASTERCARD",
                    last_four_digits="1234",
                    bank_account_id=bank_account_id,
                )
            )
        return card_id
    return _make


@pytest.fixture
def fake_gateway():
    from mywallet.tests.mocks import FakeGateway
    return FakeGateway()


@pytest.fixture
def billing_services(fake_gateway):
    from mywallet.features.billing.service import BillingServices
    from mywallet.features.billing.webhooks import WebhookReconciler
    from mywallet.features.plans.service import PlanRegistry

    return BillingServices(
        provider=fake_gateway,
        plan_registry=PlanRegistry(fake_gateway),
        reconciler=WebhookReconciler(fake_gateway),
    )


@pytest.fixture
def client(billing_services, monkeypatch):
    """TestClient with the fake gateway wired in and signatures not enforced."""
    from mywallet.api.deps import get_billing_services
    from mywallet.main import app

    monkeypatch.setattr(settings, "MP_WEBHOOK_SIGNATURE_REQUIRED", False)
    app.dependency_overrides[get_billing_services] = lambda: billing_services
    yield TestClient(app)
    app.dependency_overrides.clear()
