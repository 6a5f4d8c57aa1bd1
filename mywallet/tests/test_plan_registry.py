"""Plan registry: persisted get-or-create of gateway plan ids."""
import threading
from unittest.mock import patch

import pytest
from sqlalchemy import insert, select

from mywallet.core.database import app_settings, get_db_session
from mywallet.core.errors import BillingDisabledError, GatewayUnavailable, ValidationError
from mywallet.features.plans.service import PlanRegistry, settings_key
from mywallet.models.plan import PlanKey
from mywallet.tests.mocks import FakeGateway


def _persisted():
    with get_db_session() as session:
        return {r.key: (r.value, r.category) for r in session.execute(select(app_settings)).fetchall()}


def test_first_resolution_creates_and_persists():
    gateway = FakeGateway()
    registry = PlanRegistry(gateway)

    plan_id = registry.resolve_external_plan_id("MONTHLY")

    assert plan_id == "plan-monthly-1"
    assert gateway.created_plans == [PlanKey.MONTHLY]
    assert _persisted() == {"PLAN_MONTHLY_ID": ("plan-monthly-1", "payment-gateway")}


def test_second_resolution_uses_cache():
    gateway = FakeGateway()
    registry = PlanRegistry(gateway)

    first = registry.resolve_external_plan_id(PlanKey.ANNUAL)
    second = registry.resolve_external_plan_id(PlanKey.ANNUAL)

    assert first == second
    assert len(gateway.created_plans) == 1


def test_new_registry_reads_persisted_id():
    PlanRegistry(FakeGateway()).resolve_external_plan_id(PlanKey.MONTHLY)

    gateway = FakeGateway()
    registry = PlanRegistry(gateway)

    assert registry.resolve_external_plan_id(PlanKey.MONTHLY) == "plan-monthly-1"
    assert gateway.created_plans == []


def test_concurrent_first_resolution_creates_one_plan():
    gateway = FakeGateway(plan_creation_delay=0.05)
    registry = PlanRegistry(gateway)
    results = []

    def resolve():
        results.append(registry.resolve_external_plan_id(PlanKey.MONTHLY))

    threads = [threading.Thread(target=resolve) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert gateway.created_plans == [PlanKey.MONTHLY]
    assert len(set(results)) == 1
    assert len(results) == 4


def test_lost_insert_race_returns_winner_id():
    gateway = FakeGateway()
    registry = PlanRegistry(gateway)

    def winner_stores_first(plan):
        with get_db_session() as session:
            session.execute(
                insert(app_settings).values(
                    key=settings_key(PlanKey.ANNUAL), value="plan-from-other-process", category="payment-gateway"
                )
            )
        return "plan-created-here"

    with patch.object(gateway, "create_plan", side_effect=winner_stores_first):
        plan_id = registry.resolve_external_plan_id(PlanKey.ANNUAL)

    assert plan_id == "plan-from-other-process"
    assert registry.resolve_external_plan_id(PlanKey.ANNUAL) == "plan-from-other-process"


def test_lifetime_is_not_recurring():
    gateway = FakeGateway()
    with pytest.raises(ValidationError):
        PlanRegistry(gateway).resolve_external_plan_id(PlanKey.LIFETIME)
    assert gateway.created_plans == []


def test_unknown_plan():
    with pytest.raises(ValidationError):
        PlanRegistry(FakeGateway()).resolve_external_plan_id("WEEKLY")


def test_gateway_failure_persists_nothing():
    gateway = FakeGateway()
    registry = PlanRegistry(gateway)

    with patch.object(gateway, "create_plan", side_effect=GatewayUnavailable("down")):
        with pytest.raises(GatewayUnavailable):
            registry.resolve_external_plan_id(PlanKey.MONTHLY)

    assert _persisted() == {}
    assert registry.resolve_external_plan_id(PlanKey.MONTHLY) == "plan-monthly-1"


def test_without_gateway_only_persisted_ids_resolve():
    PlanRegistry(FakeGateway()).resolve_external_plan_id(PlanKey.MONTHLY)
    registry = PlanRegistry(None)

    assert registry.resolve_external_plan_id(PlanKey.MONTHLY) == "plan-monthly-1"
    with pytest.raises(BillingDisabledError):
        registry.resolve_external_plan_id(PlanKey.ANNUAL)


def test_list_plans_reports_known_ids_without_creating():
    gateway = FakeGateway()
    registry = PlanRegistry(gateway)
    registry.resolve_external_plan_id(PlanKey.ANNUAL)

    plans = {p["id"]: p for p in registry.list_plans()}

    assert set(plans) == {"MONTHLY", "ANNUAL", "LIFETIME"}
    assert plans["MONTHLY"]["price"] == pytest.approx(29.90)
    assert plans["MONTHLY"]["external_plan_id"] is None
    assert plans["ANNUAL"]["external_plan_id"] == "plan-annual-1"
    assert plans["ANNUAL"]["frequency"] == {"count": 12, "unit": "months"}
    assert plans["LIFETIME"]["recurring"] is False
    assert gateway.created_plans == [PlanKey.ANNUAL]


def test_setup_plans_creates_recurring_plans():
    gateway = FakeGateway()
    registry = PlanRegistry(gateway)

    assert registry.setup_plans() == {"MONTHLY": "plan-monthly-1", "ANNUAL": "plan-annual-2"}


def test_setup_plans_logs_gateway_failures():
    gateway = FakeGateway()
    registry = PlanRegistry(gateway)

    with patch.object(gateway, "create_plan", side_effect=GatewayUnavailable("down")):
        assert registry.setup_plans() == {"MONTHLY": None, "ANNUAL": None}
    assert _persisted() == {}
