"""
mywallet/features/plans/service.py

Plan registry.

Handles:
- Plan catalog listing
- Get-or-create of the gateway plan id, persisted in the settings table as
  PLAN_<KEY>_ID so the gateway plan is created at most once
- Startup provisioning of recurring plans
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from mywallet.core.database import app_settings, get_db_session
from mywallet.core.errors import AppError, BillingDisabledError, ValidationError
from mywallet.core.logging import log_event
from mywallet.models.plan import PLANS, Plan, PlanKey, parse_plan_key

logger = logging.getLogger("mywallet")

SETTINGS_CATEGORY = "payment-gateway"


class PlanCreator(Protocol):
    def create_plan(self, plan: Plan) -> str:
        """Create the gateway plan record and return its id."""
        ...


def settings_key(plan_key: PlanKey) -> str:
    return f"PLAN_{plan_key.value}_ID"


def _require_plan_key(value) -> PlanKey:
    plan_key = parse_plan_key(value)
    if plan_key is None:
        raise ValidationError(f"Unknown plan: {value}", code="invalid_plan")
    return plan_key


def _read_persisted(plan_key: PlanKey) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(app_settings.c.value).where(app_settings.c.key == settings_key(plan_key))
        ).fetchone()
    return row.value if row and row.value else None


class PlanRegistry:
    """
    Resolves gateway plan ids for recurring plans.

    One instance is built at startup and handed to its dependents. It owns
    its cache and one lock per plan key; across processes the unique
    settings key decides which creation wins.
    """

    def __init__(self, creator: Optional[PlanCreator] = None):
        self.creator = creator
        self._cache: Dict[PlanKey, str] = {}
        self._locks = {key: threading.Lock() for key in PlanKey}

    def known_external_plan_id(self, plan_key) -> Optional[str]:
        """The persisted gateway id, without creating anything."""
        key = _require_plan_key(plan_key)
        if key in self._cache:
            return self._cache[key]
        external_id = _read_persisted(key)
        if external_id:
            self._cache[key] = external_id
        return external_id

    def resolve_external_plan_id(self, plan_key) -> str:
        """
        Return the gateway plan id for plan_key, creating the gateway plan
        on first use.

        Raises:
            ValidationError: unknown plan or LIFETIME (not recurring)
            BillingDisabledError: no gateway configured and nothing persisted
            GatewayError / GatewayUnavailable: plan creation failed
        """
        key = _require_plan_key(plan_key)
        plan = PLANS[key]
        if not plan.is_recurring:
            raise ValidationError(f"Plan {key.value} is not recurring", code="invalid_plan")

        cached = self._cache.get(key)
        if cached:
            return cached

        with self._locks[key]:
            cached = self._cache.get(key)
            if cached:
                return cached

            external_id = _read_persisted(key)
            if external_id:
                self._cache[key] = external_id
                return external_id

            if self.creator is None:
                raise BillingDisabledError("Payment gateway is not configured")

            created_id = self.creator.create_plan(plan)
            external_id = self._persist(key, created_id)
            self._cache[key] = external_id
            return external_id

    def _persist(self, key: PlanKey, created_id: str) -> str:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(app_settings).values(
                        key=settings_key(key),
                        value=created_id,
                        category=SETTINGS_CATEGORY,
                    )
                )
        except IntegrityError:
            # Another process stored its plan first; use that one.
            winner = _read_persisted(key)
            logger.warning(
                "plans.create_race_lost",
                extra={"event_type": "plans.create_race_lost"},
            )
            if winner:
                return winner
            raise
        log_event("info", "plans.external_plan_created", event_type="plans.external_plan_created",
                  extra={"plan": key.value, "external_plan_id": created_id})
        return created_id

    def list_plans(self) -> List[Dict[str, Any]]:
        plans = []
        for key, plan in PLANS.items():
            frequency = plan.billing_frequency
            plans.append({
                "id": key.value,
                "name": plan.display_name,
                "description": plan.description,
                "price": float(plan.price),
                "recurring": plan.is_recurring,
                "frequency": {"count": frequency.count, "unit": frequency.unit} if frequency else None,
                "external_plan_id": self.known_external_plan_id(key) if plan.is_recurring else None,
            })
        return plans

    def setup_plans(self) -> Dict[str, Optional[str]]:
        """Make sure every recurring plan exists at the gateway; failures are logged."""
        result: Dict[str, Optional[str]] = {}
        for key, plan in PLANS.items():
            if not plan.is_recurring:
                continue
            try:
                result[key.value] = self.resolve_external_plan_id(key)
            except AppError as exc:
                result[key.value] = None
                logger.warning("plans.setup_failed", extra={"error_code": exc.code, "event_type": "plans.setup_failed"})
        return result
