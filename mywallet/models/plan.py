"""
mywallet/models/plan.py

Billing plans sold through the payment gateway.

LIFETIME is a one-time charge and has no billing frequency; MONTHLY and
ANNUAL are recurring authorizations backed by a gateway plan record.
"""

from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict


class PlanKey(str, Enum):
    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"
    LIFETIME = "LIFETIME"


class BillingFrequency(BaseModel):
    """Gateway billing cadence, e.g. every 12 months."""
    model_config = ConfigDict(frozen=True)

    count: int
    unit: str = "months"


class Plan(BaseModel):
    """
    Plan represents a paid tier.

    external_plan_id is filled in from the plan registry once the gateway
    plan record exists.
    """
    model_config = ConfigDict(frozen=True)

    id: PlanKey
    display_name: str
    description: str
    price: Decimal
    billing_frequency: Optional[BillingFrequency] = None
    external_plan_id: Optional[str] = None

    @property
    def is_recurring(self) -> bool:
        return self.billing_frequency is not None


PLANS: Dict[PlanKey, Plan] = {
    PlanKey.MONTHLY: Plan(
        id=PlanKey.MONTHLY,
        display_name="Plano Mensal",
        description="Acesso completo ao MyWallet por 1 mês",
        price=Decimal("29.90"),
        billing_frequency=BillingFrequency(count=1, unit="months"),
    ),
    PlanKey.ANNUAL: Plan(
        id=PlanKey.ANNUAL,
        display_name="Plano Anual",
        description="Acesso completo ao MyWallet por 1 ano (2 meses grátis!)",
        price=Decimal("297.00"),
        billing_frequency=BillingFrequency(count=12, unit="months"),
    ),
    PlanKey.LIFETIME: Plan(
        id=PlanKey.LIFETIME,
        display_name="Acesso Vitalício",
        description="Acesso completo ao MyWallet para sempre",
        price=Decimal("997.00"),
    ),
}


def parse_plan_key(value) -> Optional[PlanKey]:
    """Return the PlanKey for value, or None when it names no plan."""
    if isinstance(value, PlanKey):
        return value
    try:
        return PlanKey(str(value).strip().upper())
    except ValueError:
        return None
