"""
mywallet/models/subscription.py

Internal recurring expenses (streaming, software, gym, ...) tracked per
user/profile. Not to be confused with the gateway's recurring authorization.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Frequency(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMI_ANNUAL = "SEMI_ANNUAL"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class SubscriptionCategory(str, Enum):
    STREAMING = "STREAMING"
    SOFTWARE = "SOFTWARE"
    GAMING = "GAMING"
    EDUCATION = "EDUCATION"
    HEALTH = "HEALTH"
    FITNESS = "FITNESS"
    NEWS = "NEWS"
    STORAGE = "STORAGE"
    MUSIC = "MUSIC"
    UTILITIES = "UTILITIES"
    INSURANCE = "INSURANCE"
    OTHER = "OTHER"


class Subscription(BaseModel):
    """
    Subscription as stored.

    Invariants:
    - next_billing_date is reached by advancing frequency from the previous
      billing date
    - status CANCELLED implies end_date is set and no more charges are generated
    """
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    profile_id: Optional[str] = None
    card_id: Optional[str] = None
    bank_account_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    amount: Decimal = Field(gt=0)
    currency: str = "BRL"
    frequency: Frequency = Frequency.MONTHLY
    category: str = SubscriptionCategory.OTHER.value
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: date
    next_billing_date: date
    end_date: Optional[date] = None
    auto_generate: bool = True
    alert_days_before: int = Field(default=3, ge=0)
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Subscription":
        data = dict(row._mapping)
        data.pop("created_at", None)
        data.pop("updated_at", None)
        return cls(**data)


class AlertType(str, Enum):
    UPCOMING_CHARGE = "UPCOMING_CHARGE"
    NO_CARD_ASSIGNED = "NO_CARD_ASSIGNED"


class AlertSeverity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


SEVERITY_ORDER = {AlertSeverity.HIGH: 0, AlertSeverity.MEDIUM: 1, AlertSeverity.LOW: 2}
