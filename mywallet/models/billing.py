"""
mywallet/models/billing.py

User subscription states and gateway payment statuses.
"""

from enum import Enum


FREE_PLAN = "FREE"


class UserSubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REFUNDED = "REFUNDED"


# Gateway recurring-authorization status -> user subscription status
GATEWAY_STATUS_MAP = {
    "authorized": UserSubscriptionStatus.ACTIVE,
    "pending": UserSubscriptionStatus.INACTIVE,
    "paused": UserSubscriptionStatus.INACTIVE,
    "cancelled": UserSubscriptionStatus.CANCELLED,
}
