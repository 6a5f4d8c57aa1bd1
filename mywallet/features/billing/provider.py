"""
Payment gateway protocol.

Defines the interface the billing service and webhook reconciler depend on.
This allows swapping the gateway (or faking it in tests) without changing
business logic.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from mywallet.models.plan import Plan


@dataclass
class Payer:
    """Who is paying, as sent to the gateway."""
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None

    def split_name(self):
        """(first, last) from the full name; the first token is the first name."""
        parts = (self.name or "").split()
        if not parts:
            return "", ""
        return parts[0], " ".join(parts[1:])


@dataclass
class ChargeResult:
    """A one-time checkout created at the gateway."""
    charge_id: str
    redirect_url: str
    reference: Optional[str] = None


@dataclass
class RecurringChargeResult:
    """A recurring authorization created at the gateway."""
    subscription_id: str
    status: str
    reference: Optional[str] = None


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must:
    - Raise GatewayError for non-2xx responses (message passed through when readable)
    - Raise GatewayUnavailable for network failures and timeouts
    - Never retry
    """

    def create_plan(self, plan: Plan) -> str:
        """Create a recurring plan record; returns the gateway plan id."""
        ...

    def create_one_time_charge(self, plan_key, payer: Payer, reference: Optional[str] = None) -> ChargeResult:
        """
        Create a checkout for a single payment of the plan price.

        Args:
            plan_key: Plan being bought
            payer: Buyer identity
            reference: Correlation string echoed back on the payment;
                a new one is stored when omitted

        Raises:
            ValidationError: unknown plan
            GatewayError: gateway rejected the request
        """
        ...

    def create_recurring_charge(self, plan_key, payer: Payer, payment_token: Optional[str], reference: Optional[str] = None) -> RecurringChargeResult:
        """
        Create a recurring authorization against the plan's gateway record.

        Raises:
            ValidationError: payment_token missing or plan not recurring
            GatewayError: gateway rejected the request
        """
        ...

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        ...

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...

    def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...

    def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...
