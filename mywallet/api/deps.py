"""Shared FastAPI dependencies."""
from fastapi import Request

from mywallet.features.billing.service import BillingServices, build_billing_services


def get_billing_services(request: Request) -> BillingServices:
    """Billing collaborators built at startup (built lazily if lifespan did not run)."""
    services = getattr(request.app.state, "billing", None)
    if services is None:
        services = build_billing_services()
        request.app.state.billing = services
    return services
