"""
Subscription (MyWallet plan) API routes.

- GET  /subscription/plans: Plan catalog and gateway public key
- POST /subscription/subscribe: Start a LIFETIME checkout or a recurring subscription
- GET  /subscription/status: Current plan and access state
- POST /subscription/cancel: Cancel the recurring subscription
- GET  /subscription/history: Payment records, newest first
- POST /subscription/webhook: Alias of /webhooks/payment-gateway
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from mywallet.api.deps import get_billing_services
from mywallet.api.webhooks import receive_webhook
from mywallet.core.auth import get_current_user_id
from mywallet.core.config import settings
from mywallet.features.billing import service as billing_service
from mywallet.features.billing.service import BillingServices


router = APIRouter(prefix="/subscription", tags=["subscription"])


class SubscribeRequest(BaseModel):
    """Plan purchase; accepts camelCase keys from the web client."""
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str = Field(alias="planType")
    card_token_id: Optional[str] = Field(default=None, alias="cardTokenId")


@router.get("/plans")
def get_plans(services: BillingServices = Depends(get_billing_services)):
    return billing_service.list_plans(services.plan_registry, settings.MP_PUBLIC_KEY)


@router.post("/subscribe")
def subscribe(
    body: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Returns:
        {"type": "preference", "id", "init_point"} for LIFETIME
        {"type": "subscription", "id", "status"} for MONTHLY / ANNUAL

    Errors:
        400: Unknown plan or missing card token
        502/503: Gateway error / unavailable / billing disabled
    """
    return billing_service.subscribe(services.provider, user_id, body.plan_type, body.card_token_id)


@router.get("/status")
def get_status(user_id: str = Depends(get_current_user_id)):
    return billing_service.get_status(user_id)


@router.post("/cancel")
def cancel(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services),
):
    return billing_service.cancel(services.provider, user_id)


@router.get("/history")
def get_history(user_id: str = Depends(get_current_user_id)):
    return {"payments": billing_service.get_history(user_id)}


router.add_api_route("/webhook", receive_webhook, methods=["POST"])
