"""
Payment gateway webhook API.

- POST /webhooks/payment-gateway: acknowledge and reconcile in the background

The sender only cares about 200; processing errors never reach the response.
A bad signature is rejected with 401 when MP_WEBHOOK_SIGNATURE_REQUIRED is set.
"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request

from mywallet.api.deps import get_billing_services
from mywallet.core.config import settings
from mywallet.core.errors import UnauthorizedError
from mywallet.core.metrics import webhook_events_total
from mywallet.features.billing.service import BillingServices
from mywallet.features.billing.webhooks import verify_signature

logger = logging.getLogger("mywallet")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: BillingServices = Depends(get_billing_services),
    x_signature: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    data_id = data.get("id") or request.query_params.get("data.id")

    valid = verify_signature(settings.MP_WEBHOOK_SECRET, x_signature, x_request_id, data_id)
    if not valid:
        if settings.MP_WEBHOOK_SIGNATURE_REQUIRED:
            webhook_events_total.inc({"type": str(payload.get("type") or "unknown"), "outcome": "rejected"})
            raise UnauthorizedError("Invalid webhook signature", code="invalid_signature")
        logger.warning("webhook.signature_not_verified", extra={"event_type": payload.get("type")})

    logger.info(
        f"webhook.received type={payload.get('type')} action={payload.get('action')}",
        extra={"event_type": payload.get("type")},
    )
    background_tasks.add_task(services.reconciler.process, payload)
    return {"received": True}


router.add_api_route("/payment-gateway", receive_webhook, methods=["POST"])
