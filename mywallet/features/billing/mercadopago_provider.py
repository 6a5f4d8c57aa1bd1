"""
Mercado Pago gateway implementation.

Implements the PaymentGateway protocol over the Mercado Pago REST API with
httpx. Every call is bounded by the configured timeout and is never retried;
webhook redelivery is the retry mechanism for asynchronous flows.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from mywallet.core.database import get_db_session
from mywallet.core.errors import BillingDisabledError, GatewayError, GatewayUnavailable, ValidationError
from mywallet.core.metrics import gateway_requests_total
from mywallet.features.billing.provider import ChargeResult, Payer, RecurringChargeResult
from mywallet.features.billing.references import KIND_PREFERENCE, KIND_SUBSCRIPTION, create_reference
from mywallet.models.plan import PLANS, Plan, parse_plan_key

logger = logging.getLogger("mywallet")

GENERIC_ERROR_MESSAGE = "Payment gateway request failed"


def _gateway_message(response: httpx.Response) -> str:
    """Human-readable message from an error body: message, else cause[0].description."""
    try:
        body = response.json()
    except ValueError:
        return GENERIC_ERROR_MESSAGE
    if not isinstance(body, dict):
        return GENERIC_ERROR_MESSAGE
    message = body.get("message")
    if isinstance(message, str) and message.strip():
        return message
    cause = body.get("cause")
    if isinstance(cause, list) and cause and isinstance(cause[0], dict):
        description = cause[0].get("description")
        if isinstance(description, str) and description.strip():
            return description
    return GENERIC_ERROR_MESSAGE


class MercadoPagoProvider:
    """Mercado Pago implementation of the PaymentGateway protocol."""

    def __init__(
        self,
        access_token: Optional[str],
        *,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 12.0,
        currency: str = "BRL",
        start_delay_minutes: int = 60,
        frontend_url: str = "http://localhost:3000",
        backend_url: str = "http://localhost:8000",
        plan_registry=None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            access_token: Mercado Pago access token
            plan_registry: PlanRegistry used to resolve recurring plan ids
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not access_token:
            raise BillingDisabledError("MP_ACCESS_TOKEN not configured")
        if start_delay_minutes <= 0:
            raise ValueError("start_delay_minutes must be positive")

        self.currency = currency
        self.start_delay = timedelta(minutes=start_delay_minutes)
        self.frontend_url = frontend_url.rstrip("/")
        self.backend_url = backend_url.rstrip("/")
        self.plan_registry = plan_registry
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, operation: str, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {}
        if method == "POST":
            headers["X-Idempotency-Key"] = str(uuid.uuid4())
        try:
            response = self._client.request(method, path, json=body, headers=headers)
        except httpx.TimeoutException:
            gateway_requests_total.inc({"operation": operation, "outcome": "timeout"})
            logger.warning("gateway.timeout", extra={"event_type": f"gateway.{operation}"})
            raise GatewayUnavailable("Payment gateway timed out")
        except httpx.TransportError as exc:
            gateway_requests_total.inc({"operation": operation, "outcome": "unavailable"})
            logger.warning(f"gateway.unavailable: {exc}", extra={"event_type": f"gateway.{operation}"})
            raise GatewayUnavailable("Payment gateway unavailable")

        if not response.is_success:
            gateway_requests_total.inc({"operation": operation, "outcome": "error"})
            message = _gateway_message(response)
            logger.warning(
                f"gateway.error status={response.status_code} message={message}",
                extra={"event_type": f"gateway.{operation}", "error_code": "gateway_error"},
            )
            raise GatewayError(message, gateway_status=response.status_code)

        gateway_requests_total.inc({"operation": operation, "outcome": "ok"})
        try:
            return response.json()
        except ValueError:
            return {}

    def _plan(self, plan_key) -> Plan:
        key = parse_plan_key(plan_key)
        if key is None:
            raise ValidationError(f"Unknown plan: {plan_key}", code="invalid_plan")
        return PLANS[key]

    def _auto_recurring(self, plan: Plan) -> Dict[str, Any]:
        return {
            "frequency": plan.billing_frequency.count,
            "frequency_type": plan.billing_frequency.unit,
            "transaction_amount": float(plan.price),
            "currency_id": self.currency,
        }

    def _new_reference(self, payer: Payer, plan: Plan, kind: str) -> str:
        with get_db_session() as session:
            return create_reference(session, payer.user_id, plan.id, kind)

    def create_plan(self, plan: Plan) -> str:
        if not plan.is_recurring:
            raise ValidationError(f"Plan {plan.id.value} is not recurring", code="invalid_plan")
        data = self._request("create_plan", "POST", "/preapproval_plan", {
            "reason": f"MyWallet - {plan.display_name}",
            "auto_recurring": self._auto_recurring(plan),
            "back_url": f"{self.frontend_url}/checkout?status=success",
        })
        plan_id = data.get("id")
        if not plan_id:
            raise GatewayError("Payment gateway returned no plan id")
        return str(plan_id)

    def create_one_time_charge(self, plan_key, payer: Payer, reference: Optional[str] = None) -> ChargeResult:
        plan = self._plan(plan_key)
        reference = reference or self._new_reference(payer, plan, KIND_PREFERENCE)
        payer_body = {"email": payer.email} if payer.email else {}
        if payer.name:
            payer_body["name"] = payer.name
        data = self._request("create_one_time_charge", "POST", "/checkout/preferences", {
            "items": [{
                "id": plan.id.value,
                "title": f"MyWallet - {plan.display_name}",
                "description": plan.description,
                "quantity": 1,
                "currency_id": self.currency,
                "unit_price": float(plan.price),
            }],
            "payer": payer_body,
            "back_urls": {
                "success": f"{self.frontend_url}/checkout?status=success",
                "failure": f"{self.frontend_url}/checkout?status=failure",
                "pending": f"{self.frontend_url}/checkout?status=pending",
            },
            "auto_return": "approved",
            "notification_url": f"{self.backend_url}/webhooks/payment-gateway",
            "external_reference": reference,
            "statement_descriptor": "MYWALLET",
        })
        if not data.get("id"):
            raise GatewayError("Payment gateway returned no preference id")
        return ChargeResult(
            charge_id=str(data["id"]),
            redirect_url=data.get("init_point") or data.get("sandbox_init_point") or "",
            reference=reference,
        )

    def create_recurring_charge(
        self,
        plan_key,
        payer: Payer,
        payment_token: Optional[str],
        reference: Optional[str] = None,
    ) -> RecurringChargeResult:
        if not payment_token:
            raise ValidationError("card_token_id is required for recurring plans", code="missing_payment_token")
        plan = self._plan(plan_key)
        if not plan.is_recurring:
            raise ValidationError(f"Plan {plan.id.value} is not recurring", code="invalid_plan")
        if self.plan_registry is None:
            raise BillingDisabledError("Plan registry not configured")

        external_plan_id = self.plan_registry.resolve_external_plan_id(plan.id)
        reference = reference or self._new_reference(payer, plan, KIND_SUBSCRIPTION)

        # Start time is always in the future.
        start_date = datetime.now(timezone.utc) + self.start_delay
        auto_recurring = self._auto_recurring(plan)
        auto_recurring["start_date"] = start_date.isoformat(timespec="milliseconds")

        body: Dict[str, Any] = {
            "preapproval_plan_id": external_plan_id,
            "reason": f"MyWallet - {plan.display_name}",
            "external_reference": reference,
            "payer_email": payer.email,
            "card_token_id": payment_token,
            "auto_recurring": auto_recurring,
            "back_url": f"{self.frontend_url}/checkout?status=success",
            "status": "authorized",
        }
        first_name, last_name = payer.split_name()
        if first_name:
            body["payer"] = {
                "name": first_name,
                "surname": last_name or first_name,
                "email": payer.email,
            }

        data = self._request("create_recurring_charge", "POST", "/preapproval", body)
        if not data.get("id"):
            raise GatewayError("Payment gateway returned no subscription id")
        return RecurringChargeResult(
            subscription_id=str(data["id"]),
            status=data.get("status") or "pending",
            reference=reference,
        )

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("get_subscription", "GET", f"/preapproval/{subscription_id}")

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._request("get_payment", "GET", f"/v1/payments/{payment_id}")

    def _set_subscription_status(self, operation: str, subscription_id: str, status: str) -> Dict[str, Any]:
        return self._request(operation, "PUT", f"/preapproval/{subscription_id}", {"status": status})

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._set_subscription_status("cancel_subscription", subscription_id, "cancelled")

    def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._set_subscription_status("pause_subscription", subscription_id, "paused")

    def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._set_subscription_status("resume_subscription", subscription_id, "authorized")
