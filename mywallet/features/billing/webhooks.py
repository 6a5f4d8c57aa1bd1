"""
Payment gateway webhook reconciliation.

The HTTP layer acknowledges every notification before processing. Here each
event is re-fetched from the gateway (the notification body is never trusted
for state) and applied to the user's plan and payment history.

Idempotency: payment_history.external_payment_id is unique. A duplicate is
detected by a pre-check and, for concurrent redelivery, by the constraint
violation inside the activation transaction. Both are logged as already
processed.
"""
import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from mywallet.core.database import get_db_session, payment_history, users
from mywallet.core.errors import IdempotencyConflict
from mywallet.core.logging import log_event
from mywallet.core.metrics import webhook_events_total
from mywallet.features.billing.references import decode_reference
from mywallet.features.subscriptions.schedule import add_months
from mywallet.models.billing import GATEWAY_STATUS_MAP, PaymentStatus, UserSubscriptionStatus
from mywallet.models.plan import PLANS, PlanKey, parse_plan_key

logger = logging.getLogger("mywallet")

APPROVED = "approved"


class WebhookEventType(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION_PREAPPROVAL = "subscription_preapproval"
    SUBSCRIPTION_AUTHORIZED_PAYMENT = "subscription_authorized_payment"

    @classmethod
    def parse(cls, value) -> Optional["WebhookEventType"]:
        try:
            return cls(str(value))
        except ValueError:
            return None


def _parse_signature_header(x_signature: str) -> Dict[str, str]:
    parts = {}
    for part in x_signature.split(","):
        key, sep, value = part.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def verify_signature(
    secret: Optional[str],
    x_signature: Optional[str],
    x_request_id: Optional[str],
    data_id: Optional[Any],
) -> bool:
    """
    Verify the gateway's x-signature header ("ts=<unix>,v1=<hex hmac>").

    The signed manifest is "id:{data_id};request-id:{x_request_id};ts:{ts};"
    with data_id lower-cased, HMAC-SHA256 keyed by the webhook secret.
    """
    if not secret or not x_signature:
        return False
    parts = _parse_signature_header(x_signature)
    ts = parts.get("ts")
    provided = parts.get("v1")
    if not ts or not provided:
        return False

    manifest = ""
    if data_id is not None and str(data_id) != "":
        manifest += f"id:{str(data_id).lower()};"
    if x_request_id:
        manifest += f"request-id:{x_request_id};"
    manifest += f"ts:{ts};"

    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided, expected)


def calculate_expiration(plan_key, now: Optional[datetime] = None) -> Optional[datetime]:
    """Access expiry for a payment made at now; None for LIFETIME."""
    now = now or datetime.now(timezone.utc)
    key = parse_plan_key(plan_key)
    if key is None:
        return add_months(now, 1)
    frequency = PLANS[key].billing_frequency
    if frequency is None:
        return None
    return add_months(now, frequency.count)


def _amount(payment: Dict[str, Any], plan_key: Optional[PlanKey]) -> Decimal:
    try:
        return Decimal(str(payment["transaction_amount"]))
    except (KeyError, InvalidOperation, TypeError):
        if plan_key is not None:
            return PLANS[plan_key].price
        return Decimal("0")


def _payment_recorded(external_payment_id: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(payment_history.c.id).where(payment_history.c.external_payment_id == external_payment_id)
        ).fetchone()
    return row is not None


def _user_exists(user_id: str) -> bool:
    with get_db_session() as session:
        return session.execute(select(users.c.id).where(users.c.id == user_id)).fetchone() is not None


def _record_payment(user_id: str, payment_values: Dict[str, Any], user_values: Dict[str, Any]) -> None:
    """
    Insert the payment row and update the user in one transaction.

    Raises:
        IdempotencyConflict: external_payment_id already recorded
    """
    try:
        with get_db_session() as session:
            session.execute(insert(payment_history).values(id=str(uuid.uuid4()), user_id=user_id, **payment_values))
            session.execute(update(users).where(users.c.id == user_id).values(**user_values))
    except IntegrityError:
        raise IdempotencyConflict(f"Payment {payment_values['external_payment_id']} already recorded")


class WebhookReconciler:
    """
    Applies gateway notifications to local state.

    process() never raises: a malformed or failing event is logged and
    dropped, and the gateway's redelivery is the retry mechanism.
    """

    def __init__(self, provider):
        self.provider = provider
        self._handlers = {
            WebhookEventType.PAYMENT: self._handle_payment,
            WebhookEventType.SUBSCRIPTION_PREAPPROVAL: self._handle_subscription,
            WebhookEventType.SUBSCRIPTION_AUTHORIZED_PAYMENT: self._handle_recurring_payment,
        }

    def process(self, payload: Dict[str, Any]) -> str:
        """Process one notification; returns the outcome label."""
        raw_type = None
        outcome = "error"
        try:
            payload = payload if isinstance(payload, dict) else {}
            raw_type = payload.get("type") or payload.get("topic")
            event_type = WebhookEventType.parse(raw_type)
            data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
            data_id = data.get("id")

            if event_type is None:
                outcome = "ignored"
                logger.info(f"webhook.ignored type={raw_type}", extra={"event_type": "webhook.ignored"})
            elif data_id is None or str(data_id) == "":
                outcome = "invalid"
                logger.warning("webhook.missing_data_id", extra={"event_type": raw_type})
            elif self.provider is None:
                outcome = "billing_disabled"
                logger.warning("webhook.billing_disabled", extra={"event_type": raw_type})
            else:
                outcome = self._handlers[event_type](str(data_id))
        except Exception:
            outcome = "error"
            logger.exception("webhook.processing_failed", extra={"event_type": raw_type})

        webhook_events_total.inc({"type": str(raw_type or "unknown"), "outcome": outcome})
        return outcome

    def _handle_payment(self, payment_id: str) -> str:
        payment = self.provider.get_payment(payment_id)
        external_payment_id = str(payment.get("id") or payment_id)

        with get_db_session() as session:
            decoded = decode_reference(session, payment.get("external_reference"))
        if decoded is None:
            logger.warning("webhook.payment.invalid_reference", extra={"payment_id": external_payment_id})
            return "invalid_reference"
        user_id, plan_key = decoded
        plan_key = plan_key or PlanKey.LIFETIME

        if _payment_recorded(external_payment_id):
            logger.info("webhook.payment.already_processed", extra={"payment_id": external_payment_id})
            return "duplicate"

        if payment.get("status") != APPROVED:
            logger.info(
                f"webhook.payment.not_approved status={payment.get('status')}",
                extra={"payment_id": external_payment_id, "user_id": user_id},
            )
            return "not_approved"

        if not _user_exists(user_id):
            logger.warning("webhook.payment.unknown_user", extra={"payment_id": external_payment_id, "user_id": user_id})
            return "unknown_user"

        now = datetime.now(timezone.utc)
        try:
            _record_payment(
                user_id,
                {
                    "amount": _amount(payment, plan_key),
                    "status": PaymentStatus.APPROVED.value,
                    "method": payment.get("payment_method_id"),
                    "plan_type": plan_key.value,
                    "external_payment_id": external_payment_id,
                    "external_data": payment,
                    "paid_at": now,
                },
                {
                    "plan": plan_key.value,
                    "subscription_status": UserSubscriptionStatus.ACTIVE.value,
                    "subscription_expires_at": calculate_expiration(plan_key, now),
                },
            )
        except IdempotencyConflict:
            logger.info("webhook.payment.already_processed", extra={"payment_id": external_payment_id})
            return "duplicate"

        log_event("info", "billing.plan_activated", user_id=user_id, event_type="billing.plan_activated",
                  extra={"plan": plan_key.value, "payment_id": external_payment_id})
        return "processed"

    def _handle_subscription(self, subscription_id: str) -> str:
        subscription = self.provider.get_subscription(subscription_id)
        external_subscription_id = str(subscription.get("id") or subscription_id)

        with get_db_session() as session:
            decoded = decode_reference(session, subscription.get("external_reference"))
        if decoded is None:
            logger.warning("webhook.subscription.invalid_reference", extra={"subscription_id": external_subscription_id})
            return "invalid_reference"
        user_id, plan_key = decoded

        status = GATEWAY_STATUS_MAP.get(subscription.get("status"), UserSubscriptionStatus.INACTIVE)
        values = {
            "subscription_status": status.value,
            "subscription_id": external_subscription_id,
        }
        if status == UserSubscriptionStatus.ACTIVE and plan_key is not None:
            values["plan"] = plan_key.value

        with get_db_session() as session:
            result = session.execute(update(users).where(users.c.id == user_id).values(**values))
        if result.rowcount == 0:
            logger.warning("webhook.subscription.unknown_user", extra={"user_id": user_id})
            return "unknown_user"

        log_event("info", "billing.subscription_status_changed", user_id=user_id,
                  event_type="billing.subscription_status_changed",
                  extra={"status": status.value, "subscription_id": external_subscription_id})
        return "processed"

    def _handle_recurring_payment(self, payment_id: str) -> str:
        payment = self.provider.get_payment(payment_id)
        external_payment_id = str(payment.get("id") or payment_id)
        metadata = payment.get("metadata") if isinstance(payment.get("metadata"), dict) else {}
        subscription_id = metadata.get("preapproval_id") or payment.get("preapproval_id")
        if not subscription_id:
            logger.warning("webhook.recurring.missing_subscription", extra={"payment_id": external_payment_id})
            return "invalid"
        subscription_id = str(subscription_id)

        with get_db_session() as session:
            user = session.execute(
                select(users.c.id, users.c.plan).where(users.c.subscription_id == subscription_id)
            ).fetchone()
        if user is None:
            logger.warning("webhook.recurring.unknown_subscription", extra={"subscription_id": subscription_id})
            return "unknown_user"

        if _payment_recorded(external_payment_id):
            logger.info("webhook.recurring.already_processed", extra={"payment_id": external_payment_id})
            return "duplicate"

        if payment.get("status") != APPROVED:
            logger.info(
                f"webhook.recurring.not_approved status={payment.get('status')}",
                extra={"payment_id": external_payment_id, "user_id": user.id},
            )
            return "not_approved"

        plan_key = parse_plan_key(user.plan)
        now = datetime.now(timezone.utc)
        try:
            _record_payment(
                user.id,
                {
                    "amount": _amount(payment, plan_key),
                    "status": PaymentStatus.APPROVED.value,
                    "method": payment.get("payment_method_id"),
                    "plan_type": user.plan,
                    "external_payment_id": external_payment_id,
                    "external_subscription_id": subscription_id,
                    "external_data": payment,
                    "paid_at": now,
                },
                {
                    "subscription_status": UserSubscriptionStatus.ACTIVE.value,
                    "subscription_expires_at": calculate_expiration(user.plan, now),
                },
            )
        except IdempotencyConflict:
            logger.info("webhook.recurring.already_processed", extra={"payment_id": external_payment_id})
            return "duplicate"

        log_event("info", "billing.recurring_payment_captured", user_id=user.id,
                  event_type="billing.recurring_payment_captured",
                  extra={"payment_id": external_payment_id, "subscription_id": subscription_id})
        return "processed"
