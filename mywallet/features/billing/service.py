"""
Billing service orchestrator.

Business logic behind the /subscription API that coordinates:
- Plan listing
- Checkout (one-time) and recurring subscription creation
- Subscription status, cancellation and payment history

All Mercado Pago specific code is in mercadopago_provider.py. Activation
happens only in the webhook reconciler once the gateway confirms payment.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from mywallet.core.config import Settings, settings
from mywallet.core.database import get_db_session, payment_history, users
from mywallet.core.errors import BillingDisabledError, NotFoundError, ValidationError
from mywallet.core.logging import log_event
from mywallet.features.billing.mercadopago_provider import MercadoPagoProvider
from mywallet.features.billing.provider import Payer, PaymentGateway
from mywallet.features.billing.webhooks import WebhookReconciler
from mywallet.features.plans.service import PlanRegistry
from mywallet.models.billing import FREE_PLAN, UserSubscriptionStatus
from mywallet.models.plan import PLANS, PlanKey, parse_plan_key

logger = logging.getLogger("mywallet")


@dataclass
class BillingServices:
    """Billing collaborators built once at startup."""
    provider: Optional[PaymentGateway]
    plan_registry: PlanRegistry
    reconciler: WebhookReconciler

    def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            close()


def billing_enabled(cfg: Optional[Settings] = None) -> bool:
    """Check if billing is enabled (Mercado Pago token configured)."""
    return bool((cfg or settings).MP_ACCESS_TOKEN)


def build_billing_services(cfg: Optional[Settings] = None, transport=None) -> BillingServices:
    """Wire gateway, plan registry and reconciler; gateway is None when billing is disabled."""
    cfg = cfg or settings
    provider = None
    if billing_enabled(cfg):
        provider = MercadoPagoProvider(
            cfg.MP_ACCESS_TOKEN,
            base_url=cfg.MP_BASE_URL,
            timeout=cfg.MP_TIMEOUT_SECONDS,
            currency=cfg.MP_CURRENCY,
            start_delay_minutes=cfg.MP_SUBSCRIPTION_START_DELAY_MINUTES,
            frontend_url=cfg.FRONTEND_URL,
            backend_url=cfg.BACKEND_URL,
            transport=transport,
        )
    registry = PlanRegistry(provider)
    if provider is not None:
        provider.plan_registry = registry
    return BillingServices(provider=provider, plan_registry=registry, reconciler=WebhookReconciler(provider))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _load_user(user_id: str):
    with get_db_session() as session:
        user = session.execute(select(users).where(users.c.id == user_id)).fetchone()
    if user is None:
        raise NotFoundError("User not found", code="user_not_found")
    return user


def list_plans(registry: PlanRegistry, public_key: Optional[str] = None) -> Dict[str, Any]:
    return {"plans": registry.list_plans(), "public_key": public_key}


def subscribe(provider: Optional[PaymentGateway], user_id: str, plan_type, card_token_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Start a purchase of plan_type.

    LIFETIME creates a checkout preference; recurring plans create a gateway
    subscription and store its id on the user as INACTIVE until the webhook
    confirms it.

    Raises:
        ValidationError: unknown plan or missing card token
        BillingDisabledError: gateway not configured
        NotFoundError: user not found
        GatewayError / GatewayUnavailable: gateway failure
    """
    plan_key = parse_plan_key(plan_type)
    if plan_key is None:
        raise ValidationError(f"Unknown plan: {plan_type}", code="invalid_plan")
    if provider is None:
        raise BillingDisabledError("Payment gateway is not configured")

    user = _load_user(user_id)
    payer = Payer(user_id=user.id, email=user.email, name=user.name)

    if not PLANS[plan_key].is_recurring:
        charge = provider.create_one_time_charge(plan_key, payer)
        log_event("info", "billing.checkout_created", user_id=user_id, event_type="billing.checkout_created",
                  extra={"plan": plan_key.value, "preference_id": charge.charge_id})
        return {"type": "preference", "id": charge.charge_id, "init_point": charge.redirect_url}

    result = provider.create_recurring_charge(plan_key, payer, card_token_id)
    with get_db_session() as session:
        session.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(
                subscription_id=result.subscription_id,
                subscription_status=UserSubscriptionStatus.INACTIVE.value,
            )
        )
    log_event("info", "billing.subscription_created", user_id=user_id, event_type="billing.subscription_created",
              extra={"plan": plan_key.value, "subscription_id": result.subscription_id})
    return {"type": "subscription", "id": result.subscription_id, "status": result.status}


def get_status(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    user = _load_user(user_id)
    expires_at = _as_utc(user.subscription_expires_at)
    is_active = user.subscription_status == UserSubscriptionStatus.ACTIVE.value and (
        user.plan == PlanKey.LIFETIME.value or expires_at is None or expires_at > now
    )
    return {
        "plan": user.plan or FREE_PLAN,
        "status": user.subscription_status,
        "subscription_id": user.subscription_id,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "is_active": bool(is_active) and user.plan != FREE_PLAN,
    }


def cancel(provider: Optional[PaymentGateway], user_id: str) -> Dict[str, Any]:
    """
    Cancel the user's recurring subscription at the gateway and locally.

    Access stays until subscription_expires_at.
    """
    user = _load_user(user_id)
    if not user.subscription_id:
        raise NotFoundError("No active subscription to cancel", code="subscription_not_found")
    if provider is None:
        raise BillingDisabledError("Payment gateway is not configured")

    provider.cancel_subscription(user.subscription_id)
    with get_db_session() as session:
        session.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(subscription_status=UserSubscriptionStatus.CANCELLED.value)
        )
    log_event("info", "billing.subscription_cancelled", user_id=user_id, event_type="billing.subscription_cancelled",
              extra={"subscription_id": user.subscription_id})
    return get_status(user_id)


def get_history(user_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(payment_history)
            .where(payment_history.c.user_id == user_id)
            .order_by(payment_history.c.created_at.desc(), payment_history.c.paid_at.desc())
        ).fetchall()
    return [
        {
            "id": r.id,
            "amount": float(r.amount),
            "status": r.status,
            "method": r.method,
            "plan_type": r.plan_type,
            "external_payment_id": r.external_payment_id,
            "external_subscription_id": r.external_subscription_id,
            "paid_at": _as_utc(r.paid_at).isoformat() if r.paid_at else None,
        }
        for r in rows
    ]
