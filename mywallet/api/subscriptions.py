"""
Recurring subscription (internal expense) API routes.

All routes act on the caller's user/profile pair.
"""
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, ConfigDict

from mywallet.core.auth import Owner, get_current_owner
from mywallet.features.subscriptions import service as subscriptions_service
from mywallet.features.subscriptions.service import serialize_subscription


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class SubscriptionCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    amount: Decimal
    description: Optional[str] = None
    currency: Optional[str] = None
    frequency: Optional[str] = None
    category: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    card_id: Optional[str] = None
    bank_account_id: Optional[str] = None
    auto_generate: Optional[bool] = None
    alert_days_before: Optional[int] = None
    notes: Optional[str] = None


class SubscriptionUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    frequency: Optional[str] = None
    category: Optional[str] = None
    card_id: Optional[str] = None
    bank_account_id: Optional[str] = None
    auto_generate: Optional[bool] = None
    alert_days_before: Optional[int] = None
    notes: Optional[str] = None
    end_date: Optional[date] = None


class PayRequest(BaseModel):
    payment_date: Optional[date] = None
    bank_account_id: Optional[str] = None


@router.get("")
def list_subscriptions(
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    owner: Owner = Depends(get_current_owner),
):
    return {"subscriptions": subscriptions_service.list_subscriptions(owner, status=status, category=category)}


@router.post("", status_code=201)
def create_subscription(body: SubscriptionCreate, owner: Owner = Depends(get_current_owner)):
    data = body.model_dump(exclude_none=True)
    sub = subscriptions_service.create_subscription(owner, data)
    return serialize_subscription(sub)


@router.get("/summary")
def get_summary(owner: Owner = Depends(get_current_owner)):
    return subscriptions_service.get_summary(owner)


@router.get("/upcoming")
def get_upcoming(days: int = Query(30, ge=0, le=366), owner: Owner = Depends(get_current_owner)):
    return {"upcoming": subscriptions_service.get_upcoming(owner, days)}


@router.get("/alerts")
def get_alerts(owner: Owner = Depends(get_current_owner)):
    return {"alerts": subscriptions_service.get_alerts(owner)}


@router.post("/generate")
def generate_pending(owner: Owner = Depends(get_current_owner)):
    """Create pending ledger entries for every due billing cycle; safe to repeat."""
    return subscriptions_service.generate_pending_charges(owner)


@router.get("/{subscription_id}")
def get_subscription(subscription_id: str, owner: Owner = Depends(get_current_owner)):
    return serialize_subscription(subscriptions_service.get_subscription(owner, subscription_id))


@router.put("/{subscription_id}")
def update_subscription(subscription_id: str, body: SubscriptionUpdate, owner: Owner = Depends(get_current_owner)):
    patch = body.model_dump(exclude_unset=True)
    sub = subscriptions_service.update_subscription(owner, subscription_id, patch)
    return serialize_subscription(sub)


@router.post("/{subscription_id}/cancel")
def cancel_subscription(subscription_id: str, owner: Owner = Depends(get_current_owner)):
    return serialize_subscription(subscriptions_service.cancel_subscription(owner, subscription_id))


@router.post("/{subscription_id}/pay")
def pay_subscription(
    subscription_id: str,
    body: Optional[PayRequest] = Body(None),
    owner: Owner = Depends(get_current_owner),
):
    body = body or PayRequest()
    return subscriptions_service.mark_paid(
        owner,
        subscription_id,
        payment_date=body.payment_date,
        bank_account_id=body.bank_account_id,
    )
