"""
Recurring subscription engine.

Owns the lifecycle of user-defined recurring expenses:
- Create / update / cancel
- Pending charge generation (idempotent per billing date)
- Payment marking (ledger entry + balance debit + next date, one transaction)
- Read-side summary, upcoming charges and alerts

Every query is scoped to the owning user/profile pair.
"""
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mywallet.core.auth import Owner
from mywallet.core.database import credit_cards, get_db_session, subscriptions
from mywallet.core.errors import AccountNotFound, ConflictError, NotFoundError, ValidationError
from mywallet.core.logging import log_event
from mywallet.core.metrics import subscription_charges_generated_total
from mywallet.features.audit.service import record_audit
from mywallet.features.ledger import balance as ledger_balance
from mywallet.features.ledger.entries import (
    LedgerEntry,
    create_entry,
    entry_exists,
    find_pending_in_month,
    settle_entry,
)
from mywallet.features.subscriptions.schedule import advance, annual_cost, monthly_cost
from mywallet.models.subscription import (
    SEVERITY_ORDER,
    AlertSeverity,
    AlertType,
    Frequency,
    Subscription,
    SubscriptionCategory,
    SubscriptionStatus,
)

logger = logging.getLogger("mywallet")

UPDATABLE_FIELDS = (
    "name",
    "description",
    "amount",
    "frequency",
    "category",
    "card_id",
    "bank_account_id",
    "auto_generate",
    "alert_days_before",
    "notes",
    "end_date",
)

# null clears these; for the other updatable fields null means unchanged
NULLABLE_FIELDS = ("description", "card_id", "bank_account_id", "notes", "end_date")

DEFAULT_ALERT_DAYS = 3
DEFAULT_UPCOMING_DAYS = 30
PAYMENT_MATCH_DAYS = 5


def _today() -> date:
    return datetime.now(timezone.utc).date()


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be greater than zero")
    return amount.quantize(Decimal("0.01"))


def _parse_frequency(value) -> Frequency:
    if value is None:
        return Frequency.MONTHLY
    try:
        return Frequency(str(value).upper())
    except ValueError:
        raise ValidationError(f"Invalid frequency: {value}")


def _parse_category(value) -> str:
    if not value:
        return SubscriptionCategory.OTHER.value
    try:
        return SubscriptionCategory(str(value).upper()).value
    except ValueError:
        raise ValidationError(f"Invalid category: {value}")


def _parse_date(value, field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)")


def _parse_alert_days(value) -> int:
    if value is None:
        return DEFAULT_ALERT_DAYS
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValidationError("alert_days_before must be an integer")
    if days < 0:
        raise ValidationError("alert_days_before must be >= 0")
    return days


def _parse_name(value) -> str:
    name = str(value).strip() if value is not None else ""
    if not name:
        raise ValidationError("name is required")
    return name


# ---------------------------------------------------------------------------
# Ownership helpers
# ---------------------------------------------------------------------------

def _profile_clause(table, owner: Owner):
    if owner.profile_id is None:
        return table.c.profile_id.is_(None)
    return table.c.profile_id == owner.profile_id


def _owned(table, owner: Owner):
    return and_(table.c.user_id == owner.user_id, _profile_clause(table, owner))


def _check_card(session, owner: Owner, card_id: Optional[str]):
    if not card_id:
        return None
    card = session.execute(
        select(credit_cards).where(and_(credit_cards.c.id == card_id, _owned(credit_cards, owner)))
    ).fetchone()
    if card is None:
        raise NotFoundError("Card not found", code="card_not_found")
    return card


def _check_account(session, owner: Owner, account_id: Optional[str]):
    if not account_id:
        return None
    account = ledger_balance.get_account(session, account_id, owner.user_id, owner.profile_id)
    if account is None:
        raise AccountNotFound(f"Bank account {account_id} not found")
    return account


def _load(session, owner: Owner, subscription_id: str, *, lock: bool = False) -> Subscription:
    stmt = select(subscriptions).where(
        and_(subscriptions.c.id == subscription_id, _owned(subscriptions, owner))
    )
    if lock:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).fetchone()
    if row is None:
        raise NotFoundError("Subscription not found", code="subscription_not_found")
    return Subscription.from_row(row)


def _move_next_billing_date(session, sub: Subscription, new_date: date) -> None:
    """Compare-and-set next_billing_date so two writers cannot book one cycle twice."""
    result = session.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.id == sub.id,
                subscriptions.c.next_billing_date == sub.next_billing_date,
            )
        )
        .values(next_billing_date=new_date)
    )
    if result.rowcount == 0:
        raise ConflictError("Subscription billing date changed concurrently")


def serialize_subscription(sub: Subscription, card=None) -> Dict[str, Any]:
    data = {
        "id": sub.id,
        "name": sub.name,
        "description": sub.description,
        "amount": float(sub.amount),
        "currency": sub.currency,
        "frequency": sub.frequency.value,
        "category": sub.category,
        "status": sub.status.value,
        "start_date": sub.start_date.isoformat(),
        "next_billing_date": sub.next_billing_date.isoformat(),
        "end_date": sub.end_date.isoformat() if sub.end_date else None,
        "monthly_cost": float(monthly_cost(sub.amount, sub.frequency)),
        "annual_cost": float(annual_cost(sub.amount, sub.frequency)),
        "auto_generate": sub.auto_generate,
        "alert_days_before": sub.alert_days_before,
        "card_id": sub.card_id,
        "bank_account_id": sub.bank_account_id,
        "notes": sub.notes,
    }
    if card is not None:
        data["card"] = {
            "id": card.id,
            "name": card.name,
            "brand": card.brand,
            "last_four_digits": card.last_four_digits,
        }
    return data


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def list_subscriptions(owner: Owner, status: Optional[str] = None, category: Optional[str] = None) -> List[Dict[str, Any]]:
    """List the owner's subscriptions ordered by next billing date."""
    stmt = (
        select(subscriptions, credit_cards.c.name.label("card_name"), credit_cards.c.brand.label("card_brand"),
               credit_cards.c.last_four_digits.label("card_last_four"))
        .select_from(subscriptions.outerjoin(credit_cards, subscriptions.c.card_id == credit_cards.c.id))
        .where(_owned(subscriptions, owner))
        .order_by(subscriptions.c.next_billing_date.asc())
    )
    if status:
        stmt = stmt.where(subscriptions.c.status == str(status).upper())
    if category:
        stmt = stmt.where(subscriptions.c.category == str(category).upper())

    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()

    result = []
    for row in rows:
        mapping = dict(row._mapping)
        card_info = {
            "name": mapping.pop("card_name"),
            "brand": mapping.pop("card_brand"),
            "last_four_digits": mapping.pop("card_last_four"),
        }
        mapping.pop("created_at", None)
        mapping.pop("updated_at", None)
        sub = Subscription(**mapping)
        data = serialize_subscription(sub)
        data["card"] = dict(card_info, id=sub.card_id) if sub.card_id else None
        result.append(data)
    return result


def get_subscription(owner: Owner, subscription_id: str) -> Subscription:
    with get_db_session() as session:
        return _load(session, owner, subscription_id)


def create_subscription(owner: Owner, data: Dict[str, Any], *, today: Optional[date] = None) -> Subscription:
    """
    Create a subscription and, when auto_generate is on, its first pending
    ledger entry dated at start_date.

    The first entry is booked in its own transaction after the subscription
    commits; if it fails the subscription stays and the error is logged.

    Raises:
        ValidationError: invalid amount, frequency, category or dates
        NotFoundError: card or bank account not owned by the caller
    """
    today = today or _today()
    name = _parse_name(data.get("name"))
    amount = _parse_amount(data.get("amount"))
    frequency = _parse_frequency(data.get("frequency"))
    category = _parse_category(data.get("category"))
    start_date = _parse_date(data.get("start_date"), "start_date") or today
    end_date = _parse_date(data.get("end_date"), "end_date")
    alert_days = _parse_alert_days(data.get("alert_days_before"))
    auto_generate = data.get("auto_generate") is not False
    card_id = data.get("card_id") or None
    bank_account_id = data.get("bank_account_id") or None

    if end_date and end_date < start_date:
        raise ValidationError("end_date cannot be before start_date")

    sub = Subscription(
        id=str(uuid.uuid4()),
        user_id=owner.user_id,
        profile_id=owner.profile_id,
        card_id=card_id,
        bank_account_id=bank_account_id,
        name=name,
        description=data.get("description"),
        amount=amount,
        currency=data.get("currency") or "BRL",
        frequency=frequency,
        category=category,
        status=SubscriptionStatus.ACTIVE,
        start_date=start_date,
        next_billing_date=advance(start_date, frequency),
        end_date=end_date,
        auto_generate=auto_generate,
        alert_days_before=alert_days,
        notes=data.get("notes"),
    )

    with get_db_session() as session:
        _check_card(session, owner, card_id)
        _check_account(session, owner, bank_account_id)
        values = sub.model_dump()
        values["frequency"] = sub.frequency.value
        values["status"] = sub.status.value
        session.execute(insert(subscriptions).values(**values))
        record_audit(
            session,
            action="SUBSCRIPTION_CREATE",
            resource="SUBSCRIPTION",
            user_id=owner.user_id,
            resource_id=sub.id,
            payload={"name": name, "amount": amount, "frequency": frequency.value},
        )

    if auto_generate:
        try:
            with get_db_session() as session:
                create_entry(session, sub, start_date, bank_account_id=bank_account_id)
        except SQLAlchemyError:
            logger.warning(
                "subscription.first_entry_failed",
                exc_info=True,
                extra={"user_id": owner.user_id, "subscription_id": sub.id},
            )

    log_event("info", "subscription.created", user_id=owner.user_id, event_type="subscription.created",
              extra={"subscription_id": sub.id})
    return sub


def update_subscription(owner: Owner, subscription_id: str, patch: Dict[str, Any]) -> Subscription:
    """
    Apply whitelisted fields from patch.

    A frequency change moves next_billing_date forward from the stored next
    billing date by the new frequency; past cycles are not recalculated.
    """
    changes: Dict[str, Any] = {}
    for field in UPDATABLE_FIELDS:
        if field not in patch:
            continue
        value = patch[field]
        if value is None and field not in NULLABLE_FIELDS:
            continue
        if field == "name":
            value = _parse_name(value)
        elif field == "amount":
            value = _parse_amount(value)
        elif field == "frequency":
            value = _parse_frequency(value)
        elif field == "category":
            value = _parse_category(value)
        elif field == "alert_days_before":
            value = _parse_alert_days(value)
        elif field == "end_date":
            value = _parse_date(value, "end_date")
        elif field == "auto_generate":
            value = bool(value)
        elif field in ("card_id", "bank_account_id"):
            value = value or None
        changes[field] = value

    with get_db_session() as session:
        current = _load(session, owner, subscription_id, lock=True)
        if "card_id" in changes:
            _check_card(session, owner, changes["card_id"])
        if "bank_account_id" in changes:
            _check_account(session, owner, changes["bank_account_id"])

        new_frequency = changes.get("frequency")
        if new_frequency is not None and new_frequency != current.frequency:
            changes["next_billing_date"] = advance(current.next_billing_date, new_frequency)

        if not changes:
            return current

        values = dict(changes)
        if "frequency" in values:
            values["frequency"] = values["frequency"].value
        session.execute(update(subscriptions).where(subscriptions.c.id == current.id).values(**values))
        record_audit(
            session,
            action="SUBSCRIPTION_UPDATE",
            resource="SUBSCRIPTION",
            user_id=owner.user_id,
            resource_id=current.id,
            payload={"previous": serialize_subscription(current), "changes": values},
        )
        return current.model_copy(update=changes)


def cancel_subscription(owner: Owner, subscription_id: str, *, today: Optional[date] = None) -> Subscription:
    """Cancel a subscription; cancelling a cancelled one changes nothing."""
    today = today or _today()
    with get_db_session() as session:
        current = _load(session, owner, subscription_id, lock=True)
        if current.status == SubscriptionStatus.CANCELLED:
            return current
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == current.id)
            .values(status=SubscriptionStatus.CANCELLED.value, end_date=today)
        )
        record_audit(
            session,
            action="SUBSCRIPTION_CANCEL",
            resource="SUBSCRIPTION",
            user_id=owner.user_id,
            resource_id=current.id,
        )
    return current.model_copy(update={"status": SubscriptionStatus.CANCELLED, "end_date": today})


# ---------------------------------------------------------------------------
# Charge generation and payment
# ---------------------------------------------------------------------------

def _due_clause(today: date):
    return and_(
        subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
        subscriptions.c.auto_generate.is_(True),
        subscriptions.c.next_billing_date <= today,
    )


def _generate_for_subscription(owner: Owner, subscription_id: str, today: date) -> List[LedgerEntry]:
    """Book every due cycle of one subscription inside one transaction."""
    created: List[LedgerEntry] = []
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(and_(subscriptions.c.id == subscription_id, _owned(subscriptions, owner), _due_clause(today)))
            .with_for_update()
        ).fetchone()
        if row is None:
            return created
        sub = Subscription.from_row(row)
        next_date = sub.next_billing_date
        while next_date <= today and (sub.end_date is None or next_date <= sub.end_date):
            if not entry_exists(session, sub.id, next_date):
                created.append(create_entry(session, sub, next_date, bank_account_id=sub.bank_account_id))
            next_date = advance(next_date, sub.frequency)
        if next_date != sub.next_billing_date:
            _move_next_billing_date(session, sub, next_date)
    return created


def generate_pending_charges(owner: Owner, *, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Create PENDING ledger entries for every due billing cycle of the owner's
    active auto-generating subscriptions.

    Safe to run repeatedly: a cycle already booked for (subscription, date)
    is skipped, and a concurrent run that books it first is treated as done.
    """
    today = today or _today()
    with get_db_session() as session:
        due_ids = [
            r.id for r in session.execute(
                select(subscriptions.c.id).where(and_(_owned(subscriptions, owner), _due_clause(today)))
            ).fetchall()
        ]

    generated: List[LedgerEntry] = []
    for subscription_id in due_ids:
        try:
            generated.extend(_generate_for_subscription(owner, subscription_id, today))
        except (IntegrityError, ConflictError):
            logger.info(
                "subscription.generate_skipped_concurrent",
                extra={"user_id": owner.user_id, "subscription_id": subscription_id},
            )

    if generated:
        subscription_charges_generated_total.inc(amount=len(generated))
        log_event("info", "subscription.charges_generated", user_id=owner.user_id,
                  event_type="subscription.charges_generated", extra={"count": len(generated)})

    return {
        "generated": len(generated),
        "transactions": [e.to_dict() for e in generated],
    }


def _pays_current_cycle(sub: Subscription, payment_date: date) -> bool:
    """A payment on or after the next billing date, or within a few days of it, settles that cycle."""
    return (
        payment_date >= sub.next_billing_date
        or abs((sub.next_billing_date - payment_date).days) <= PAYMENT_MATCH_DAYS
    )


def mark_paid(
    owner: Owner,
    subscription_id: str,
    *,
    payment_date: Optional[date] = None,
    bank_account_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record a payment of the current cycle.

    In one transaction: settle the month's pending entry (or create a paid
    entry dated payment_date), debit the paying account and, when the payment
    settles the upcoming cycle, advance next_billing_date. A cycle already
    booked by generate_pending_charges has moved the date forward, so paying
    it leaves the date alone. Any failure leaves nothing applied.

    The paying account is bank_account_id, else the subscription's account,
    else the account linked to its card.

    Raises:
        NotFoundError: subscription or account not found
        ValidationError: cancelled subscription or no account to debit
        ConflictError: this subscription already has an entry on payment_date
    """
    payment_date = _parse_date(payment_date, "payment_date") or _today()
    try:
        with get_db_session() as session:
            sub = _load(session, owner, subscription_id, lock=True)
            if sub.status == SubscriptionStatus.CANCELLED:
                raise ValidationError("Cancelled subscriptions cannot be paid")

            account_id = bank_account_id or sub.bank_account_id
            if bank_account_id:
                _check_account(session, owner, bank_account_id)
            if not account_id and sub.card_id:
                card = _check_card(session, owner, sub.card_id)
                account_id = card.bank_account_id
            if not account_id:
                raise ValidationError("No bank account to debit for this subscription")

            pending = find_pending_in_month(session, sub, payment_date)
            if pending is not None:
                entry = settle_entry(session, pending, payment_date, bank_account_id=account_id)
            else:
                entry = create_entry(session, sub, payment_date, paid=True, bank_account_id=account_id)

            account = ledger_balance.debit(session, account_id, sub.amount)

            new_next = sub.next_billing_date
            if _pays_current_cycle(sub, payment_date):
                new_next = advance(sub.next_billing_date, sub.frequency)
                _move_next_billing_date(session, sub, new_next)

            record_audit(
                session,
                action="SUBSCRIPTION_PAY",
                resource="SUBSCRIPTION",
                user_id=owner.user_id,
                resource_id=sub.id,
                payload={"transaction_id": entry.id, "bank_account_id": account_id},
            )
    except IntegrityError:
        raise ConflictError(f"Subscription already has a charge on {payment_date.isoformat()}")

    log_event("info", "subscription.paid", user_id=owner.user_id, event_type="subscription.paid",
              extra={"subscription_id": sub.id, "transaction_id": entry.id})
    paid = sub.model_copy(update={"next_billing_date": new_next})
    return {
        "transaction": entry.to_dict(),
        "subscription": serialize_subscription(paid),
        "account": {"id": account.id, "balance": float(account.balance)},
    }


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def _active(owner: Owner) -> List[Subscription]:
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions).where(
                and_(_owned(subscriptions, owner), subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            )
        ).fetchall()
    return [Subscription.from_row(r) for r in rows]


def get_summary(owner: Owner) -> Dict[str, Any]:
    """Monthly and annual cost of active subscriptions, total and per category."""
    subs = _active(owner)
    monthly_total = Decimal("0")
    yearly_total = Decimal("0")
    by_category: Dict[str, Dict[str, Any]] = {}

    for sub in subs:
        monthly = monthly_cost(sub.amount, sub.frequency)
        monthly_total += monthly
        yearly_total += annual_cost(sub.amount, sub.frequency)
        bucket = by_category.setdefault(sub.category, {"category": sub.category, "monthly": Decimal("0"), "count": 0})
        bucket["monthly"] += monthly
        bucket["count"] += 1

    categories = sorted(by_category.values(), key=lambda c: c["monthly"], reverse=True)
    return {
        "total_active": len(subs),
        "monthly_total": float(monthly_total),
        "yearly_total": float(yearly_total),
        "by_category": [
            {"category": c["category"], "monthly": float(c["monthly"]), "count": c["count"]}
            for c in categories
        ],
    }


def get_upcoming(owner: Owner, horizon_days: int = DEFAULT_UPCOMING_DAYS, *, today: Optional[date] = None) -> List[Dict[str, Any]]:
    """Active subscriptions billing between today and today + horizon_days."""
    if horizon_days < 0:
        raise ValidationError("days must be >= 0")
    today = today or _today()
    until = today + timedelta(days=horizon_days)
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions, credit_cards.c.name.label("card_name"), credit_cards.c.brand.label("card_brand"),
                   credit_cards.c.last_four_digits.label("card_last_four"))
            .select_from(subscriptions.outerjoin(credit_cards, subscriptions.c.card_id == credit_cards.c.id))
            .where(
                and_(
                    _owned(subscriptions, owner),
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    subscriptions.c.next_billing_date >= today,
                    subscriptions.c.next_billing_date <= until,
                )
            )
            .order_by(subscriptions.c.next_billing_date.asc())
        ).fetchall()

    return [
        {
            "id": r.id,
            "name": r.name,
            "amount": float(r.amount),
            "next_billing_date": r.next_billing_date.isoformat(),
            "days_until": (r.next_billing_date - today).days,
            "card": {
                "name": r.card_name,
                "brand": r.card_brand,
                "last_four_digits": r.card_last_four,
            } if r.card_id else None,
        }
        for r in rows
    ]


def get_alerts(owner: Owner, *, today: Optional[date] = None) -> List[Dict[str, Any]]:
    """
    Alerts for active subscriptions, HIGH first:
    - UPCOMING_CHARGE when the charge is within the subscription's own
      alert_days_before (HIGH if due in <= 1 day, else MEDIUM)
    - NO_CARD_ASSIGNED (LOW) for auto-generating subscriptions without a card
    """
    today = today or _today()
    alerts: List[Dict[str, Any]] = []
    for sub in _active(owner):
        days_until = (sub.next_billing_date - today).days
        if 0 <= days_until <= sub.alert_days_before:
            alerts.append({
                "type": AlertType.UPCOMING_CHARGE.value,
                "severity": (AlertSeverity.HIGH if days_until <= 1 else AlertSeverity.MEDIUM).value,
                "subscription_id": sub.id,
                "name": sub.name,
                "amount": float(sub.amount),
                "days_until": days_until,
                "message": (
                    f"{sub.name} será cobrado hoje" if days_until == 0
                    else f"{sub.name} será cobrado em {days_until} dia(s)"
                ),
            })
        if sub.auto_generate and not sub.card_id:
            alerts.append({
                "type": AlertType.NO_CARD_ASSIGNED.value,
                "severity": AlertSeverity.LOW.value,
                "subscription_id": sub.id,
                "name": sub.name,
                "message": f"{sub.name} não tem cartão associado",
            })

    return sorted(alerts, key=lambda a: SEVERITY_ORDER[AlertSeverity(a["severity"])])
