"""
Ledger entries generated by recurring subscriptions.

Card-linked subscriptions book CardTransactions (PENDING -> PAID); the rest
book ManualTransactions (PENDING -> COMPLETED) with source SUBSCRIPTION.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.orm import Session

from mywallet.core.database import card_transactions, manual_transactions
from mywallet.models.subscription import Subscription

CARD = "card"
MANUAL = "manual"

PENDING = "PENDING"
CARD_PAID = "PAID"
MANUAL_COMPLETED = "COMPLETED"


@dataclass
class LedgerEntry:
    id: str
    kind: str  # card | manual
    subscription_id: Optional[str]
    description: str
    amount: object
    date: date
    status: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "subscription_id": self.subscription_id,
            "description": self.description,
            "amount": float(self.amount),
            "date": self.date.isoformat(),
            "status": self.status,
        }


LEDGER_TABLES = ((card_transactions, CARD), (manual_transactions, MANUAL))


def _table_for_kind(kind: str):
    return card_transactions if kind == CARD else manual_transactions


def _entry_from_row(row, kind: str) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        kind=kind,
        subscription_id=row.subscription_id,
        description=row.description,
        amount=row.amount,
        date=row.date,
        status=row.status,
    )


def create_entry(
    db: Session,
    sub: Subscription,
    entry_date: date,
    *,
    paid: bool = False,
    bank_account_id: Optional[str] = None,
) -> LedgerEntry:
    """Insert the ledger entry for one billing cycle of sub."""
    entry_id = str(uuid.uuid4())
    if sub.card_id:
        status = CARD_PAID if paid else PENDING
        db.execute(
            insert(card_transactions).values(
                id=entry_id,
                user_id=sub.user_id,
                profile_id=sub.profile_id,
                card_id=sub.card_id,
                subscription_id=sub.id,
                description=sub.name,
                amount=sub.amount,
                date=entry_date,
                category=sub.category,
                is_recurring=True,
                recurring_frequency=sub.frequency.value,
                status=status,
            )
        )
        kind = CARD
    else:
        status = MANUAL_COMPLETED if paid else PENDING
        db.execute(
            insert(manual_transactions).values(
                id=entry_id,
                user_id=sub.user_id,
                profile_id=sub.profile_id,
                bank_account_id=bank_account_id,
                subscription_id=sub.id,
                type="EXPENSE",
                source="SUBSCRIPTION",
                description=sub.name,
                amount=sub.amount,
                date=entry_date,
                category=sub.category,
                is_recurring=True,
                status=status,
                notes=f"Assinatura: {sub.name}",
            )
        )
        kind = MANUAL
    return LedgerEntry(
        id=entry_id,
        kind=kind,
        subscription_id=sub.id,
        description=sub.name,
        amount=sub.amount,
        date=entry_date,
        status=status,
    )


def entry_exists(db: Session, subscription_id: str, entry_date: date) -> bool:
    """True when any ledger entry already books (subscription_id, entry_date)."""
    for table, _ in LEDGER_TABLES:
        row = db.execute(
            select(table.c.id).where(
                and_(table.c.subscription_id == subscription_id, table.c.date == entry_date)
            )
        ).first()
        if row is not None:
            return True
    return False


def find_pending_in_month(db: Session, sub: Subscription, day: date) -> Optional[LedgerEntry]:
    """
    The oldest PENDING entry of sub dated in the same month as day.

    Both ledgers are searched: the card link may have changed since the
    entry was booked.
    """
    month_start = day.replace(day=1)
    next_month = date(day.year + (day.month == 12), day.month % 12 + 1, 1)
    found = []
    for table, kind in LEDGER_TABLES:
        row = db.execute(
            select(table)
            .where(
                and_(
                    table.c.subscription_id == sub.id,
                    table.c.status == PENDING,
                    table.c.date >= month_start,
                    table.c.date < next_month,
                )
            )
            .order_by(table.c.date.asc())
            .limit(1)
        ).fetchone()
        if row is not None:
            found.append(_entry_from_row(row, kind))
    return min(found, key=lambda e: e.date) if found else None


def settle_entry(
    db: Session,
    entry: LedgerEntry,
    paid_on: date,
    *,
    bank_account_id: Optional[str] = None,
) -> LedgerEntry:
    """Mark a pending entry paid on paid_on, in the ledger it was booked in."""
    kind = entry.kind
    table = _table_for_kind(kind)
    status = CARD_PAID if kind == CARD else MANUAL_COMPLETED
    values = {"status": status, "date": paid_on}
    if kind == MANUAL and bank_account_id:
        values["bank_account_id"] = bank_account_id
    db.execute(update(table).where(table.c.id == entry.id).values(**values))
    return LedgerEntry(
        id=entry.id,
        kind=kind,
        subscription_id=entry.subscription_id,
        description=entry.description,
        amount=entry.amount,
        date=paid_on,
        status=status,
    )


def list_entries(db: Session, subscription_id: str) -> list[LedgerEntry]:
    entries = []
    for table, kind in LEDGER_TABLES:
        rows = db.execute(
            select(table).where(table.c.subscription_id == subscription_id).order_by(table.c.date.asc())
        ).fetchall()
        entries.extend(_entry_from_row(r, kind) for r in rows)
    return sorted(entries, key=lambda e: e.date)
