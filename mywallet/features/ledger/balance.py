"""
Bank account balance mutations.

Every flow that moves money (manual transactions, DAS payments, subscription
charges) changes balances through debit/credit here, inside the same session
that writes the originating ledger entry. The change is a single relative
UPDATE so concurrent debits never lose each other's writes.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Row
from sqlalchemy.orm import Session

from mywallet.core.database import bank_accounts
from mywallet.core.errors import AccountNotFound, ValidationError


def _apply_delta(db: Session, account_id: str, delta: Decimal) -> Row:
    result = db.execute(
        update(bank_accounts)
        .where(bank_accounts.c.id == account_id)
        .values(balance=bank_accounts.c.balance + delta)
    )
    if result.rowcount == 0:
        raise AccountNotFound(f"Bank account {account_id} not found")
    return db.execute(
        select(bank_accounts).where(bank_accounts.c.id == account_id)
    ).one()


def debit(db: Session, account_id: str, amount: Decimal) -> Row:
    """Subtract amount from the account balance; returns the updated row."""
    amount = Decimal(amount)
    if amount <= 0:
        raise ValidationError("Debit amount must be positive")
    return _apply_delta(db, account_id, -amount)


def credit(db: Session, account_id: str, amount: Decimal) -> Row:
    """Add amount to the account balance; returns the updated row."""
    amount = Decimal(amount)
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")
    return _apply_delta(db, account_id, amount)


def get_account(db: Session, account_id: str, user_id: str, profile_id: Optional[str]) -> Optional[Row]:
    """Fetch an account only if it belongs to the user/profile pair."""
    return db.execute(
        select(bank_accounts).where(
            bank_accounts.c.id == account_id,
            bank_accounts.c.user_id == user_id,
            bank_accounts.c.profile_id.is_(None) if profile_id is None else bank_accounts.c.profile_id == profile_id,
        )
    ).fetchone()
