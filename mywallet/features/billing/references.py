"""
Correlation references handed to the gateway as external_reference.

New references are opaque versioned tokens ("mw1:<token>") resolved through
the payment_references table, so nothing user-controlled is parsed out of
them. References created before the table existed ("<userId>:<PLAN>" or a
bare user id) are still decoded so old payments reconcile.
"""
import secrets
from typing import Optional, Tuple

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from mywallet.core.database import payment_references
from mywallet.models.plan import PlanKey, parse_plan_key

REFERENCE_PREFIX = "mw1:"

KIND_PREFERENCE = "preference"
KIND_SUBSCRIPTION = "subscription"


def create_reference(db: Session, user_id: str, plan_key: PlanKey, kind: str) -> str:
    reference = REFERENCE_PREFIX + secrets.token_urlsafe(16)
    db.execute(
        insert(payment_references).values(
            reference=reference,
            user_id=user_id,
            plan_key=plan_key.value,
            kind=kind,
        )
    )
    return reference


def decode_reference(db: Session, raw: Optional[str]) -> Optional[Tuple[str, Optional[PlanKey]]]:
    """
    Resolve a gateway external_reference to (user_id, plan_key).

    plan_key is None for a bare legacy user id. Returns None when the
    reference cannot be attributed to a user.
    """
    if not raw:
        return None
    raw = str(raw).strip()

    if raw.startswith(REFERENCE_PREFIX):
        row = db.execute(
            select(payment_references.c.user_id, payment_references.c.plan_key)
            .where(payment_references.c.reference == raw)
        ).fetchone()
        if row is None:
            return None
        return row.user_id, parse_plan_key(row.plan_key)

    if ":" in raw:
        user_id, _, plan_part = raw.rpartition(":")
        plan_key = parse_plan_key(plan_part)
        if not user_id or plan_key is None:
            return None
        return user_id, plan_key

    return raw, None
