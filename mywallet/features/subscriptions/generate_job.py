"""
Scheduled pending-charge generation.

Runs generate_pending_charges for every owner with a due subscription and
records a job run. The cadence is set by whatever scheduler calls it.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import and_, insert, select

from mywallet.core.auth import Owner
from mywallet.core.database import get_db_session, job_runs, subscriptions
from mywallet.features.subscriptions.service import generate_pending_charges
from mywallet.models.subscription import SubscriptionStatus

logger = logging.getLogger("mywallet")

JOB_NAME = "subscriptions.generate_pending"


def run_generate_job(today: Optional[date] = None) -> Dict[str, Any]:
    started = datetime.now(timezone.utc)
    today = today or started.date()

    with get_db_session() as session:
        owners = session.execute(
            select(subscriptions.c.user_id, subscriptions.c.profile_id)
            .where(
                and_(
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    subscriptions.c.auto_generate.is_(True),
                    subscriptions.c.next_billing_date <= today,
                )
            )
            .distinct()
        ).fetchall()

    generated = 0
    failed = 0
    for row in owners:
        owner = Owner(user_id=row.user_id, profile_id=row.profile_id)
        try:
            generated += generate_pending_charges(owner, today=today)["generated"]
        except Exception:
            failed += 1
            logger.exception("subscriptions.generate_job_owner_failed", extra={"user_id": owner.user_id})

    stats = {"owners": len(owners), "generated": generated, "failed": failed}
    with get_db_session() as session:
        session.execute(
            insert(job_runs).values(
                job_name=JOB_NAME,
                started_at=started,
                finished_at=datetime.now(timezone.utc),
                status="success" if failed == 0 else "partial",
                stats_json=json.dumps(stats),
            )
        )

    return dict(stats, date=today.isoformat())
