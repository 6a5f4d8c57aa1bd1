"""Daily worker: book pending ledger entries for due recurring subscriptions."""
from __future__ import annotations

import argparse
from datetime import date

from mywallet.core.config import settings
from mywallet.core.logging import configure_logging
from mywallet.features.subscriptions.generate_job import run_generate_job


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate pending charges for due subscriptions.")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Billing day (YYYY-MM-DD), default today.")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    report = run_generate_job(today=args.date)
    print(report)
    return 0 if report["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
