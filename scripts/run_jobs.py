#!/usr/bin/env python3
"""
Scheduled jobs (cron / platform job runner).

Usage:
    python scripts/run_jobs.py contracts-remind [--today YYYY-MM-DD]
    python scripts/run_jobs.py email-outbox [--limit 50]
    python scripts/run_jobs.py evaluations-summarize [--period YYYY-MM]
    python scripts/run_jobs.py evaluations-remind [--today YYYY-MM-DD] [--limit 50]

Each job runs inside one transaction and prints a JSON summary.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def contracts_remind(s, args) -> dict:
    from app.procurement.modules.contracts.service import expire_contracts, send_expiry_reminders
    from app.procurement.utils import parse_date

    today = parse_date(args.today) if args.today else None
    result = send_expiry_reminders(s, today)
    result["expired"] = expire_contracts(s, today)
    return result


def email_outbox(s, args) -> dict:
    from app.procurement.modules.notifications.service import process_outbox

    return process_outbox(s, limit=args.limit)


def evaluations_summarize(s, args) -> dict:
    from app.procurement.modules.evaluations.service import current_period, run_summaries, summary_to_dict

    period = args.period or current_period()
    rows = run_summaries(s, period)
    return {"period": period, "summaries": [summary_to_dict(r) for r in rows]}


def evaluations_remind(s, args) -> dict:
    from app.procurement.modules.evaluations.service import send_evaluation_reminders
    from app.procurement.utils import parse_date

    today = parse_date(args.today) if args.today else None
    return send_evaluation_reminders(s, today, limit=args.limit)


JOBS = {
    "contracts-remind": contracts_remind,
    "email-outbox": email_outbox,
    "evaluations-remind": evaluations_remind,
    "evaluations-summarize": evaluations_summarize,
}


def main(argv: list[str] | None = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Run a scheduled procurement job")
    parser.add_argument("job", choices=sorted(JOBS))
    parser.add_argument("--today", help="Reference date for contracts-remind and evaluations-remind (YYYY-MM-DD)")
    parser.add_argument("--limit", type=int, default=50, help="Max rows for email-outbox and evaluations-remind")
    parser.add_argument("--period", help="Period for evaluations-summarize (YYYY-MM)")
    args = parser.parse_args(argv)

    from app.procurement import create_app
    from app.procurement.db import session_scope

    app = create_app()
    with app.app_context():
        with session_scope(app) as s:
            result = JOBS[args.job](s, args)
    print(json.dumps(result, default=str, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
