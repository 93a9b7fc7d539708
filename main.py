"""
Weekly quota reset sweep, for a system cron.

Run:
  python main.py                      # reset everything due as of now
  python main.py 2026-10-18T00:00:00  # reset as of a given UTC time

Safe to run at any frequency: records are only advanced once per elapsed week.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime

from lesson_core.database import SessionLocal, init_db
from lesson_core.services.quota import pending_reset_count, reset_due_quotas
from lesson_core.utils.clock import to_naive_utc, utcnow


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    arg = " ".join(sys.argv[1:]).strip()
    try:
        now = to_naive_utc(datetime.fromisoformat(arg)) if arg else utcnow()
    except ValueError:
        print('Usage: python main.py [ISO-8601 timestamp]', file=sys.stderr)
        return 2

    init_db()
    db = SessionLocal()
    try:
        pending = pending_reset_count(db, now)
        reset = reset_due_quotas(db, now)
    finally:
        db.close()
    print(f"Reset {reset} of {pending} due quota record(s) as of {now.isoformat()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
