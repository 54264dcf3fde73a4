#!/usr/bin/env python3
"""
Backfill spend and ad performance for a range of past dates.

Past dates are write-once, so re-running a backfill never overwrites rows
that already exist; they are reported as skipped.

Run from backend directory:
  python scripts/backfill.py --start 2026-09-01 --end 2026-09-30

Spend only:
  python scripts/backfill.py --start 2026-09-01 --end 2026-09-30 --spend-only
"""

import asyncio
import argparse
import logging
import sys
from datetime import date, timedelta
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from adspend.database import async_session
from adspend.schemas import SyncCounters
from adspend.services.sync_service import create_pipeline

logging.basicConfig(level=logging.INFO)


def _date_range(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


async def main():
    parser = argparse.ArgumentParser(description="Backfill reconciled spend for a date range")
    parser.add_argument("--start", required=True, type=date.fromisoformat, help="First date (YYYY-MM-DD)")
    parser.add_argument("--end", required=True, type=date.fromisoformat, help="Last date (YYYY-MM-DD), inclusive")
    parser.add_argument("--spend-only", action="store_true", help="Only sync account-level spend")
    args = parser.parse_args()

    if args.start > args.end:
        parser.error("--start must not be after --end")

    pipeline = create_pipeline(async_session)
    total = SyncCounters()
    for day in _date_range(args.start, args.end):
        ds = day.isoformat()
        print(f"Syncing {ds}...")
        if args.spend_only:
            counters = await pipeline.run_spend_only(ds)
        else:
            counters = await pipeline.run(ds)
        print(f"  synced={counters.synced} skipped={counters.skipped} errors={counters.errors}")
        total.merge(counters)

    print("\n" + "=" * 60)
    print(f"Backfill complete: synced={total.synced} skipped={total.skipped} errors={total.errors}")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
