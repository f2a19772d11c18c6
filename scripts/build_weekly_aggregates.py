#!/usr/bin/env python3
"""
Build planner and regional weekly aggregates for the week containing a date.

Usage:
    python scripts/build_weekly_aggregates.py [--week-ending YYYY-MM-DD] [--regions-only]
"""
from pathlib import Path
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from vegsync.db import get_conn, migrate
from vegsync.config import settings
from vegsync.logging import setup_logging
from vegsync.pipeline.weekly import build_weekly_aggregates

def main():
    import argparse
    p = argparse.ArgumentParser(description="Build weekly aggregates.")
    p.add_argument("--week-ending", default=None, help="Any date in the target week (default: current week)")
    p.add_argument("--regions-only", action="store_true", help="Skip planner weekly rows")
    args = p.parse_args()

    setup_logging()
    conn = get_conn(settings.db_path)
    migrate(conn)
    result = build_weekly_aggregates(conn, week_ending=args.week_ending, include_planners=not args.regions_only)
    print(
        f"Week {result['week_starting']}..{result['week_ending']}: "
        f"{result['regions_processed']} regions, {result['planners_processed']} planners"
    )

if __name__ == '__main__':
    main()
