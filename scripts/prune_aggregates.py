#!/usr/bin/env python3
"""
Delete daily circuit, planner and regional aggregates older than the retention window.

Usage:
    python scripts/prune_aggregates.py [--days 365]
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
from vegsync.pipeline.storage import prune_old_aggregates

def main():
    import argparse
    p = argparse.ArgumentParser(description="Prune old daily aggregates.")
    p.add_argument("--days", type=int, default=settings.aggregate_retention_days, help="Days to keep")
    args = p.parse_args()

    setup_logging()
    conn = get_conn(settings.db_path)
    migrate(conn)
    counts = prune_old_aggregates(conn, days_to_keep=args.days)
    for table, deleted in counts.items():
        print(f"  {table}: {deleted} deleted")
    print(f"Total: {sum(counts.values())}")

if __name__ == '__main__':
    main()
