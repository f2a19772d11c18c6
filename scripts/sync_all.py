from pathlib import Path
import os
import sys
import uuid

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from vegsync.logging import setup_logging
from vegsync.pipeline.orchestrator import run_sync

def main():
    import argparse
    p = argparse.ArgumentParser(description="Run one WorkStudio sync cycle in the foreground.")
    p.add_argument("--type", dest="sync_type", default="full", choices=["circuit_list", "aggregates", "full"])
    p.add_argument("--trigger", default="scheduled", choices=["scheduled", "manual", "workflow_event"])
    p.add_argument("--statuses", default=None, help="Comma-separated status codes, e.g. ACTIV,QC")
    p.add_argument("--circuit-id", dest="circuit_ids", type=int, action="append", help="Limit aggregates to these circuits")
    args = p.parse_args()

    setup_logging()
    statuses = [s.strip() for s in args.statuses.split(",") if s.strip()] if args.statuses else None
    run_id = str(uuid.uuid4())
    print('Run', run_id)
    result = run_sync(
        run_id,
        sync_type=args.sync_type,
        trigger=args.trigger,
        statuses=statuses,
        triggered_by="cli",
        circuit_ids=args.circuit_ids,
    )
    print('Done.', result['sync_status'], result.get('error_message') or '')

if __name__ == '__main__':
    main()
