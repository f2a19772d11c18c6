import json, sqlite3
from ..utils import now_utc, now_utc_iso, parse_iso

SYNC_TYPES = ("circuit_list", "aggregates", "full")
SYNC_TRIGGERS = ("scheduled", "manual", "workflow_event")
SYNC_COUNTERS = (
    "circuits_processed",
    "circuits_created",
    "circuits_updated",
    "aggregates_created",
    "snapshots_created",
)

def start_sync_log(
    conn: sqlite3.Connection,
    run_id: str,
    sync_type: str = "full",
    trigger: str = "scheduled",
    statuses: list[str] | None = None,
    triggered_by=None,
    context: dict | None = None,
):
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"unknown sync type: {sync_type}")
    if trigger not in SYNC_TRIGGERS:
        raise ValueError(f"unknown sync trigger: {trigger}")
    conn.execute(
        """
        INSERT INTO sync_logs(
          run_id, sync_type, sync_status, sync_trigger, api_status_filter, triggered_by,
          started_at_utc, context_json
        ) VALUES(?,?,?,?,?,?,?,?)
        """,
        (
            run_id,
            sync_type,
            "started",
            trigger,
            ",".join(statuses) if statuses else None,
            None if triggered_by is None else str(triggered_by),
            now_utc_iso(),
            json.dumps(context) if context else None,
        ),
    )

def _duration_seconds(conn: sqlite3.Connection, run_id: str) -> int | None:
    row = conn.execute("SELECT started_at_utc FROM sync_logs WHERE run_id=?", (run_id,)).fetchone()
    started = parse_iso(row[0]) if row else None
    if started is None:
        return None
    return int((now_utc() - started).total_seconds())

def finish_sync_log(
    conn: sqlite3.Connection,
    run_id: str,
    status: str = "completed",
    counters: dict | None = None,
    error_message: str | None = None,
    error_details: dict | None = None,
) -> bool:
    """Finalize a started log once; returns False if it was already finalized."""
    counters = counters or {}
    cur = conn.execute(
        """
        UPDATE sync_logs SET
          sync_status=?, completed_at_utc=?, duration_seconds=?,
          circuits_processed=?, circuits_created=?, circuits_updated=?,
          aggregates_created=?, snapshots_created=?,
          error_message=?, error_details_json=?
        WHERE run_id=? AND sync_status='started'
        """,
        (
            status,
            now_utc_iso(),
            _duration_seconds(conn, run_id),
            *[int(counters.get(k) or 0) for k in SYNC_COUNTERS],
            error_message[:1000] if error_message else None,
            json.dumps(error_details, default=str) if error_details else None,
            run_id,
        ),
    )
    return cur.rowcount == 1

def fail_sync_log(conn: sqlite3.Connection, run_id: str, err: str, counters: dict | None = None, details: dict | None = None) -> bool:
    return finish_sync_log(conn, run_id, "failed", counters, error_message=err, error_details=details)

def _row_to_log(row) -> dict:
    out = dict(row)
    for key in ("error_details_json", "context_json"):
        out[key] = json.loads(out[key]) if out.get(key) else None
    return out

def get_sync_log(conn: sqlite3.Connection, run_id: str) -> dict | None:
    row = conn.execute("SELECT * FROM sync_logs WHERE run_id=?", (run_id,)).fetchone()
    return _row_to_log(row) if row else None

def list_sync_logs(conn: sqlite3.Connection, limit: int = 50, status: str | None = None) -> list[dict]:
    if status:
        rows = conn.execute(
            "SELECT * FROM sync_logs WHERE sync_status=? ORDER BY started_at_utc DESC LIMIT ?",
            (status, int(limit)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM sync_logs ORDER BY started_at_utc DESC LIMIT ?", (int(limit),)
        ).fetchall()
    return [_row_to_log(r) for r in rows]
