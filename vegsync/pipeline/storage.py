import json, sqlite3
from datetime import date, timedelta
import structlog
from ..config import settings
from ..db import transaction
from ..utils import now_utc_iso, as_date_str, local_today

log = structlog.get_logger()

CIRCUIT_MEASURES = (
    "total_units",
    "total_linear_ft",
    "total_acres",
    "total_trees",
    "units_approved",
    "units_refused",
    "units_pending",
)
CIRCUIT_JSON_FIELDS = (
    "unit_counts_by_type",
    "linear_ft_by_type",
    "acres_by_type",
    "planner_distribution",
    "permission_counts",
)
PRUNE_TABLES = ("circuit_aggregates", "planner_daily_aggregates", "regional_daily_aggregates")

def _dumps(value) -> str:
    return json.dumps(value if value is not None else {}, sort_keys=True)

def row_to_aggregate(row, json_fields=CIRCUIT_JSON_FIELDS) -> dict | None:
    if row is None:
        return None
    out = dict(row)
    for key in json_fields:
        if key in out:
            out[key] = json.loads(out[key]) if out[key] else {}
    if "is_rollup" in out:
        out["is_rollup"] = bool(out["is_rollup"])
    return out

def store_circuit_aggregate(conn: sqlite3.Connection, data: dict):
    """Upsert one circuit aggregate keyed by (circuit_id, aggregate_date, is_rollup).

    A successful store clears any earlier error annotation for the same key.
    """
    now = now_utc_iso()
    values = [data.get(k) or 0 for k in CIRCUIT_MEASURES]
    json_values = [_dumps(data.get(k)) for k in CIRCUIT_JSON_FIELDS]
    conn.execute(
        """
        INSERT INTO circuit_aggregates(
          circuit_id, aggregate_date, is_rollup,
          total_units, total_linear_ft, total_acres, total_trees,
          units_approved, units_refused, units_pending,
          unit_counts_by_type, linear_ft_by_type, acres_by_type, planner_distribution, permission_counts,
          error_message, created_at_utc, updated_at_utc
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,NULL,?,?)
        ON CONFLICT(circuit_id, aggregate_date, is_rollup) DO UPDATE SET
          total_units=excluded.total_units,
          total_linear_ft=excluded.total_linear_ft,
          total_acres=excluded.total_acres,
          total_trees=excluded.total_trees,
          units_approved=excluded.units_approved,
          units_refused=excluded.units_refused,
          units_pending=excluded.units_pending,
          unit_counts_by_type=excluded.unit_counts_by_type,
          linear_ft_by_type=excluded.linear_ft_by_type,
          acres_by_type=excluded.acres_by_type,
          planner_distribution=excluded.planner_distribution,
          permission_counts=excluded.permission_counts,
          error_message=NULL,
          updated_at_utc=excluded.updated_at_utc
        """,
        (
            data["circuit_id"],
            as_date_str(data["aggregate_date"]),
            1 if data.get("is_rollup") else 0,
            *values,
            *json_values,
            now,
            now,
        ),
    )

def record_aggregate_error(conn: sqlite3.Connection, circuit_id: int, aggregate_date, message: str):
    """Annotate the day's aggregate with an error; stored measurements are left alone."""
    now = now_utc_iso()
    conn.execute(
        """
        INSERT INTO circuit_aggregates(
          circuit_id, aggregate_date, is_rollup,
          unit_counts_by_type, linear_ft_by_type, acres_by_type, planner_distribution, permission_counts,
          error_message, created_at_utc, updated_at_utc
        ) VALUES (?,?,0,'{}','{}','{}','{}','{}',?,?,?)
        ON CONFLICT(circuit_id, aggregate_date, is_rollup) DO UPDATE SET
          error_message=excluded.error_message,
          updated_at_utc=excluded.updated_at_utc
        """,
        (circuit_id, as_date_str(aggregate_date), (message or "")[:1000], now, now),
    )

def store_circuit_aggregates(conn: sqlite3.Connection, results: list) -> dict:
    """Store a batch in one transaction.

    Items are AggregateOk/AggregateErr results or plain aggregate dicts.
    Per-item database failures are logged and skipped.
    """
    stored = errors_recorded = failed = 0
    with transaction(conn):
        for item in results:
            data = item.data if hasattr(item, "data") else item
            try:
                if getattr(item, "ok", True):
                    store_circuit_aggregate(conn, data)
                    stored += 1
                else:
                    record_aggregate_error(conn, item.circuit_id, data["aggregate_date"], item.reason)
                    errors_recorded += 1
            except (sqlite3.Error, KeyError, TypeError) as e:
                failed += 1
                log.error("aggregate_store_failed", circuit_id=data.get("circuit_id"), err=str(e))
    return {"stored": stored, "errors_recorded": errors_recorded, "failed": failed}

def store_planner_aggregate(conn: sqlite3.Connection, data: dict):
    now = now_utc_iso()
    conn.execute(
        """
        INSERT INTO planner_daily_aggregates(
          planner_id, region_id, aggregate_date, circuits_worked, total_units_assessed,
          total_linear_ft, total_acres, total_trees, miles_planned,
          units_approved, units_refused, units_pending, unit_counts_by_type, circuits_list,
          created_at_utc, updated_at_utc
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(planner_id, region_id, aggregate_date) DO UPDATE SET
          circuits_worked=excluded.circuits_worked,
          total_units_assessed=excluded.total_units_assessed,
          total_linear_ft=excluded.total_linear_ft,
          total_acres=excluded.total_acres,
          total_trees=excluded.total_trees,
          miles_planned=excluded.miles_planned,
          units_approved=excluded.units_approved,
          units_refused=excluded.units_refused,
          units_pending=excluded.units_pending,
          unit_counts_by_type=excluded.unit_counts_by_type,
          circuits_list=excluded.circuits_list,
          updated_at_utc=excluded.updated_at_utc
        """,
        (
            data["planner_id"],
            data["region_id"],
            as_date_str(data["aggregate_date"]),
            data.get("circuits_worked") or 0,
            data.get("total_units_assessed") or 0,
            data.get("total_linear_ft") or 0,
            data.get("total_acres") or 0,
            data.get("total_trees") or 0,
            data.get("miles_planned") or 0,
            data.get("units_approved") or 0,
            data.get("units_refused") or 0,
            data.get("units_pending") or 0,
            _dumps(data.get("unit_counts_by_type")),
            json.dumps(data.get("circuits_list") or []),
            now,
            now,
        ),
    )

def store_regional_aggregate(conn: sqlite3.Connection, data: dict):
    now = now_utc_iso()
    conn.execute(
        """
        INSERT INTO regional_daily_aggregates(
          region_id, aggregate_date, total_circuits, total_planners, total_units,
          total_linear_ft, total_acres, total_trees, units_approved, units_refused, units_pending,
          unit_counts_by_type, permission_counts, created_at_utc, updated_at_utc
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(region_id, aggregate_date) DO UPDATE SET
          total_circuits=excluded.total_circuits,
          total_planners=excluded.total_planners,
          total_units=excluded.total_units,
          total_linear_ft=excluded.total_linear_ft,
          total_acres=excluded.total_acres,
          total_trees=excluded.total_trees,
          units_approved=excluded.units_approved,
          units_refused=excluded.units_refused,
          units_pending=excluded.units_pending,
          unit_counts_by_type=excluded.unit_counts_by_type,
          permission_counts=excluded.permission_counts,
          updated_at_utc=excluded.updated_at_utc
        """,
        (
            data["region_id"],
            as_date_str(data["aggregate_date"]),
            data.get("total_circuits") or 0,
            data.get("total_planners") or 0,
            data.get("total_units") or 0,
            data.get("total_linear_ft") or 0,
            data.get("total_acres") or 0,
            data.get("total_trees") or 0,
            data.get("units_approved") or 0,
            data.get("units_refused") or 0,
            data.get("units_pending") or 0,
            _dumps(data.get("unit_counts_by_type")),
            _dumps(data.get("permission_counts")),
            now,
            now,
        ),
    )

PLANNER_WEEKLY_COLUMNS = (
    "week_starting",
    "days_worked",
    "circuits_worked",
    "total_units_assessed",
    "total_linear_ft",
    "total_acres",
    "total_trees",
    "miles_planned",
    "miles_planned_start",
    "miles_planned_end",
    "miles_delta",
    "met_weekly_target",
    "units_approved",
    "units_refused",
    "units_pending",
)
REGIONAL_WEEKLY_COLUMNS = (
    "week_starting",
    "active_circuits",
    "qc_circuits",
    "closed_circuits",
    "total_circuits",
    "excluded_circuits",
    "total_miles",
    "miles_planned",
    "miles_remaining",
    "avg_percent_complete",
    "total_units",
    "total_linear_ft",
    "total_acres",
    "total_trees",
    "units_approved",
    "units_refused",
    "units_pending",
    "active_planners",
)

def _weekly_upsert(conn, table: str, keys: tuple, columns: tuple, json_columns: tuple, data: dict):
    now = now_utc_iso()
    all_columns = (*keys, *columns, *json_columns, "created_at_utc", "updated_at_utc")
    params = [as_date_str(data[k]) if k == "week_ending" else data[k] for k in keys]
    for col in columns:
        value = data.get(col)
        if col == "week_starting":
            params.append(as_date_str(value))
        elif isinstance(value, bool):
            params.append(1 if value else 0)
        else:
            params.append(value or 0)
    params.extend(json.dumps(data.get(col) if data.get(col) is not None else {}, sort_keys=True) for col in json_columns)
    params.extend([now, now])
    updates = ",\n          ".join(f"{col}=excluded.{col}" for col in (*columns, *json_columns, "updated_at_utc"))
    conn.execute(
        f"""
        INSERT INTO {table}({", ".join(all_columns)})
        VALUES ({",".join("?" for _ in all_columns)})
        ON CONFLICT({", ".join(keys)}) DO UPDATE SET
          {updates}
        """,
        params,
    )

def store_planner_weekly_aggregate(conn: sqlite3.Connection, data: dict):
    _weekly_upsert(
        conn,
        "planner_weekly_aggregates",
        ("planner_id", "region_id", "week_ending"),
        PLANNER_WEEKLY_COLUMNS,
        ("unit_counts_by_type", "daily_breakdown"),
        data,
    )

def store_regional_weekly_aggregate(conn: sqlite3.Connection, data: dict):
    _weekly_upsert(
        conn,
        "regional_weekly_aggregates",
        ("region_id", "week_ending"),
        REGIONAL_WEEKLY_COLUMNS,
        ("unit_counts_by_type", "status_breakdown"),
        data,
    )

def create_circuit_rollup(conn: sqlite3.Connection, circuit_id: int, from_date, to_date) -> dict:
    """Republish the latest non-rollup aggregate in [from, to] as a rollup dated ``to``."""
    row = conn.execute(
        """
        SELECT * FROM circuit_aggregates
        WHERE circuit_id=? AND is_rollup=0 AND aggregate_date>=? AND aggregate_date<=?
        ORDER BY aggregate_date DESC, id DESC LIMIT 1
        """,
        (circuit_id, as_date_str(from_date), as_date_str(to_date)),
    ).fetchone()
    data = row_to_aggregate(row) or {}
    rollup = {k: data.get(k) for k in (*CIRCUIT_MEASURES, *CIRCUIT_JSON_FIELDS)}
    rollup.update({"circuit_id": circuit_id, "aggregate_date": as_date_str(to_date), "is_rollup": True})
    store_circuit_aggregate(conn, rollup)
    return latest_aggregate(conn, circuit_id, rollup=True)

def prune_old_aggregates(conn: sqlite3.Connection, days_to_keep: int = 365, today: date | None = None) -> dict:
    today = today or local_today(settings.local_tz)
    cutoff = (today - timedelta(days=int(days_to_keep))).isoformat()
    counts = {}
    with transaction(conn):
        for table in PRUNE_TABLES:
            cur = conn.execute(f"DELETE FROM {table} WHERE aggregate_date < ?", (cutoff,))
            counts[table] = cur.rowcount
    log.info("aggregates_pruned", cutoff=cutoff, **counts)
    return counts

def latest_aggregate(conn: sqlite3.Connection, circuit_id: int, rollup: bool = False) -> dict | None:
    row = conn.execute(
        """
        SELECT * FROM circuit_aggregates
        WHERE circuit_id=? AND is_rollup=?
        ORDER BY aggregate_date DESC, id DESC LIMIT 1
        """,
        (circuit_id, 1 if rollup else 0),
    ).fetchone()
    return row_to_aggregate(row)

def latest_aggregate_date(conn: sqlite3.Connection, circuit_id: int) -> str | None:
    row = conn.execute(
        "SELECT MAX(aggregate_date) FROM circuit_aggregates WHERE circuit_id=? AND is_rollup=0",
        (circuit_id,),
    ).fetchone()
    return row[0] if row else None

def has_aggregate_for_date(conn: sqlite3.Connection, circuit_id: int, aggregate_date) -> bool:
    row = conn.execute(
        "SELECT 1 FROM circuit_aggregates WHERE circuit_id=? AND aggregate_date=? AND is_rollup=0",
        (circuit_id, as_date_str(aggregate_date)),
    ).fetchone()
    return row is not None

def aggregate_on_or_before(conn: sqlite3.Connection, circuit_id: int, on_or_before) -> dict | None:
    row = conn.execute(
        """
        SELECT * FROM circuit_aggregates
        WHERE circuit_id=? AND is_rollup=0 AND aggregate_date<=?
        ORDER BY aggregate_date DESC, id DESC LIMIT 1
        """,
        (circuit_id, as_date_str(on_or_before)),
    ).fetchone()
    return row_to_aggregate(row)

def list_circuit_aggregates(conn: sqlite3.Connection, circuit_id: int, limit: int = 90, include_rollups: bool = False) -> list[dict]:
    sql = "SELECT * FROM circuit_aggregates WHERE circuit_id=?"
    if not include_rollups:
        sql += " AND is_rollup=0"
    sql += " ORDER BY aggregate_date DESC, id DESC LIMIT ?"
    return [row_to_aggregate(r) for r in conn.execute(sql, (circuit_id, int(limit))).fetchall()]
