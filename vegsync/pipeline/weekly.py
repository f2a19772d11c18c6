import json, sqlite3
from collections import defaultdict
from datetime import date, timedelta
import structlog
from ..config import settings
from ..db import transaction
from ..utils import local_today
from .storage import store_planner_weekly_aggregate, store_regional_weekly_aggregate

log = structlog.get_logger()

STATUS_CODES = ("ACTIV", "QC", "REWRK", "CLOSE")

def _as_date(value) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])

def week_ending_for(value, weekday: int | None = None) -> date:
    """The configured week-ending weekday on or after ``value``."""
    weekday = settings.week_ending_weekday if weekday is None else weekday
    d = _as_date(value)
    return d + timedelta(days=(weekday - d.weekday()) % 7)

def week_starting_for(value, weekday: int | None = None) -> date:
    return week_ending_for(value, weekday) - timedelta(days=6)

def _latest_aggregate_totals(conn: sqlite3.Connection, circuit_ids: list[int]) -> dict:
    totals = {
        "total_units": 0,
        "total_linear_ft": 0.0,
        "total_acres": 0.0,
        "total_trees": 0,
        "units_approved": 0,
        "units_refused": 0,
        "units_pending": 0,
    }
    counts_by_type = defaultdict(int)
    for circuit_id in circuit_ids:
        row = conn.execute(
            """
            SELECT total_units, total_linear_ft, total_acres, total_trees,
                   units_approved, units_refused, units_pending, unit_counts_by_type
            FROM circuit_aggregates WHERE circuit_id=? AND is_rollup=0
            ORDER BY aggregate_date DESC, id DESC LIMIT 1
            """,
            (circuit_id,),
        ).fetchone()
        if not row:
            continue
        totals["total_units"] += int(row[0] or 0)
        totals["total_linear_ft"] += float(row[1] or 0)
        totals["total_acres"] += float(row[2] or 0)
        totals["total_trees"] += int(row[3] or 0)
        totals["units_approved"] += int(row[4] or 0)
        totals["units_refused"] += int(row[5] or 0)
        totals["units_pending"] += int(row[6] or 0)
        for code, count in json.loads(row[7] or "{}").items():
            counts_by_type[code] += int(count)
    totals["total_linear_ft"] = round(totals["total_linear_ft"], 2)
    totals["total_acres"] = round(totals["total_acres"], 4)
    totals["unit_counts_by_type"] = dict(counts_by_type)
    return totals

def compute_regional_week(conn: sqlite3.Connection, region_id: int, week_starting: date, week_ending: date) -> dict:
    circuits = conn.execute(
        "SELECT id, api_status, total_miles, miles_planned, percent_complete FROM circuits WHERE region_id=? AND is_excluded=0",
        (region_id,),
    ).fetchall()
    excluded = conn.execute(
        "SELECT COUNT(*) FROM circuits WHERE region_id=? AND is_excluded=1", (region_id,)
    ).fetchone()[0]
    active_planners = conn.execute(
        """
        SELECT COUNT(DISTINCT cp.planner_id)
        FROM circuit_planners cp JOIN circuits c ON c.id = cp.circuit_id
        WHERE c.region_id=? AND c.is_excluded=0
        """,
        (region_id,),
    ).fetchone()[0]

    status_breakdown = {code: 0 for code in STATUS_CODES}
    total_miles = miles_planned = percent_sum = 0.0
    for _, status, miles, planned, percent in circuits:
        if status in status_breakdown:
            status_breakdown[status] += 1
        total_miles += float(miles or 0)
        miles_planned += float(planned or 0)
        percent_sum += float(percent or 0)

    units = _latest_aggregate_totals(conn, [c[0] for c in circuits])
    return {
        "region_id": region_id,
        "week_ending": week_ending.isoformat(),
        "week_starting": week_starting.isoformat(),
        "active_circuits": status_breakdown["ACTIV"],
        "qc_circuits": status_breakdown["QC"],
        "closed_circuits": status_breakdown["CLOSE"],
        "total_circuits": len(circuits),
        "excluded_circuits": excluded,
        "total_miles": round(total_miles, 4),
        "miles_planned": round(miles_planned, 4),
        "miles_remaining": round(total_miles - miles_planned, 4),
        "avg_percent_complete": round(percent_sum / len(circuits), 2) if circuits else 0.0,
        "active_planners": active_planners,
        "status_breakdown": status_breakdown,
        **units,
    }

def compute_planner_week(
    conn: sqlite3.Connection,
    planner_id: int,
    region_id: int,
    week_starting: date,
    week_ending: date,
    miles_target: float | None = None,
) -> dict:
    miles_target = settings.weekly_miles_target if miles_target is None else miles_target
    circuit_rows = conn.execute(
        """
        SELECT c.id, c.miles_planned FROM circuits c
        JOIN circuit_planners cp ON cp.circuit_id = c.id
        WHERE cp.planner_id=? AND c.region_id=? AND c.is_excluded=0
        """,
        (planner_id, region_id),
    ).fetchall()
    circuit_ids = [r[0] for r in circuit_rows]
    current_miles = sum(float(r[1] or 0) for r in circuit_rows)

    daily = conn.execute(
        """
        SELECT aggregate_date, total_units_assessed, miles_planned, circuits_worked
        FROM planner_daily_aggregates
        WHERE planner_id=? AND region_id=? AND aggregate_date>=? AND aggregate_date<=?
        ORDER BY aggregate_date
        """,
        (planner_id, region_id, week_starting.isoformat(), week_ending.isoformat()),
    ).fetchall()
    before = conn.execute(
        """
        SELECT miles_planned FROM planner_daily_aggregates
        WHERE planner_id=? AND region_id=? AND aggregate_date<?
        ORDER BY aggregate_date DESC LIMIT 1
        """,
        (planner_id, region_id, week_starting.isoformat()),
    ).fetchone()

    # No history before the week means the circuits were picked up this week.
    start_miles = float(before[0] or 0) if before else 0.0
    end_miles = float(daily[-1][2] or 0) if daily else current_miles
    delta = max(0.0, end_miles - start_miles)

    units = _latest_aggregate_totals(conn, circuit_ids)
    return {
        "planner_id": planner_id,
        "region_id": region_id,
        "week_ending": week_ending.isoformat(),
        "week_starting": week_starting.isoformat(),
        "days_worked": len(daily),
        "circuits_worked": len(circuit_ids),
        "total_units_assessed": units["total_units"],
        "total_linear_ft": units["total_linear_ft"],
        "total_acres": units["total_acres"],
        "total_trees": units["total_trees"],
        "miles_planned": round(current_miles, 4),
        "miles_planned_start": round(start_miles, 2),
        "miles_planned_end": round(end_miles, 2),
        "miles_delta": round(delta, 2),
        "met_weekly_target": round(delta, 2) >= miles_target,
        "units_approved": units["units_approved"],
        "units_refused": units["units_refused"],
        "units_pending": units["units_pending"],
        "unit_counts_by_type": units["unit_counts_by_type"],
        "daily_breakdown": {
            row[0]: {"units_assessed": row[1], "miles_planned": row[2], "circuits_worked": row[3]}
            for row in daily
        },
    }

def build_weekly_aggregates(conn: sqlite3.Connection, week_ending=None, include_planners: bool = True) -> dict:
    week_end = week_ending_for(week_ending or local_today(settings.local_tz))
    week_start = week_end - timedelta(days=6)
    log.info(
        "weekly_build_started",
        week_starting=week_start.isoformat(),
        week_ending=week_end.isoformat(),
        include_planners=include_planners,
    )
    regions = [r[0] for r in conn.execute("SELECT id FROM regions WHERE is_active=1 ORDER BY sort_order").fetchall()]
    planners_processed = 0
    with transaction(conn):
        for region_id in regions:
            store_regional_weekly_aggregate(conn, compute_regional_week(conn, region_id, week_start, week_end))
        if include_planners:
            pairs = conn.execute(
                """
                SELECT DISTINCT cp.planner_id, c.region_id
                FROM circuit_planners cp JOIN circuits c ON c.id = cp.circuit_id
                WHERE c.is_excluded=0 AND c.region_id IS NOT NULL
                ORDER BY cp.planner_id, c.region_id
                """
            ).fetchall()
            for planner_id, region_id in pairs:
                store_planner_weekly_aggregate(
                    conn, compute_planner_week(conn, planner_id, region_id, week_start, week_end)
                )
                planners_processed += 1
    result = {
        "week_ending": week_end.isoformat(),
        "week_starting": week_start.isoformat(),
        "regions_processed": len(regions),
        "planners_processed": planners_processed,
    }
    log.info("weekly_build_done", **result)
    return result
