import json, sqlite3
from .storage import CIRCUIT_MEASURES, aggregate_on_or_before, row_to_aggregate

SIGNIFICANCE_THRESHOLD = 0.01
JSON_COMPARE_FIELDS = ("unit_counts_by_type", "planner_distribution")

def _num(value) -> float:
    return float(value or 0)

def _canonical(value) -> str:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return value
    return json.dumps(value or {}, sort_keys=True)

def is_significant_change(old, new) -> bool:
    old, new = _num(old), _num(new)
    diff = abs(new - old)
    if old == 0 or new == 0:
        return diff > 0
    return diff / max(abs(old), 1) > SIGNIFICANCE_THRESHOLD

def compare(new: dict, existing: dict | None) -> dict:
    """Diff a freshly computed aggregate against the stored one.

    With no prior aggregate everything is new. Otherwise a measure counts as
    changed only when it moved by more than 1% (or to/from zero).
    """
    if not existing:
        return {
            "has_changes": True,
            "changes": {"initial_sync": True},
            "delta": {f: new.get(f) or 0 for f in CIRCUIT_MEASURES},
        }

    changes = {}
    delta = {}
    for field in CIRCUIT_MEASURES:
        old_value = existing.get(field) or 0
        new_value = new.get(field) or 0
        if is_significant_change(old_value, new_value):
            changes[field] = {"old": old_value, "new": new_value}
            delta[field] = new_value - old_value

    json_changes = {
        field: True
        for field in JSON_COMPARE_FIELDS
        if _canonical(existing.get(field)) != _canonical(new.get(field))
    }
    if json_changes:
        changes["jsonb_fields"] = json_changes

    return {"has_changes": bool(changes), "changes": changes, "delta": delta}

def calculate_progress_delta(conn: sqlite3.Connection, circuit_id: int, from_date, to_date) -> dict:
    start = aggregate_on_or_before(conn, circuit_id, from_date)
    end = aggregate_on_or_before(conn, circuit_id, to_date)
    if not start or not end:
        return {"error": "missing_aggregate_data", "circuit_id": circuit_id}

    delta = {}
    for field in CIRCUIT_MEASURES:
        a = start.get(field) or 0
        b = end.get(field) or 0
        delta[field] = {
            "from": a,
            "to": b,
            "change": b - a,
            "percent_change": round(((b - a) / a) * 100, 2) if a > 0 else None,
        }
    return {
        "circuit_id": circuit_id,
        "from_date": str(from_date),
        "to_date": str(to_date),
        "delta": delta,
    }

def get_circuits_with_changes(conn: sqlite3.Connection, since_date) -> list[dict]:
    """Circuits whose latest aggregate differs from their last one on or before ``since_date``."""
    latest_rows = conn.execute(
        """
        SELECT ca.* FROM circuit_aggregates ca
        WHERE ca.is_rollup=0 AND ca.id = (
          SELECT id FROM circuit_aggregates
          WHERE circuit_id=ca.circuit_id AND is_rollup=0
          ORDER BY aggregate_date DESC, id DESC LIMIT 1
        )
        ORDER BY ca.circuit_id
        """
    ).fetchall()
    out = []
    for row in latest_rows:
        latest = row_to_aggregate(row)
        previous = aggregate_on_or_before(conn, latest["circuit_id"], since_date)
        if previous and previous["id"] == latest["id"]:
            continue
        result = compare(latest, previous)
        if result["has_changes"]:
            out.append(
                {
                    "circuit_id": latest["circuit_id"],
                    "has_changes": True,
                    "delta": result["delta"],
                    "latest_date": latest["aggregate_date"],
                }
            )
    return out
