import json, sqlite3
from datetime import date, datetime
import structlog
from ..utils import now_utc_iso, is_numeric
from .circuits import CIRCUIT_FIELD_MAP

log = structlog.get_logger()

ASSIGNMENT_SOURCE_API_SYNC = "api_sync"

# Columns sync may write; exclusion columns are administrative and never listed here.
SYNC_FIELDS = tuple(
    [f for f in CIRCUIT_FIELD_MAP.values() if f not in ("job_guid", "region")]
    + ["region_id", "api_data_json"]
)
JSON_FIELDS = ("bounds_geometry", "api_data_json")

def _to_db(field: str, value):
    if value is None:
        return None
    if field in JSON_FIELDS:
        return json.dumps(value, sort_keys=True) if not isinstance(value, str) else value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value

def _json_canonical(value):
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return value
    return json.dumps(value, sort_keys=True)

def value_changed(field: str, current, new) -> bool:
    if current is None and new is None:
        return False
    if current is None or new is None:
        return True
    if field in JSON_FIELDS:
        return _json_canonical(current) != _json_canonical(new)
    if isinstance(new, (datetime, date)) or isinstance(current, (datetime, date)):
        return str(_to_db(field, current))[:10] != str(_to_db(field, new))[:10]
    if is_numeric(current) and is_numeric(new):
        return abs(float(current) - float(new)) > 0.001
    return str(current) != str(new)

class CircuitSync:
    """Upserts transformed circuit records by job_guid and links their planners."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _existing(self, job_guid: str) -> dict | None:
        row = self.conn.execute("SELECT * FROM circuits WHERE job_guid=?", (job_guid,)).fetchone()
        return dict(row) if row else None

    def changes_for(self, current: dict, record: dict, force_overwrite: bool = False) -> dict:
        changes = {}
        for field in SYNC_FIELDS:
            if field not in record:
                continue
            new = record[field]
            # An unresolved region never clears a known one.
            if field == "region_id" and new is None and not force_overwrite:
                continue
            if force_overwrite or value_changed(field, current.get(field), new):
                changes[field] = _to_db(field, new)
        return changes

    def _insert(self, record: dict) -> int:
        if not record.get("work_order"):
            raise ValueError("circuit record has no work_order")
        now = now_utc_iso()
        fields = [f for f in SYNC_FIELDS if f in record]
        columns = ["job_guid", *fields, "last_synced_at_utc", "created_at_utc", "updated_at_utc"]
        params = [record["job_guid"], *[_to_db(f, record[f]) for f in fields], now, now, now]
        cur = self.conn.execute(
            f"INSERT INTO circuits({', '.join(columns)}) VALUES({','.join('?' for _ in columns)})",
            params,
        )
        return cur.lastrowid

    def _update(self, circuit_id: int, changes: dict):
        now = now_utc_iso()
        assignments = ", ".join(f"{col}=?" for col in changes)
        self.conn.execute(
            f"UPDATE circuits SET {assignments}, last_synced_at_utc=?, updated_at_utc=? WHERE id=?",
            [*changes.values(), now, now, circuit_id],
        )

    def sync_circuit(self, record: dict, force_overwrite: bool = False) -> tuple[int, str]:
        """Returns (circuit_id, outcome) where outcome is created|updated|unchanged."""
        job_guid = record.get("job_guid")
        if not job_guid:
            raise ValueError("circuit record has no job_guid")
        current = self._existing(job_guid)
        if current is None:
            return self._insert(record), "created"
        changes = self.changes_for(current, record, force_overwrite)
        if not changes:
            return current["id"], "unchanged"
        self._update(current["id"], changes)
        return current["id"], "updated"

    def sync_circuits(self, records: list[dict], force_overwrite: bool = False) -> dict:
        results = {"created": 0, "updated": 0, "unchanged": 0, "errors": [], "circuit_ids": {}}
        for record in records:
            try:
                circuit_id, outcome = self.sync_circuit(record, force_overwrite)
            except (ValueError, sqlite3.Error) as e:
                results["errors"].append(
                    {
                        "job_guid": record.get("job_guid") or "unknown",
                        "work_order": record.get("work_order") or "unknown",
                        "error": str(e),
                    }
                )
                log.warning("circuit_sync_failed", job_guid=record.get("job_guid"), err=str(e))
                continue
            results[outcome] += 1
            results["circuit_ids"][record["job_guid"]] = circuit_id
        return results

    def preview_sync(self, records: list[dict], force_overwrite: bool = False) -> dict:
        preview = {"would_create": 0, "would_update": 0, "unchanged": 0}
        for record in records:
            if not record.get("job_guid"):
                continue
            current = self._existing(record["job_guid"])
            if current is None:
                preview["would_create"] += 1
            elif self.changes_for(current, record, force_overwrite):
                preview["would_update"] += 1
            else:
                preview["unchanged"] += 1
        return preview

    def sync_planners(self, circuit_id: int, identifiers: list[str]) -> dict:
        now = now_utc_iso()
        linked = 0
        for ident in identifiers:
            ident = (ident or "").strip()
            if not ident:
                continue
            self.conn.execute(
                """
                INSERT INTO planners(ws_username, display_name, first_seen_at_utc, last_seen_at_utc)
                VALUES(?,?,?,?)
                ON CONFLICT(ws_username) DO UPDATE SET last_seen_at_utc=excluded.last_seen_at_utc
                """,
                (ident, ident, now, now),
            )
            planner_id = self.conn.execute("SELECT id FROM planners WHERE ws_username=?", (ident,)).fetchone()[0]
            cur = self.conn.execute(
                """
                INSERT INTO circuit_planners(circuit_id, planner_id, assignment_source, assigned_at_utc)
                VALUES(?,?,?,?)
                ON CONFLICT(circuit_id, planner_id) DO NOTHING
                """,
                (circuit_id, planner_id, ASSIGNMENT_SOURCE_API_SYNC, now),
            )
            linked += cur.rowcount
        return {"linked": linked}
