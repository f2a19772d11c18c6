import json, sqlite3
from datetime import timedelta
import structlog
from ..config import settings
from ..utils import now_utc
from . import normalizer

log = structlog.get_logger()

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MILESTONE_50 = "milestone_50"
TRIGGER_MILESTONE_100 = "milestone_100"
TRIGGER_STATUS_TO_QC = "status_to_qc"
TRIGGER_MANUAL = "manual"
SNAPSHOT_TRIGGERS = (
    TRIGGER_SCHEDULED,
    TRIGGER_MILESTONE_50,
    TRIGGER_MILESTONE_100,
    TRIGGER_STATUS_TO_QC,
    TRIGGER_MANUAL,
)
QC_STATUS = "QC"

SNAPSHOT_COLUMNS = (
    "id, circuit_id, work_order, snapshot_trigger, percent_complete, api_status, content_hash, "
    "unit_count, total_trees, total_linear_ft, total_acres, created_by, created_at_utc"
)

def _row_to_snapshot(row, with_payload: bool = False) -> dict | None:
    if row is None:
        return None
    out = dict(row)
    if "raw_json" in out:
        payload = out.pop("raw_json")
        if with_payload:
            out["raw_json"] = json.loads(payload) if payload else {}
    return out

class SnapshotService:
    """
    Point-in-time captures of a circuit's planned units.
    - Stored only when the unit content hash differs from the latest capture
    - Manual captures always store
    - Trigger priority: status_to_qc > milestone_100 > milestone_50 > scheduled
    """
    def __init__(self, conn: sqlite3.Connection, qc_debounce_hours: int | None = None, clock=now_utc):
        self.conn = conn
        self.qc_debounce_hours = settings.snapshot_qc_debounce_hours if qc_debounce_hours is None else qc_debounce_hours
        self._clock = clock

    def latest_for_circuit(self, circuit_id: int, with_payload: bool = False) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM planned_units_snapshots WHERE circuit_id=? ORDER BY created_at_utc DESC, id DESC LIMIT 1",
            (circuit_id,),
        ).fetchone()
        return _row_to_snapshot(row, with_payload)

    def get(self, snapshot_id: int, with_payload: bool = True) -> dict | None:
        row = self.conn.execute("SELECT * FROM planned_units_snapshots WHERE id=?", (snapshot_id,)).fetchone()
        return _row_to_snapshot(row, with_payload)

    def has_trigger(self, circuit_id: int, trigger: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM planned_units_snapshots WHERE circuit_id=? AND snapshot_trigger=? LIMIT 1",
            (circuit_id, trigger),
        ).fetchone()
        return row is not None

    def create_snapshot(self, circuit: dict, rows: list[dict], trigger: str, created_by=None) -> dict | None:
        if trigger not in SNAPSHOT_TRIGGERS:
            raise ValueError(f"unknown snapshot trigger: {trigger}")
        manual = trigger == TRIGGER_MANUAL
        percent = float(circuit.get("percent_complete") or 0)

        if not manual and percent <= 0:
            log.debug("snapshot_skipped", circuit_id=circuit["id"], reason="zero_percent")
            return None
        if not manual and not rows:
            log.debug("snapshot_skipped", circuit_id=circuit["id"], reason="no_units")
            return None

        captured = self._clock()
        document = normalizer.normalize(rows, captured_at=captured.isoformat())
        content_hash = normalizer.generate_hash(document)

        if not manual:
            latest = self.latest_for_circuit(circuit["id"])
            if latest and latest["content_hash"] == content_hash:
                log.debug(
                    "snapshot_skipped",
                    circuit_id=circuit["id"],
                    reason="content_unchanged",
                    content_hash=content_hash[:16],
                )
                return None

        stats = normalizer.get_quick_stats(document)
        cur = self.conn.execute(
            """
            INSERT INTO planned_units_snapshots(
              circuit_id, work_order, snapshot_trigger, percent_complete, api_status, content_hash,
              unit_count, total_trees, total_linear_ft, total_acres, raw_json, created_by, created_at_utc
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                circuit["id"],
                circuit["work_order"],
                trigger,
                percent,
                circuit.get("api_status"),
                content_hash,
                stats["unit_count"],
                stats["total_trees"],
                stats["total_linear_ft"],
                stats["total_acres"],
                json.dumps(document, sort_keys=True),
                None if created_by is None else str(created_by),
                captured.isoformat(),
            ),
        )
        log.info(
            "snapshot_created",
            snapshot_id=cur.lastrowid,
            circuit_id=circuit["id"],
            work_order=circuit["work_order"],
            trigger=trigger,
            unit_count=stats["unit_count"],
        )
        return self.get(cur.lastrowid, with_payload=False)

    def create_manual_snapshot(self, circuit: dict, rows: list[dict], created_by) -> dict | None:
        return self.create_snapshot(circuit, rows, TRIGGER_MANUAL, created_by)

    def _crossed(self, circuit: dict, previous_percent, threshold: float) -> bool:
        if previous_percent is None:
            return False
        current = float(circuit.get("percent_complete") or 0)
        return float(previous_percent) < threshold <= current

    def should_create_milestone50_snapshot(self, circuit: dict, previous_percent) -> bool:
        return self._crossed(circuit, previous_percent, 50) and not self.has_trigger(circuit["id"], TRIGGER_MILESTONE_50)

    def should_create_milestone100_snapshot(self, circuit: dict, previous_percent) -> bool:
        return self._crossed(circuit, previous_percent, 100) and not self.has_trigger(circuit["id"], TRIGGER_MILESTONE_100)

    def should_create_qc_snapshot(self, circuit: dict, previous_status) -> bool:
        if circuit.get("api_status") != QC_STATUS or previous_status == QC_STATUS:
            return False
        cutoff = (self._clock() - timedelta(hours=self.qc_debounce_hours)).isoformat()
        recent = self.conn.execute(
            """
            SELECT 1 FROM planned_units_snapshots
            WHERE circuit_id=? AND snapshot_trigger=? AND created_at_utc>=? LIMIT 1
            """,
            (circuit["id"], TRIGGER_STATUS_TO_QC, cutoff),
        ).fetchone()
        return recent is None

    def pick_trigger(self, circuit: dict, previous_status=None, previous_percent=None) -> str:
        if self.should_create_qc_snapshot(circuit, previous_status):
            return TRIGGER_STATUS_TO_QC
        if self.should_create_milestone100_snapshot(circuit, previous_percent):
            return TRIGGER_MILESTONE_100
        if self.should_create_milestone50_snapshot(circuit, previous_percent):
            return TRIGGER_MILESTONE_50
        return TRIGGER_SCHEDULED

    def create_snapshot_if_needed(self, circuit: dict, rows: list[dict], previous_status=None, previous_percent=None) -> dict | None:
        trigger = self.pick_trigger(circuit, previous_status, previous_percent)
        return self.create_snapshot(circuit, rows, trigger)

    def get_history(self, circuit_id: int, limit: int = 50) -> list[dict]:
        rows = self.conn.execute(
            f"SELECT {SNAPSHOT_COLUMNS} FROM planned_units_snapshots WHERE circuit_id=? "
            "ORDER BY created_at_utc DESC, id DESC LIMIT ?",
            (circuit_id, int(limit)),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_timeline(self, circuit_id: int) -> list[dict]:
        rows = self.conn.execute(
            f"SELECT {SNAPSHOT_COLUMNS} FROM planned_units_snapshots WHERE circuit_id=? "
            "ORDER BY created_at_utc ASC, id ASC",
            (circuit_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def compare_snapshots(self, older: dict, newer: dict) -> dict:
        """Unit-level diff between two snapshot documents (or snapshot rows with raw_json)."""
        old_units = {u.get("id"): u for u in _units_of(older)}
        new_units = {u.get("id"): u for u in _units_of(newer)}
        added = [u for uid, u in new_units.items() if uid not in old_units]
        removed = [u for uid, u in old_units.items() if uid not in new_units]
        changed = [
            {"id": uid, "before": old_units[uid], "after": u}
            for uid, u in new_units.items()
            if uid in old_units and old_units[uid] != u
        ]
        return {"added": added, "removed": removed, "changed": changed}

def _units_of(snapshot: dict) -> list[dict]:
    doc = snapshot.get("raw_json", snapshot)
    return doc.get("units") or []
