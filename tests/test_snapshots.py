import unittest
from datetime import datetime, timedelta, timezone

from vegsync.db import get_conn, migrate
from vegsync.pipeline import normalizer
from vegsync.pipeline.snapshots import (
    SnapshotService,
    TRIGGER_MANUAL,
    TRIGGER_MILESTONE_100,
    TRIGGER_MILESTONE_50,
    TRIGGER_SCHEDULED,
    TRIGGER_STATUS_TO_QC,
)


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _db():
    conn = get_conn(":memory:")
    migrate(conn)
    return conn


def _unit_row(object_id, code="SPM", permission="Approved", length=100, **extra):
    row = {
        "SSUNITS_OBJECTID": object_id,
        "STATIONS_STATNAME": f"ST-{object_id}",
        "VEGUNIT_UNIT": code,
        "VEGUNIT_PERMSTAT": permission,
        "JOBVEGETATIONUNITS_LENGTHWRK": length,
        "JOBVEGETATIONUNITS_NUMTREES": "2",
        "VEGUNIT_ASSDDATE": "/Date(1710496800000)/",
        "VEGUNIT_AUDIT_PASS": "0",
        "VEGUNIT_SPECIES": "",
        "VEGJOB_REGION": "LANCASTER",
        "SS_WO": "2025-4001",
        "SS_EXT": "@",
        "VEGUNIT_FORESTER": "jdoe",
    }
    row.update(extra)
    return row


ROWS = [_unit_row(1), _unit_row(2, code="HCB", permission="", length=0, JOBVEGETATIONUNITS_ACRES="0.5"), _unit_row(3)]


class NormalizerTests(unittest.TestCase):
    def test_document_shape(self):
        doc = normalizer.normalize(ROWS, captured_at="2025-06-02T12:00:00+00:00")
        self.assertEqual(doc["meta"]["work_order"], "2025-4001")
        self.assertEqual(doc["meta"]["region"], "LANCASTER")
        self.assertEqual(doc["meta"]["captured_at"], "2025-06-02T12:00:00+00:00")
        unit = doc["units"][0]
        self.assertEqual(unit["id"], 1)
        self.assertEqual(unit["trees"], 2)
        self.assertEqual(unit["linear_ft"], 100.0)
        self.assertEqual(unit["assessed"], "2024-03-15")
        self.assertIs(unit["audit_pass"], False)
        self.assertNotIn("species", unit)
        summary = doc["summary"]
        self.assertEqual(summary["total_units"], 3)
        self.assertEqual(summary["total_trees"], 6)
        self.assertEqual(summary["total_linear_ft"], 200.0)
        self.assertEqual(summary["total_acres"], 0.5)
        self.assertEqual(summary["by_permission"], {"Approved": 2, "Unknown": 1})
        self.assertEqual(summary["by_unit_type"], {"SPM": 2, "HCB": 1})

    def test_empty_document(self):
        doc = normalizer.normalize([])
        self.assertEqual(doc["units"], [])
        self.assertEqual(doc["summary"]["total_units"], 0)
        self.assertIn("captured_at", doc["meta"])

    def test_infinite_values_normalize_to_zero(self):
        doc = normalizer.normalize([_unit_row(1, JOBVEGETATIONUNITS_NUMTREES="1e999", JOBVEGETATIONUNITS_LENGTHWRK="inf")])
        unit = doc["units"][0]
        self.assertEqual(unit["trees"], 0)
        self.assertEqual(unit["linear_ft"], 0.0)
        self.assertEqual(doc["summary"]["total_trees"], 0)

    def test_hash_ignores_order_and_capture_time(self):
        a = normalizer.normalize(ROWS, captured_at="2025-06-01T00:00:00+00:00")
        b = normalizer.normalize(list(reversed(ROWS)), captured_at="2025-06-02T00:00:00+00:00")
        self.assertEqual(normalizer.generate_hash(a), normalizer.generate_hash(b))
        c = normalizer.normalize([_unit_row(1, length=101), *ROWS[1:]])
        self.assertNotEqual(normalizer.generate_hash(a), normalizer.generate_hash(c))

    def test_quick_stats(self):
        stats = normalizer.get_quick_stats(normalizer.normalize(ROWS))
        self.assertEqual(stats, {"unit_count": 3, "total_trees": 6, "total_linear_ft": 200.0, "total_acres": 0.5})


class SnapshotServiceTests(unittest.TestCase):
    def setUp(self):
        self.conn = _db()
        cur = self.conn.execute(
            """
            INSERT INTO circuits(job_guid, work_order, api_status, percent_complete, created_at_utc, updated_at_utc)
            VALUES('{S1}', '2025-4001', 'ACTIV', 30, '2025-06-01T00:00:00+00:00', '2025-06-01T00:00:00+00:00')
            """
        )
        self.circuit_id = cur.lastrowid
        self.clock = _Clock(datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc))
        self.svc = SnapshotService(self.conn, qc_debounce_hours=24, clock=self.clock)

    def _circuit(self, percent=30.0, status="ACTIV"):
        return {"id": self.circuit_id, "work_order": "2025-4001", "percent_complete": percent, "api_status": status}

    def _count(self):
        return self.conn.execute("SELECT COUNT(*) FROM planned_units_snapshots").fetchone()[0]

    def test_identical_content_is_stored_once(self):
        first = self.svc.create_snapshot(self._circuit(), ROWS, TRIGGER_SCHEDULED)
        self.assertIsNotNone(first)
        self.assertNotIn("raw_json", first)
        self.assertEqual(first["unit_count"], 3)
        self.clock.advance(hours=1)
        self.assertIsNone(self.svc.create_snapshot(self._circuit(), list(reversed(ROWS)), TRIGGER_SCHEDULED))
        changed = [_unit_row(1, permission="Refused"), *ROWS[1:]]
        self.assertIsNotNone(self.svc.create_snapshot(self._circuit(), changed, TRIGGER_SCHEDULED))
        self.assertEqual(self._count(), 2)

    def test_skips_zero_percent_and_empty_rows(self):
        self.assertIsNone(self.svc.create_snapshot(self._circuit(percent=0), ROWS, TRIGGER_SCHEDULED))
        self.assertIsNone(self.svc.create_snapshot(self._circuit(), [], TRIGGER_SCHEDULED))
        self.assertEqual(self._count(), 0)

    def test_manual_bypasses_every_skip(self):
        self.svc.create_manual_snapshot(self._circuit(percent=0), [], created_by="admin")
        snap = self.svc.create_manual_snapshot(self._circuit(percent=0), [], created_by="admin")
        self.assertEqual(snap["snapshot_trigger"], TRIGGER_MANUAL)
        self.assertEqual(snap["created_by"], "admin")
        self.assertEqual(self._count(), 2)

    def test_unknown_trigger_rejected(self):
        with self.assertRaises(ValueError):
            self.svc.create_snapshot(self._circuit(), ROWS, "whenever")

    def test_milestone_50_fires_once(self):
        circuit = self._circuit(percent=51)
        self.assertEqual(self.svc.pick_trigger(circuit, "ACTIV", 49), TRIGGER_MILESTONE_50)
        snap = self.svc.create_snapshot_if_needed(circuit, ROWS, "ACTIV", 49)
        self.assertEqual(snap["snapshot_trigger"], TRIGGER_MILESTONE_50)

        later = self._circuit(percent=55)
        self.assertFalse(self.svc.should_create_milestone50_snapshot(later, 51))
        self.assertFalse(self.svc.should_create_milestone50_snapshot(later, 45))
        self.assertEqual(self.svc.pick_trigger(later, "ACTIV", 51), TRIGGER_SCHEDULED)

    def test_milestones_need_a_previous_percent(self):
        self.assertFalse(self.svc.should_create_milestone50_snapshot(self._circuit(percent=60), None))

    def test_milestone_100_outranks_50(self):
        circuit = self._circuit(percent=100)
        self.assertEqual(self.svc.pick_trigger(circuit, "ACTIV", 40), TRIGGER_MILESTONE_100)
        self.assertTrue(self.svc.should_create_milestone100_snapshot(circuit, 99.5))
        self.assertFalse(self.svc.should_create_milestone100_snapshot(circuit, 100))

    def test_qc_transition_with_debounce(self):
        qc = self._circuit(percent=100, status="QC")
        self.assertEqual(self.svc.pick_trigger(qc, "ACTIV", 40), TRIGGER_STATUS_TO_QC)
        self.svc.create_snapshot(qc, ROWS, TRIGGER_STATUS_TO_QC)

        self.clock.advance(hours=10)
        self.assertFalse(self.svc.should_create_qc_snapshot(qc, "REWRK"))
        self.clock.advance(hours=15)
        self.assertTrue(self.svc.should_create_qc_snapshot(qc, "REWRK"))
        self.assertFalse(self.svc.should_create_qc_snapshot(qc, "QC"))
        self.assertFalse(self.svc.should_create_qc_snapshot(self._circuit(status="ACTIV"), "QC"))

    def test_history_timeline_and_compare(self):
        first = self.svc.create_snapshot(self._circuit(), ROWS, TRIGGER_SCHEDULED)
        self.clock.advance(hours=1)
        newer_rows = [_unit_row(1, permission="Refused"), ROWS[1], _unit_row(4)]
        second = self.svc.create_snapshot(self._circuit(percent=40), newer_rows, TRIGGER_SCHEDULED)

        history = self.svc.get_history(self.circuit_id)
        self.assertEqual([s["id"] for s in history], [second["id"], first["id"]])
        self.assertNotIn("raw_json", history[0])
        self.assertEqual([s["id"] for s in self.svc.get_timeline(self.circuit_id)], [first["id"], second["id"]])
        self.assertEqual(self.svc.latest_for_circuit(self.circuit_id)["id"], second["id"])
        self.assertTrue(self.svc.has_trigger(self.circuit_id, TRIGGER_SCHEDULED))

        diff = self.svc.compare_snapshots(self.svc.get(first["id"]), self.svc.get(second["id"]))
        self.assertEqual([u["id"] for u in diff["added"]], [4])
        self.assertEqual([u["id"] for u in diff["removed"]], [3])
        self.assertEqual([c["id"] for c in diff["changed"]], [1])
        self.assertEqual(diff["changed"][0]["after"]["permission"], "Refused")


if __name__ == "__main__":
    unittest.main()
