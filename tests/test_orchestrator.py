import sqlite3
import unittest
from datetime import timedelta

from vegsync.db import get_conn, migrate
from vegsync.pipeline.locking import SYNC_LOCK_NAME, acquire_lock, held_lock, lock_holder, release_lock
from vegsync.pipeline.orchestrator import run_sync, select_circuits_for_aggregates, trigger_sync
from vegsync.pipeline.utils import (
    fail_sync_log,
    finish_sync_log,
    get_sync_log,
    list_sync_logs,
    start_sync_log,
)
from vegsync.providers.errors import AuthenticationError, RemoteQueryError
from vegsync.utils import now_utc


def _db():
    conn = get_conn(":memory:")
    migrate(conn)
    return conn


def _circuit_row(guid, work_order, status="ACTIV", percent="40"):
    return {
        "SS_JOBGUID": guid,
        "SS_WO": work_order,
        "SS_EXT": "@",
        "REGION": "Lancaster",
        "WSREQ_STATUS": status,
        "VEGJOB_LENGTH": "10",
        "VEGJOB_LENGTHCOMP": "4",
        "VEGJOB_PRCENT": percent,
        "VEGJOB_FORESTER": "jdoe",
    }


def _unit_rows(work_order, count=2):
    return [
        {
            "SSUNITS_OBJECTID": i,
            "SS_WO": work_order,
            "SS_EXT": "@",
            "VEGUNIT_UNIT": "SPM",
            "VEGUNIT_PERMSTAT": "Approved",
            "VEGUNIT_FORESTER": "jdoe",
            "JOBVEGETATIONUNITS_LENGTHWRK": 100,
        }
        for i in range(1, count + 1)
    ]


def _insert_circuit(conn, guid, work_order, status="ACTIV", percent=30.0, excluded=0, enabled=1, synced_at=None):
    region = conn.execute("SELECT id FROM regions WHERE name='Lancaster'").fetchone()[0]
    cur = conn.execute(
        """
        INSERT INTO circuits(job_guid, work_order, region_id, api_status, percent_complete, is_excluded,
                             planned_units_sync_enabled, last_planned_units_synced_at_utc,
                             created_at_utc, updated_at_utc)
        VALUES(?,?,?,?,?,?,?,?, '2025-06-01T00:00:00+00:00', '2025-06-01T00:00:00+00:00')
        """,
        (guid, work_order, region, status, percent, excluded, enabled, synced_at),
    )
    return cur.lastrowid


class FakeWorkStudio:
    def __init__(self, circuits_by_status=None, units_by_wo=None, healthy=True, errors=None):
        self.circuits_by_status = circuits_by_status or {}
        self.units_by_wo = units_by_wo or {}
        self.healthy = healthy
        self.errors = errors or {}
        self.health_calls = 0
        self.closed = False

    def health_check(self):
        self.health_calls += 1
        return self.healthy

    def get_circuits_by_status(self, status, user_id=None):
        if status in self.errors:
            raise self.errors[status]
        return self.circuits_by_status.get(status, [])

    def get_planned_units(self, work_order, user_id=None):
        if work_order in self.errors:
            raise self.errors[work_order]
        return self.units_by_wo.get(work_order, [])

    def close(self):
        self.closed = True


class _Background:
    def __init__(self):
        self.tasks = []

    def add_task(self, fn, *args, **kwargs):
        self.tasks.append((fn, args, kwargs))


class RunSyncTests(unittest.TestCase):
    def setUp(self):
        self.conn = _db()

    def _run(self, client, run_id="run-1", **kwargs):
        kwargs.setdefault("statuses", ["ACTIV"])
        return run_sync(run_id, conn=self.conn, client=client, **kwargs)

    def test_full_run_completes(self):
        client = FakeWorkStudio(
            circuits_by_status={"ACTIV": [_circuit_row("{C1}", "2025-7001"), _circuit_row("{C2}", "2025-7002")]},
            units_by_wo={"2025-7001": _unit_rows("2025-7001"), "2025-7002": _unit_rows("2025-7002", 3)},
        )
        result = self._run(client)
        self.assertEqual(result["sync_status"], "completed")
        self.assertEqual(result["circuits_processed"], 2)
        self.assertEqual(result["circuits_created"], 2)
        self.assertEqual(result["aggregates_created"], 2)
        self.assertEqual(result["snapshots_created"], 2)
        self.assertEqual(result["api_status_filter"], "ACTIV")
        self.assertIsNone(lock_holder(self.conn, SYNC_LOCK_NAME))
        self.assertFalse(client.closed)

        seen = self.conn.execute(
            "SELECT snapshot_seen_status, snapshot_seen_percent, last_planned_units_synced_at_utc FROM circuits WHERE job_guid='{C1}'"
        ).fetchone()
        self.assertEqual((seen[0], seen[1]), ("ACTIV", 40.0))
        self.assertIsNotNone(seen[2])
        linked = self.conn.execute("SELECT COUNT(*) FROM circuit_planners").fetchone()[0]
        self.assertEqual(linked, 2)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM planner_daily_aggregates").fetchone()[0], 1)

    def test_second_run_skips_recently_synced_circuits(self):
        client = FakeWorkStudio(
            circuits_by_status={"ACTIV": [_circuit_row("{C1}", "2025-7001")]},
            units_by_wo={"2025-7001": _unit_rows("2025-7001")},
        )
        self._run(client, run_id="run-1")
        second = self._run(client, run_id="run-2")
        self.assertEqual(second["sync_status"], "completed")
        self.assertEqual(second["circuits_created"], 0)
        self.assertEqual(second["circuits_updated"], 0)
        self.assertEqual(second["aggregates_created"], 0)
        self.assertEqual(second["snapshots_created"], 0)

    def test_lock_held_fails_without_touching_remote(self):
        acquire_lock(self.conn, SYNC_LOCK_NAME, "other-run", 3600)
        client = FakeWorkStudio()
        result = self._run(client)
        self.assertEqual(result["sync_status"], "failed")
        self.assertEqual(result["error_message"], "lock_held")
        self.assertEqual(client.health_calls, 0)
        self.assertEqual(lock_holder(self.conn, SYNC_LOCK_NAME)["owner"], "other-run")

    def test_unhealthy_remote_fails_the_run(self):
        result = self._run(FakeWorkStudio(healthy=False))
        self.assertEqual(result["sync_status"], "failed")
        self.assertEqual(result["error_message"], "workstudio_unavailable")
        self.assertIsNone(lock_holder(self.conn, SYNC_LOCK_NAME))

    def test_authentication_error_is_recorded_and_raised(self):
        client = FakeWorkStudio(errors={"ACTIV": AuthenticationError("unauthorized", status_code=401)})
        with self.assertRaises(AuthenticationError):
            self._run(client)
        log = get_sync_log(self.conn, "run-1")
        self.assertEqual(log["sync_status"], "failed")
        self.assertEqual(log["error_message"], "unauthorized")
        self.assertEqual(log["error_details_json"], {"error": "unauthorized", "status_code": 401})
        self.assertIsNone(lock_holder(self.conn, SYNC_LOCK_NAME))

    def test_partial_failures_end_in_warning(self):
        ok = _insert_circuit(self.conn, "{P1}", "2025-8001")
        bad = _insert_circuit(self.conn, "{P2}", "2025-8002")
        client = FakeWorkStudio(
            units_by_wo={"2025-8001": _unit_rows("2025-8001")},
            errors={"2025-8002": RemoteQueryError("query rejected", remote_message="bad column")},
        )
        result = self._run(client, sync_type="aggregates", circuit_ids=[ok, bad])
        self.assertEqual(result["sync_status"], "warning")
        self.assertEqual(result["error_message"], "1 item(s) failed")
        self.assertEqual(result["error_details_json"]["errors"][0]["circuit_id"], bad)
        self.assertEqual(result["circuits_processed"], 1)
        self.assertEqual(result["aggregates_created"], 1)
        self.assertEqual(result["snapshots_created"], 1)
        self.assertEqual(result["context_json"], {"circuit_ids": [ok, bad]})
        error_row = self.conn.execute("SELECT error_message FROM circuit_aggregates WHERE circuit_id=?", (bad,)).fetchone()
        self.assertEqual(error_row[0], "query rejected")

    def test_everything_failing_fails_the_run(self):
        a = _insert_circuit(self.conn, "{F1}", "2025-9001")
        b = _insert_circuit(self.conn, "{F2}", "2025-9002")
        err = RemoteQueryError("query rejected")
        client = FakeWorkStudio(errors={"2025-9001": err, "2025-9002": err})
        result = self._run(client, sync_type="aggregates", circuit_ids=[a, b])
        self.assertEqual(result["sync_status"], "failed")
        self.assertEqual(result["error_message"], "all 2 item(s) failed")

    def test_unknown_sync_type_rejected(self):
        with self.assertRaises(ValueError):
            self._run(FakeWorkStudio(), sync_type="everything")

    def test_trigger_sync_queues_background_task(self):
        background = _Background()
        run_id = trigger_sync(background, sync_type="circuit_list", statuses=["QC"], triggered_by="admin")
        self.assertEqual(len(background.tasks), 1)
        fn, args, kwargs = background.tasks[0]
        self.assertIs(fn, run_sync)
        self.assertEqual(args, (run_id,))
        self.assertEqual(kwargs["trigger"], "manual")
        self.assertEqual(kwargs["sync_type"], "circuit_list")
        self.assertEqual(kwargs["statuses"], ["QC"])


class CircuitSelectionTests(unittest.TestCase):
    def test_due_circuits_only(self):
        conn = _db()
        recent = (now_utc() - timedelta(hours=1)).isoformat()
        stale = (now_utc() - timedelta(hours=48)).isoformat()
        due = _insert_circuit(conn, "{S1}", "2025-1", synced_at=stale)
        never = _insert_circuit(conn, "{S2}", "2025-2")
        _insert_circuit(conn, "{S3}", "2025-3", synced_at=recent)
        _insert_circuit(conn, "{S4}", "2025-4", excluded=1)
        _insert_circuit(conn, "{S5}", "2025-5", enabled=0)
        _insert_circuit(conn, "{S6}", "2025-6", status="CLOSE")
        selected = select_circuits_for_aggregates(conn, statuses=["ACTIV"], interval_hours=12)
        self.assertEqual([c["id"] for c in selected], [due, never])

    def test_explicit_ids_skip_excluded(self):
        conn = _db()
        a = _insert_circuit(conn, "{E1}", "2025-1", synced_at=now_utc().isoformat())
        b = _insert_circuit(conn, "{E2}", "2025-2", excluded=1)
        selected = select_circuits_for_aggregates(conn, circuit_ids=[b, a])
        self.assertEqual([c["id"] for c in selected], [a])


class SyncLogTests(unittest.TestCase):
    def test_finalized_once(self):
        conn = _db()
        start_sync_log(conn, "r1", "full", "manual", ["ACTIV", "QC"], triggered_by=42)
        log = get_sync_log(conn, "r1")
        self.assertEqual(log["sync_status"], "started")
        self.assertEqual(log["api_status_filter"], "ACTIV,QC")
        self.assertEqual(log["triggered_by"], "42")

        self.assertTrue(finish_sync_log(conn, "r1", "completed", {"circuits_processed": 3}))
        self.assertFalse(fail_sync_log(conn, "r1", "late failure"))
        log = get_sync_log(conn, "r1")
        self.assertEqual(log["sync_status"], "completed")
        self.assertEqual(log["circuits_processed"], 3)
        self.assertIsNone(log["error_message"])
        self.assertGreaterEqual(log["duration_seconds"], 0)

    def test_reused_run_id_is_rejected(self):
        conn = _db()
        start_sync_log(conn, "r1", "full", "manual")
        finish_sync_log(conn, "r1", "completed", {"circuits_processed": 3})
        with self.assertRaises(sqlite3.IntegrityError):
            start_sync_log(conn, "r1", "aggregates", "scheduled")
        log = get_sync_log(conn, "r1")
        self.assertEqual(log["sync_status"], "completed")
        self.assertEqual(log["sync_type"], "full")
        self.assertEqual(log["circuits_processed"], 3)

    def test_error_message_truncated(self):
        conn = _db()
        start_sync_log(conn, "r2")
        fail_sync_log(conn, "r2", "x" * 1500, details={"sql": "SELECT 1"})
        log = get_sync_log(conn, "r2")
        self.assertEqual(len(log["error_message"]), 1000)
        self.assertEqual(log["error_details_json"], {"sql": "SELECT 1"})

    def test_validation_and_listing(self):
        conn = _db()
        with self.assertRaises(ValueError):
            start_sync_log(conn, "bad", "partial")
        with self.assertRaises(ValueError):
            start_sync_log(conn, "bad", "full", "cron")
        start_sync_log(conn, "a")
        start_sync_log(conn, "b")
        fail_sync_log(conn, "b", "boom")
        self.assertEqual(len(list_sync_logs(conn)), 2)
        self.assertEqual([r["run_id"] for r in list_sync_logs(conn, status="failed")], ["b"])
        self.assertEqual(len(list_sync_logs(conn, limit=1)), 1)


class LockTests(unittest.TestCase):
    def test_exclusive_and_reentrant(self):
        conn = _db()
        self.assertTrue(acquire_lock(conn, "job", "a", 60))
        self.assertTrue(acquire_lock(conn, "job", "a", 60))
        self.assertFalse(acquire_lock(conn, "job", "b", 60))
        release_lock(conn, "job", "b")
        self.assertEqual(lock_holder(conn, "job")["owner"], "a")
        release_lock(conn, "job", "a")
        self.assertIsNone(lock_holder(conn, "job"))

    def test_expired_lock_is_taken_over(self):
        conn = _db()
        past = (now_utc() - timedelta(minutes=5)).isoformat()
        conn.execute(
            "INSERT INTO locks(name, owner, acquired_at_utc, expires_at_utc) VALUES('job','stale',?,?)",
            (past, past),
        )
        self.assertTrue(acquire_lock(conn, "job", "fresh", 60))
        self.assertEqual(lock_holder(conn, "job")["owner"], "fresh")

    def test_held_lock_context(self):
        conn = _db()
        with held_lock(conn, "job", "a") as got:
            self.assertTrue(got)
            with held_lock(conn, "job", "b") as other:
                self.assertFalse(other)
            self.assertEqual(lock_holder(conn, "job")["owner"], "a")
        self.assertIsNone(lock_holder(conn, "job"))


if __name__ == "__main__":
    unittest.main()
