import uuid, time
import sqlite3
from datetime import timedelta
import structlog
from ..db import get_conn, migrate, transaction
from ..config import settings
from ..cache_layer import CacheLayer, RegionLookup
from ..logging import bind_sync_context, clear_sync_context
from ..utils import RateLimiter, local_today, now_utc, now_utc_iso
from ..providers.credentials import CredentialManager
from ..providers.errors import WorkStudioError
from ..providers.workstudio import WorkStudioClient
from .aggregates import AggregateCalculator
from .circuit_sync import CircuitSync
from .circuits import CircuitTransformer
from .diff_aggregates import compare
from .locking import SYNC_LOCK_NAME, acquire_lock, release_lock
from .snapshots import SnapshotService
from .storage import latest_aggregate, store_circuit_aggregates, store_planner_aggregate, store_regional_aggregate
from .unit_types import UnitTypeCatalog
from .utils import start_sync_log, finish_sync_log, fail_sync_log, get_sync_log

log = structlog.get_logger()

CIRCUIT_LIST_TYPES = ("circuit_list", "full")
AGGREGATE_TYPES = ("aggregates", "full")

def trigger_sync(
    background,
    sync_type: str = "full",
    trigger: str = "manual",
    statuses: list[str] | None = None,
    triggered_by=None,
    circuit_ids: list[int] | None = None,
    cache: CacheLayer | None = None,
) -> str:
    run_id = str(uuid.uuid4())
    background.add_task(
        run_sync,
        run_id,
        sync_type=sync_type,
        trigger=trigger,
        statuses=statuses,
        triggered_by=triggered_by,
        circuit_ids=circuit_ids,
        cache=cache,
    )
    return run_id

def select_circuits_for_aggregates(
    conn: sqlite3.Connection,
    statuses: list[str] | None = None,
    circuit_ids: list[int] | None = None,
    interval_hours: int | None = None,
) -> list[dict]:
    """Explicit ids win; otherwise due, enabled, non-excluded circuits in the given statuses."""
    if circuit_ids:
        marks = ",".join("?" for _ in circuit_ids)
        rows = conn.execute(
            f"SELECT * FROM circuits WHERE id IN ({marks}) AND is_excluded=0 ORDER BY id",
            [int(c) for c in circuit_ids],
        ).fetchall()
        return [dict(r) for r in rows]

    statuses = statuses or settings.default_statuses()
    interval_hours = settings.planned_units_sync_interval_hours if interval_hours is None else interval_hours
    cutoff = (now_utc() - timedelta(hours=interval_hours)).isoformat()
    marks = ",".join("?" for _ in statuses)
    rows = conn.execute(
        f"""
        SELECT * FROM circuits
        WHERE api_status IN ({marks})
          AND is_excluded=0
          AND planned_units_sync_enabled=1
          AND (last_planned_units_synced_at_utc IS NULL OR last_planned_units_synced_at_utc < ?)
        ORDER BY id
        """,
        [*statuses, cutoff],
    ).fetchall()
    return [dict(r) for r in rows]

def _sync_circuit_list(conn, client, statuses: list[str], cache: CacheLayer, counters: dict) -> list[dict]:
    transformer = CircuitTransformer(RegionLookup(conn, cache))
    syncer = CircuitSync(conn)
    errors = []
    for status in statuses:
        rows = client.get_circuits_by_status(status)
        records = transformer.transform_all(rows)
        with transaction(conn):
            result = syncer.sync_circuits(records)
            for row, record in zip(rows, records):
                circuit_id = result["circuit_ids"].get(record.get("job_guid"))
                if circuit_id is not None:
                    syncer.sync_planners(circuit_id, transformer.extract_planners(row))
        counters["circuits_processed"] += len(records)
        counters["circuits_created"] += result["created"]
        counters["circuits_updated"] += result["updated"]
        errors.extend(result["errors"])
        log.info(
            "circuit_list_synced",
            status=status,
            received=len(rows),
            created=result["created"],
            updated=result["updated"],
            unchanged=result["unchanged"],
            errors=len(result["errors"]),
        )
    return errors

def _sync_aggregates(conn, client, circuits: list[dict], aggregate_date: str, counters: dict) -> list[dict]:
    calculator = AggregateCalculator(
        client,
        UnitTypeCatalog.load(conn),
        conn=conn,
        rate_limiter=RateLimiter(settings.sync_rate_limit_seconds),
    )
    results = calculator.calculate_for_circuits(circuits, aggregate_date)

    to_store = []
    errors = []
    for result in results:
        if not result.ok:
            to_store.append(result)
            errors.append({"circuit_id": result.circuit_id, "error": result.reason})
            continue
        diff = compare(result.data, latest_aggregate(conn, result.circuit_id))
        if diff["has_changes"]:
            to_store.append(result)
    stored = store_circuit_aggregates(conn, to_store)
    counters["aggregates_created"] += stored["stored"]

    snapshots = SnapshotService(conn)
    by_id = {c["id"]: c for c in circuits}
    stamped = now_utc_iso()
    with transaction(conn):
        for result in results:
            if not result.ok:
                continue
            circuit = by_id[result.circuit_id]
            snap = snapshots.create_snapshot_if_needed(
                circuit,
                result.units,
                previous_status=circuit.get("snapshot_seen_status"),
                previous_percent=circuit.get("snapshot_seen_percent"),
            )
            if snap:
                counters["snapshots_created"] += 1
            conn.execute(
                """
                UPDATE circuits SET last_planned_units_synced_at_utc=?,
                  snapshot_seen_status=?, snapshot_seen_percent=?
                WHERE id=?
                """,
                (stamped, circuit.get("api_status"), circuit.get("percent_complete"), circuit["id"]),
            )

    with transaction(conn):
        regions = [r[0] for r in conn.execute("SELECT id FROM regions WHERE is_active=1").fetchall()]
        for region_id in regions:
            store_regional_aggregate(conn, calculator.calculate_for_region(region_id, aggregate_date))
        pairs = conn.execute(
            """
            SELECT DISTINCT p.id, p.ws_username, p.display_name, c.region_id
            FROM planners p
            JOIN circuit_planners cp ON cp.planner_id = p.id
            JOIN circuits c ON c.id = cp.circuit_id
            WHERE c.is_excluded=0 AND c.region_id IS NOT NULL
            """
        ).fetchall()
        for planner_id, username, display_name, region_id in pairs:
            planner = {"id": planner_id, "ws_username": username, "display_name": display_name}
            store_planner_aggregate(conn, calculator.calculate_for_planner(planner, region_id, aggregate_date))

    log.info(
        "aggregates_synced",
        circuits=len(circuits),
        stored=stored["stored"],
        unchanged=len(results) - len(to_store),
        errors=len(errors),
        snapshots=counters["snapshots_created"],
    )
    return errors

def run_sync(
    run_id: str,
    sync_type: str = "full",
    trigger: str = "scheduled",
    statuses: list[str] | None = None,
    triggered_by=None,
    circuit_ids: list[int] | None = None,
    conn: sqlite3.Connection | None = None,
    client=None,
    cache: CacheLayer | None = None,
) -> dict:
    conn = conn or get_conn(settings.db_path)
    migrate(conn)
    statuses = statuses or settings.default_statuses()
    start_sync_log(
        conn,
        run_id,
        sync_type,
        trigger,
        statuses,
        triggered_by,
        context={"circuit_ids": circuit_ids} if circuit_ids else None,
    )
    log.info("sync_started", run_id=run_id, sync_type=sync_type, trigger=trigger, statuses=statuses)

    if not acquire_lock(conn, SYNC_LOCK_NAME, run_id, settings.sync_lock_ttl_seconds):
        log.warning("sync_lock_held", run_id=run_id)
        fail_sync_log(conn, run_id, "lock_held")
        return get_sync_log(conn, run_id)

    own_client = client is None
    if own_client:
        client = WorkStudioClient(CredentialManager(conn))
    counters = {
        "circuits_processed": 0,
        "circuits_created": 0,
        "circuits_updated": 0,
        "aggregates_created": 0,
        "snapshots_created": 0,
    }
    bind_sync_context(run_id, sync_type)
    try:
        def _step_start(step: str):
            log.info("sync_step_start", run_id=run_id, step=step)
            return time.monotonic()

        def _step_done(step: str, started: float, **fields):
            log.info(
                "sync_step_done",
                run_id=run_id,
                step=step,
                elapsed_sec=round(time.monotonic() - started, 2),
                **fields,
            )

        started = _step_start("health_check")
        healthy = client.health_check()
        _step_done("health_check", started, healthy=healthy)
        if not healthy:
            fail_sync_log(conn, run_id, "workstudio_unavailable", counters)
            log.error("sync_failed", run_id=run_id, err="workstudio_unavailable")
            return get_sync_log(conn, run_id)

        errors = []
        if sync_type in CIRCUIT_LIST_TYPES:
            started = _step_start("circuit_list")
            errors += _sync_circuit_list(conn, client, statuses, cache or CacheLayer(), counters)
            _step_done("circuit_list", started, processed=counters["circuits_processed"])

        if sync_type in AGGREGATE_TYPES:
            started = _step_start("aggregates")
            circuits = select_circuits_for_aggregates(conn, statuses, circuit_ids)
            aggregate_date = local_today(settings.local_tz).isoformat()
            agg_errors = _sync_aggregates(conn, client, circuits, aggregate_date, counters)
            errors += agg_errors
            if sync_type == "aggregates":
                counters["circuits_processed"] += len(circuits) - len(agg_errors)
            _step_done("aggregates", started, circuits=len(circuits), errors=len(agg_errors))

        if not errors:
            finish_sync_log(conn, run_id, "completed", counters)
        elif counters["circuits_processed"] > 0 or counters["aggregates_created"] > 0:
            finish_sync_log(
                conn,
                run_id,
                "warning",
                counters,
                error_message=f"{len(errors)} item(s) failed",
                error_details={"errors": errors[:100]},
            )
        else:
            fail_sync_log(conn, run_id, f"all {len(errors)} item(s) failed", counters, {"errors": errors[:100]})
        result = get_sync_log(conn, run_id)
        log.info("sync_finished", run_id=run_id, status=result["sync_status"], **counters)
        return result
    except Exception as e:
        log.error("sync_failed", run_id=run_id, err_type=type(e).__name__, err=str(e))
        details = e.context() if isinstance(e, WorkStudioError) else {"error_type": type(e).__name__}
        fail_sync_log(conn, run_id, str(e), counters, details)
        raise
    finally:
        clear_sync_context()
        release_lock(conn, SYNC_LOCK_NAME, run_id)
        if own_client:
            client.close()

def get_status(run_id: str):
    conn = get_conn(settings.db_path)
    migrate(conn)
    return get_sync_log(conn, run_id)
