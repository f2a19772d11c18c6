import json, sqlite3
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import structlog
from ..config import settings
from ..utils import RateLimiter, local_today
from ..providers.errors import (
    INFRASTRUCTURE_ERRORS,
    CircuitCalculationError,
    WorkStudioError,
)
from .unit_types import UnitTypeCatalog
from .units import build_circuit_aggregate, empty_aggregate, units_for_extension
from .storage import latest_aggregate

log = structlog.get_logger()

@dataclass
class AggregateOk:
    circuit_id: int
    data: dict
    units: list = field(default_factory=list, repr=False)
    ok: bool = field(default=True, init=False)

@dataclass
class AggregateErr:
    circuit_id: int
    reason: str
    data: dict
    ok: bool = field(default=False, init=False)


def _loads(value, default):
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return default

class AggregateCalculator:
    """
    Builds aggregates from planned units.
    - Circuit level: fetched from WorkStudio (or supplied rows)
    - Planner/region level: rolled up from stored circuit aggregates
    """
    def __init__(
        self,
        client,
        catalog: UnitTypeCatalog,
        conn: sqlite3.Connection | None = None,
        rate_limiter: RateLimiter | None = None,
        max_workers: int | None = None,
    ):
        self.client = client
        self.catalog = catalog
        self.conn = conn
        self.rate_limiter = rate_limiter or RateLimiter(0)
        self.max_workers = max(1, int(settings.sync_max_workers if max_workers is None else max_workers))

    def today(self) -> str:
        return local_today(settings.local_tz).isoformat()

    def _stamp(self, data: dict, circuit: dict, aggregate_date: str) -> dict:
        data["circuit_id"] = circuit["id"]
        data["aggregate_date"] = aggregate_date
        data["is_rollup"] = False
        return data

    def fetch_units(self, circuit: dict) -> list[dict]:
        """Planned-unit rows for the circuit's work order, narrowed to its extension."""
        self.rate_limiter.wait()
        raw_units = self.client.get_planned_units(circuit["work_order"])
        return units_for_extension(raw_units, circuit.get("extension"))

    def calculate_for_circuit(self, circuit: dict, raw_units: list[dict] | None = None, aggregate_date: str | None = None) -> dict:
        aggregate_date = aggregate_date or self.today()
        if raw_units is None:
            rows = self.fetch_units(circuit)
        else:
            rows = units_for_extension(raw_units, circuit.get("extension"))
        data = build_circuit_aggregate(rows, self.catalog)
        return self._stamp(data, circuit, aggregate_date)

    def _calculate_one(self, circuit: dict, aggregate_date: str):
        try:
            rows = self.fetch_units(circuit)
            data = self.calculate_for_circuit(circuit, raw_units=rows, aggregate_date=aggregate_date)
            return AggregateOk(circuit["id"], data, units=rows)
        except INFRASTRUCTURE_ERRORS:
            raise
        except (WorkStudioError, ValueError, TypeError, KeyError) as e:
            err = e if isinstance(e, CircuitCalculationError) else CircuitCalculationError(
                str(e), circuit_id=circuit.get("id"), work_order=circuit.get("work_order")
            )
            log.error(
                "circuit_aggregate_failed",
                circuit_id=circuit.get("id"),
                work_order=circuit.get("work_order"),
                err_type=type(e).__name__,
                err=str(e),
            )
            data = self._stamp(empty_aggregate(), circuit, aggregate_date)
            data["error_message"] = err.message
            return AggregateErr(circuit["id"], err.message, data)

    def calculate_for_circuits(self, circuits: list[dict], aggregate_date: str | None = None) -> list:
        """Per-circuit results in input order; infrastructure errors abort the batch."""
        aggregate_date = aggregate_date or self.today()
        if self.max_workers <= 1 or len(circuits) <= 1:
            return [self._calculate_one(c, aggregate_date) for c in circuits]

        with ThreadPoolExecutor(max_workers=self.max_workers) as ex:
            futures = [ex.submit(self._calculate_one, c, aggregate_date) for c in circuits]
            results = []
            try:
                for f in futures:
                    results.append(f.result())
            except INFRASTRUCTURE_ERRORS:
                for f in futures:
                    f.cancel()
                raise
        return results

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("stored rollups need a database connection")
        return self.conn

    def calculate_for_planner(self, planner: dict, region_id: int, aggregate_date: str | None = None) -> dict:
        """Planner totals for a region from the latest stored circuit aggregates.

        Permission counts are circuit level. They are attributed by the
        planner's share of the circuit's units, rounded per circuit, so totals
        across planners need not add up to the circuit totals.
        """
        conn = self._require_conn()
        aggregate_date = aggregate_date or self.today()
        circuits = conn.execute(
            """
            SELECT c.id, c.miles_planned
            FROM circuits c
            JOIN circuit_planners cp ON cp.circuit_id = c.id
            WHERE cp.planner_id = ? AND c.region_id = ? AND c.is_excluded = 0
            ORDER BY c.id
            """,
            (planner["id"], region_id),
        ).fetchall()

        totals = {
            "planner_id": planner["id"],
            "region_id": region_id,
            "aggregate_date": aggregate_date,
            "circuits_worked": len(circuits),
            "total_units_assessed": 0,
            "total_linear_ft": 0.0,
            "total_acres": 0.0,
            "total_trees": 0,
            "miles_planned": 0.0,
            "units_approved": 0,
            "units_refused": 0,
            "units_pending": 0,
            "unit_counts_by_type": {},
            "circuits_list": [row[0] for row in circuits],
        }
        names = [n for n in (planner.get("ws_username"), planner.get("display_name")) if n]
        counts_by_type = defaultdict(int)

        for circuit_id, miles_planned in circuits:
            totals["miles_planned"] += float(miles_planned or 0)
            agg = latest_aggregate(conn, circuit_id)
            if not agg:
                continue
            distribution = _loads(agg.get("planner_distribution"), {})
            share = next((distribution[n] for n in names if n in distribution), None)
            if not share:
                continue
            unit_count = int(share.get("unit_count") or 0)
            totals["total_units_assessed"] += unit_count
            totals["total_linear_ft"] += float(share.get("linear_ft") or 0)
            totals["total_acres"] += float(share.get("acres") or 0)
            totals["total_trees"] += int(share.get("trees") or 0)

            total_units = int(agg.get("total_units") or 0)
            if total_units > 0:
                ratio = unit_count / total_units
                totals["units_approved"] += int(round(agg["units_approved"] * ratio))
                totals["units_refused"] += int(round(agg["units_refused"] * ratio))
                totals["units_pending"] += int(round(agg["units_pending"] * ratio))
                for code, count in _loads(agg.get("unit_counts_by_type"), {}).items():
                    counts_by_type[code] += int(round(count * ratio))

        totals["total_linear_ft"] = round(totals["total_linear_ft"], 2)
        totals["total_acres"] = round(totals["total_acres"], 4)
        totals["miles_planned"] = round(totals["miles_planned"], 4)
        totals["unit_counts_by_type"] = {k: v for k, v in counts_by_type.items() if v > 0}
        return totals

    def calculate_for_region(self, region_id: int, aggregate_date: str | None = None) -> dict:
        conn = self._require_conn()
        aggregate_date = aggregate_date or self.today()
        circuit_ids = [
            row[0]
            for row in conn.execute(
                "SELECT id FROM circuits WHERE region_id=? AND is_excluded=0 ORDER BY id", (region_id,)
            ).fetchall()
        ]
        planner_count = conn.execute(
            """
            SELECT COUNT(DISTINCT cp.planner_id)
            FROM circuit_planners cp JOIN circuits c ON c.id = cp.circuit_id
            WHERE c.region_id = ? AND c.is_excluded = 0
            """,
            (region_id,),
        ).fetchone()[0]

        totals = {
            "region_id": region_id,
            "aggregate_date": aggregate_date,
            "total_circuits": len(circuit_ids),
            "total_planners": planner_count,
            "total_units": 0,
            "total_linear_ft": 0.0,
            "total_acres": 0.0,
            "total_trees": 0,
            "units_approved": 0,
            "units_refused": 0,
            "units_pending": 0,
            "unit_counts_by_type": {},
            "permission_counts": {},
        }
        counts_by_type = defaultdict(int)
        for circuit_id in circuit_ids:
            agg = latest_aggregate(conn, circuit_id)
            if not agg:
                continue
            for key in ("total_units", "total_trees", "units_approved", "units_refused", "units_pending"):
                totals[key] += int(agg.get(key) or 0)
            totals["total_linear_ft"] += float(agg.get("total_linear_ft") or 0)
            totals["total_acres"] += float(agg.get("total_acres") or 0)
            for code, count in _loads(agg.get("unit_counts_by_type"), {}).items():
                counts_by_type[code] += int(count)

        totals["total_linear_ft"] = round(totals["total_linear_ft"], 2)
        totals["total_acres"] = round(totals["total_acres"], 4)
        totals["unit_counts_by_type"] = dict(counts_by_type)
        totals["permission_counts"] = {
            "approved": totals["units_approved"],
            "refused": totals["units_refused"],
            "pending": totals["units_pending"],
        }
        return totals
