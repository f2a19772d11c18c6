from collections import defaultdict
from ..utils import to_number
from .circuits import normalize_extension
from .responses import parse_ws_date
from .unit_types import UnitTypeCatalog, LINEAR_FT, ACRES, TREE_COUNT

UNIT_FIELD_MAP = {
    "VEGJOB_REGION": "region",
    "SS_WO": "work_order",
    "SS_EXT": "extension",
    "VEGUNIT_UNIT": "unit_type",
    "VEGUNIT_PERMSTAT": "permission_status",
    "VEGUNIT_FORESTER": "forester",
    "JOBVEGETATIONUNITS_NUMTREES": "num_trees",
    "JOBVEGETATIONUNITS_LENGTHWRK": "length_work",
    "JOBVEGETATIONUNITS_ACRES": "acres",
    "VEGUNIT_ASSDDATE": "assess_date",
    "SSUNITS_OBJECTID": "object_id",
}

UNIT_NUMERIC_FIELDS = ("num_trees", "length_work", "acres")

UNIT_TYPE = "VEGUNIT_UNIT"
PERMISSION = "VEGUNIT_PERMSTAT"
FORESTER = "VEGUNIT_FORESTER"
TREES = "JOBVEGETATIONUNITS_NUMTREES"
LENGTH = "JOBVEGETATIONUNITS_LENGTHWRK"
AREA = "JOBVEGETATIONUNITS_ACRES"

def transform_planned_unit(row: dict) -> dict:
    unit = {dst: row[src] for src, dst in UNIT_FIELD_MAP.items() if src in row}
    for field in UNIT_NUMERIC_FIELDS:
        if field in unit:
            unit[field] = to_number(unit[field], 0.0)
    if "extension" in unit:
        unit["extension"] = normalize_extension(unit["extension"])
    if "assess_date" in unit:
        unit["assess_date"] = parse_ws_date(unit["assess_date"])
    return unit

def units_for_extension(rows: list[dict], extension) -> list[dict]:
    ext = normalize_extension(extension)
    return [r for r in rows if normalize_extension(r.get("SS_EXT")) == ext]

def is_pending(status) -> bool:
    if status is None:
        return True
    text = str(status).strip()
    return not text or text.lower() == "pending"

def empty_aggregate() -> dict:
    return {
        "total_units": 0,
        "total_linear_ft": 0.0,
        "total_acres": 0.0,
        "total_trees": 0,
        "units_approved": 0,
        "units_refused": 0,
        "units_pending": 0,
        "unit_counts_by_type": {},
        "linear_ft_by_type": {},
        "acres_by_type": {},
        "planner_distribution": {},
        "permission_counts": {},
    }

def _label(value, fallback: str = "Unknown") -> str:
    if value is None:
        return fallback
    text = str(value).strip()
    return text or fallback

def _sum_by_type(rows: list[dict], field: str, codes: set[str]) -> dict:
    sums = defaultdict(float)
    for r in rows:
        code = r.get(UNIT_TYPE)
        if code in codes:
            sums[code] += to_number(r.get(field))
    return {code: round(total, 4) for code, total in sums.items() if round(total, 4) > 0}

def build_circuit_aggregate(rows: list[dict], catalog: UnitTypeCatalog) -> dict:
    """Totals and breakdowns for one circuit's planned-unit rows.

    Linear feet, acres and trees only count units whose type measures that
    quantity. Breakdown dicts keep positive sums only.
    """
    if not rows:
        return empty_aggregate()

    linear_codes = catalog.codes_for(LINEAR_FT)
    acre_codes = catalog.codes_for(ACRES)
    tree_codes = catalog.codes_for(TREE_COUNT)

    total_linear_ft = 0.0
    total_acres = 0.0
    total_trees = 0.0
    approved = refused = pending = 0
    counts_by_type = defaultdict(int)
    permission_counts = defaultdict(int)
    planners = {}

    for r in rows:
        code = r.get(UNIT_TYPE)
        status = r.get(PERMISSION)
        if code in linear_codes:
            total_linear_ft += to_number(r.get(LENGTH))
        if code in acre_codes:
            total_acres += to_number(r.get(AREA))
        if code in tree_codes:
            total_trees += to_number(r.get(TREES))

        if status == "Approved":
            approved += 1
        elif status == "Refused":
            refused += 1
        elif is_pending(status):
            pending += 1

        counts_by_type[_label(code)] += 1
        permission_counts[_label(status)] += 1

        forester = _label(r.get(FORESTER))
        p = planners.setdefault(forester, {"unit_count": 0, "linear_ft": 0.0, "acres": 0.0, "trees": 0.0})
        p["unit_count"] += 1
        p["linear_ft"] += to_number(r.get(LENGTH))
        p["acres"] += to_number(r.get(AREA))
        p["trees"] += to_number(r.get(TREES))

    planner_distribution = {
        name: {
            "unit_count": p["unit_count"],
            "linear_ft": round(p["linear_ft"], 2),
            "acres": round(p["acres"], 4),
            "trees": int(p["trees"]),
        }
        for name, p in planners.items()
    }

    return {
        "total_units": len(rows),
        "total_linear_ft": round(total_linear_ft, 2),
        "total_acres": round(total_acres, 4),
        "total_trees": int(total_trees),
        "units_approved": approved,
        "units_refused": refused,
        "units_pending": pending,
        "unit_counts_by_type": dict(counts_by_type),
        "linear_ft_by_type": _sum_by_type(rows, LENGTH, linear_codes),
        "acres_by_type": _sum_by_type(rows, AREA, acre_codes),
        "planner_distribution": planner_distribution,
        "permission_counts": dict(permission_counts),
    }
