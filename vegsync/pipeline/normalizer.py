import json
from collections import defaultdict
from datetime import datetime
from ..utils import sha256_json, now_utc_iso, to_number
from .responses import parse_ws_date

# remote field -> snapshot unit key
SNAPSHOT_UNIT_FIELDS = {
    "SSUNITS_OBJECTID": "id",
    "STATIONS_STATNAME": "station",
    "VEGUNIT_UNIT": "type",
    "UNITS_DESCRIPTIO": "desc",
    "VEGUNIT_REMOVCAT": "removal_cat",
    "VEGUNIT_PERMSTAT": "permission",
    "JOBVEGETATIONUNITS_NUMTREES": "trees",
    "JOBVEGETATIONUNITS_LENGTHWRK": "linear_ft",
    "JOBVEGETATIONUNITS_ACRES": "acres",
    "VEGUNIT_ASSDDATE": "assessed",
    "VEGUNIT_ASSLAT": "lat",
    "VEGUNIT_ASSLONG": "lng",
    "VEGUNIT_SPECIES": "species",
    "VEGUNIT_ASSNOTE": "notes",
    "VEGUNIT_PARCELCOMMENTS": "parcel_comments",
    "VEGUNIT_UNIT_CLASS": "unit_class",
    "VEGUNIT_AUDIT_PASS": "audit_pass",
    "VEGUNIT_AUDITOR": "auditor",
    "VEGUNIT_AUDITDATE": "audit_date",
    "VEGSTAT_FROMSTR": "from_structure",
    "VEGSTAT_TOSTR": "to_structure",
}

SNAPSHOT_META_FIELDS = {
    "VEGJOB_REGION": "region",
    "VEGJOB_CYCLETYPE": "cycle_type",
    "VEGSTAT_LINENAME": "line_name",
    "LineIDLookup_FeederID": "feeder_id",
    "VEGUNIT_FORESTER": "forester",
    "VEGJOB_CONTRACTOR": "contractor",
    "SS_WO": "work_order",
    "SS_EXT": "extension",
}

DECIMAL_KEYS = ("linear_ft", "acres", "lat", "lng")
DATE_KEYS = ("assessed", "audit_date")
FALSE_STRINGS = ("0", "false", "no", "n", "f")

def _date_str(value) -> str | None:
    dt = value if isinstance(value, datetime) else parse_ws_date(value)
    return dt.date().isoformat() if dt else None

def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return bool(value)

def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value

def normalize_unit(row: dict) -> dict:
    unit = {}
    for src, key in SNAPSHOT_UNIT_FIELDS.items():
        if src not in row:
            continue
        value = row[src]
        if value is None or value == "":
            continue
        if key == "trees":
            unit[key] = int(to_number(value))
        elif key in DECIMAL_KEYS:
            unit[key] = to_number(value)
        elif key in DATE_KEYS:
            unit[key] = _date_str(value)
        elif key == "audit_pass":
            unit[key] = _as_bool(value)
        else:
            unit[key] = _jsonable(value)
    return unit

def extract_meta(row: dict) -> dict:
    return {
        key: _jsonable(row[src])
        for src, key in SNAPSHOT_META_FIELDS.items()
        if row.get(src) is not None and row.get(src) != ""
    }

def compute_summary(units: list[dict]) -> dict:
    total_trees = 0
    total_linear_ft = 0.0
    total_acres = 0.0
    by_permission = defaultdict(int)
    by_type = defaultdict(int)
    by_station = defaultdict(int)
    for unit in units:
        total_trees += unit.get("trees", 0)
        total_linear_ft += unit.get("linear_ft", 0.0)
        total_acres += unit.get("acres", 0.0)
        by_permission[str(unit.get("permission", "Unknown"))] += 1
        by_type[str(unit.get("type", "Unknown"))] += 1
        by_station[str(unit.get("station", "Unknown"))] += 1
    return {
        "total_units": len(units),
        "total_trees": total_trees,
        "total_linear_ft": round(total_linear_ft, 2),
        "total_acres": round(total_acres, 4),
        "by_permission": dict(by_permission),
        "by_unit_type": dict(by_type),
        "by_station": dict(by_station),
    }

def normalize(rows: list[dict], captured_at: str | None = None) -> dict:
    """Build the snapshot document ``{meta, summary, units}`` from planned-unit rows."""
    captured_at = captured_at or now_utc_iso()
    if not rows:
        return {"meta": {"captured_at": captured_at}, "summary": compute_summary([]), "units": []}
    meta = extract_meta(rows[0])
    meta["captured_at"] = captured_at
    units = [normalize_unit(r) for r in rows]
    return {"meta": meta, "summary": compute_summary(units), "units": units}

def _unit_sort_key(unit: dict):
    return (str(unit.get("id", "")), json.dumps(unit, sort_keys=True, default=str))

def generate_hash(document: dict) -> str:
    """SHA-256 over the units sorted by id; meta (capture time) is excluded."""
    units = sorted(document.get("units") or [], key=_unit_sort_key)
    return sha256_json(units)

def get_quick_stats(document: dict) -> dict:
    summary = document.get("summary") or {}
    return {
        "unit_count": summary.get("total_units", 0),
        "total_trees": summary.get("total_trees", 0),
        "total_linear_ft": summary.get("total_linear_ft", 0),
        "total_acres": summary.get("total_acres", 0),
    }
