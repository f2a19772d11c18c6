from ..utils import to_number
from .responses import parse_ws_date

CIRCUIT_FIELD_MAP = {
    "SS_JOBGUID": "job_guid",
    "SS_WO": "work_order",
    "SS_EXT": "extension",
    "SS_TITLE": "title",
    "WSREQ_STATUS": "api_status",
    "SS_JOBTYPE": "job_type",
    "VEGJOB_CYCLETYPE": "cycle_type",
    "REGION": "region",
    "VEGJOB_LENGTH": "total_miles",
    "VEGJOB_LENGTHCOMP": "miles_planned",
    "VEGJOB_PRCENT": "percent_complete",
    "VEGJOB_PROJACRES": "projected_acres",
    "UNITCOUNTS_LENGTHWRK": "total_linear_ft",
    "UNITCOUNTS_NUMTREES": "total_trees",
    "VEGJOB_FORESTER": "forester_name",
    "SS_ASSIGNEDTO": "assigned_to",
    "SS_TAKENBY": "taken_by",
    "VEGJOB_CONTRACTOR": "contractor",
    "VEGJOB_GF": "general_foreman",
    "SS_EDITDATE": "api_modified_date",
    "WPStartDate_Assessment_Xrefs_WP_STARTDATE": "work_plan_start_date",
    "VEGJOB_LINENAME": "line_name",
    "VEGJOB_CIRCCOMNTS": "comments",
    "VEGJOB_COSTMETHOD": "cost_method",
    "WSREQ_BOUNDSGEOM": "bounds_geometry",
}

NUMERIC_FIELDS = (
    "total_miles",
    "miles_planned",
    "percent_complete",
    "projected_acres",
    "total_linear_ft",
    "total_trees",
)

DATE_FIELDS = ("api_modified_date", "work_plan_start_date")

# Remote fields kept verbatim in circuits.api_data_json
API_DATA_FIELDS = (
    "VEGJOB_SERVCOMP",
    "VEGJOB_OPCO",
    "SS_READONLY",
    "SS_ITEMTYPELIST",
    "WSREQ_VERSION",
    "WSREQ_SYNCHVERSN",
    "WSREQ_COORDSYS",
    "WSREQ_SKETCHLEFT",
    "WSREQ_SKETCHTOP",
    "WSREQ_SKETCHBOTM",
    "WSREQ_SKETCHRITE",
)

PLANNER_FIELDS = ("VEGJOB_FORESTER", "SS_ASSIGNEDTO", "SS_TAKENBY")

def normalize_extension(value) -> str:
    text = str(value).strip() if value is not None else ""
    if not text or text == "@":
        return "@"
    return text

class CircuitTransformer:
    """Maps vegetation-assessment rows onto circuit fields.

    ``region_lookup`` is anything with ``region_id(name)``; unknown regions
    resolve to ``None`` instead of failing the row.
    """

    def __init__(self, region_lookup=None):
        self.region_lookup = region_lookup

    def transform(self, row: dict) -> dict:
        mapped = {dst: row[src] for src, dst in CIRCUIT_FIELD_MAP.items() if src in row}

        if "region" in mapped:
            name = mapped.pop("region")
            mapped["region_id"] = self.region_lookup.region_id(name) if self.region_lookup else None

        mapped["extension"] = normalize_extension(mapped.get("extension"))

        for field in NUMERIC_FIELDS:
            if field in mapped:
                mapped[field] = to_number(mapped[field], 0.0)

        for field in DATE_FIELDS:
            if field in mapped:
                mapped[field] = parse_ws_date(mapped[field])

        mapped["api_data_json"] = {k: row[k] for k in API_DATA_FIELDS if k in row}
        return mapped

    def transform_all(self, rows: list[dict]) -> list[dict]:
        return [self.transform(row) for row in rows]

    def extract_planners(self, row: dict) -> list[str]:
        planners = []
        for field in PLANNER_FIELDS:
            value = row.get(field)
            if not value:
                continue
            ident = str(value).strip()
            if ident and ident not in planners:
                planners.append(ident)
        return planners

    def is_split_child(self, row: dict) -> bool:
        ext = row.get("SS_EXT")
        if ext is None:
            return False
        return str(ext).strip() not in ("", "@")

    def get_parent_work_order(self, row: dict) -> str | None:
        if not self.is_split_child(row):
            return None
        return row.get("SS_WO")
