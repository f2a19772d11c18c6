import json, re
from datetime import datetime, timedelta, timezone
import structlog
from dateutil import parser as date_parser
from ..providers.errors import TransformParseError

log = structlog.get_logger()

_WS_DATE_RE = re.compile(r"^/Date\((.+?)\)/$")
_EPOCH_RE = re.compile(r"^(-?\d+)([+-]\d{4})?$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

def parse_ws_date(value) -> datetime | None:
    """Parse WorkStudio's ``/Date(...)/`` encoding (or a bare ISO string).

    The payload is either epoch milliseconds with an optional ``+hhmm``
    offset or an ISO-like date string. Placeholder dates before 1900
    (e.g. 1899-12-30) and anything unparsable give ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return None if dt.year < 1900 else dt
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    m = _WS_DATE_RE.match(text)
    payload = m.group(1).strip() if m else text

    epoch = _EPOCH_RE.match(payload)
    try:
        if epoch:
            dt = _EPOCH + timedelta(milliseconds=int(epoch.group(1)))
            if epoch.group(2):
                sign = -1 if epoch.group(2)[0] == "-" else 1
                hours, minutes = int(epoch.group(2)[1:3]), int(epoch.group(2)[3:5])
                dt = dt.astimezone(timezone(sign * timedelta(hours=hours, minutes=minutes)))
        else:
            dt = date_parser.parse(payload)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
    except (ValueError, OverflowError):
        return None
    if dt.year < 1900:
        return None
    return dt

def _is_ws_date(value) -> bool:
    return isinstance(value, str) and _WS_DATE_RE.match(value) is not None

def _is_geometry(value) -> bool:
    return isinstance(value, dict) and value.get("@sourceFormat") == "DataObjectGeometry"

def transform_geometry(value: dict) -> dict:
    return {
        "type": value.get("type") or "Unknown",
        "coordinates": value.get("coordinates") or [],
        "_is_geometry": True,
    }

def find_table(response) -> tuple[list, list] | None:
    """Return (headings, rows) from a GETQUERY or GETVIEWDATA payload."""
    if not isinstance(response, dict):
        return None
    table = response
    if "Heading" not in table and isinstance(response.get("DataSet"), dict):
        table = response["DataSet"]
    headings = table.get("Heading")
    rows = table.get("Data")
    if not isinstance(headings, list) or not isinstance(rows, list):
        return None
    if not all(isinstance(h, str) for h in headings):
        return None
    return headings, rows

def get_headings(response) -> list:
    table = find_table(response)
    return list(table[0]) if table else []

def get_row_count(response) -> int:
    table = find_table(response)
    return len(table[1]) if table else 0

def select_columns(records: list[dict], columns: list[str]) -> list[dict]:
    wanted = set(columns)
    return [{k: v for k, v in rec.items() if k in wanted} for rec in records]


class ResponseTransformer:
    name = "base"

    def can_handle(self, headings: list) -> bool:
        raise NotImplementedError

    def transform(self, headings: list, rows: list) -> list[dict]:
        raise NotImplementedError


class TabularTransformer(ResponseTransformer):
    name = "tabular"

    def can_handle(self, headings: list) -> bool:
        return True

    def transform_value(self, value):
        if _is_ws_date(value):
            return parse_ws_date(value)
        if _is_geometry(value):
            return transform_geometry(value)
        return value

    def transform(self, headings: list, rows: list) -> list[dict]:
        out = []
        dropped = 0
        for row in rows:
            if not isinstance(row, list) or len(row) != len(headings):
                dropped += 1
                continue
            out.append({h: self.transform_value(v) for h, v in zip(headings, row)})
        if dropped:
            log.warning("ws_rows_dropped", reason="shape_mismatch", dropped=dropped, kept=len(out))
        return out


class ChunkedJsonTransformer(ResponseTransformer):
    """FOR JSON PATH output streamed as string fragments in the first column."""
    name = "chunked_json"

    def can_handle(self, headings: list) -> bool:
        return bool(headings) and "JSON_" in str(headings[0])

    def assemble(self, rows: list) -> str:
        parts = []
        for row in rows:
            if isinstance(row, list) and row and row[0] is not None:
                parts.append(str(row[0]))
        return _CONTROL_CHARS_RE.sub("", "".join(parts))

    def parse(self, text: str):
        try:
            return json.loads(text)
        except ValueError as e:
            raise TransformParseError(f"chunked_json_parse_failed: {e}", byte_length=len(text.encode("utf-8"))) from e

    def transform(self, headings: list, rows: list) -> list[dict]:
        if not rows:
            return []
        text = self.assemble(rows)
        try:
            data = self.parse(text)
        except TransformParseError as e:
            log.error("ws_json_parse_failed", err=e.message, byte_length=e.byte_length)
            return []
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
        if isinstance(data, dict):
            return [data]
        return []


TRANSFORMERS = (ChunkedJsonTransformer(), TabularTransformer())

def pick_transformer(headings: list) -> ResponseTransformer:
    for transformer in TRANSFORMERS:
        if transformer.can_handle(headings):
            return transformer
    return TRANSFORMERS[-1]

def transform_response(response) -> list[dict]:
    table = find_table(response)
    if table is None:
        return []
    headings, rows = table
    return pick_transformer(headings).transform(headings, rows)
