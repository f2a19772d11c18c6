import re
import time
import httpx
import structlog
from ..config import settings
from ..utils import retry_call
from ..pipeline.responses import transform_response
from .credentials import CredentialManager
from .errors import (
    AuthenticationError,
    ConnectivityError,
    ExhaustedRetriesError,
    RemoteQueryError,
    truncate_sql,
)

log = structlog.get_logger()

STATUS_CAPTIONS = {
    "ACTIV": "In Progress",
    "QC": "Pending QC",
    "REWRK": "Rework",
    "CLOSE": "Closed",
}

def _error_text(payload) -> str | None:
    if not isinstance(payload, dict):
        return None
    protocol = payload.get("Protocol", payload.get("protocol"))
    if protocol == "ERROR" or "errorMessage" in payload:
        return str(payload.get("errorMessage") or payload.get("ErrorMessage") or "remote error")
    return None

class WorkStudioClient:
    """
    WorkStudio DDOProtocol client.
    - GETQUERY: raw SQL, GETVIEWDATA: named views with a filter
    - Transport errors, timeouts, 5xx and 429 are retried with exponential backoff
    - 401 fails immediately and invalidates the user's stored credentials
    """
    def __init__(
        self,
        credentials: CredentialManager,
        base_url: str | None = None,
        client: httpx.Client | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        timeout: float | None = None,
        sleep=time.sleep,
    ):
        self.credentials = credentials
        self.base_url = (base_url or settings.ws_base_url).rstrip("/")
        self.timeout = settings.ws_timeout_seconds if timeout is None else timeout
        self.client = client or httpx.Client(timeout=self.timeout)
        self.max_retries = settings.ws_max_retries if max_retries is None else max_retries
        self.backoff_base = settings.ws_backoff_base_seconds if backoff_base is None else backoff_base
        self.backoff_cap = settings.ws_backoff_cap_seconds if backoff_cap is None else backoff_cap
        self._sleep = sleep

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def root_url(self) -> str:
        return re.sub(r"/DDOProtocol/?$", "", self.base_url)

    def health_check(self) -> bool:
        try:
            r = self.client.get(self.root_url, timeout=self.timeout)
        except httpx.HTTPError as e:
            log.warning("ws_health_check_failed", url=self.root_url, err=str(e))
            return False
        return r.status_code < 500

    def execute(self, sql: str, user_id=None) -> dict:
        creds = self.credentials.get_credentials(user_id)
        body = {
            "Protocol": "GETQUERY",
            "DBParameters": f"USER NAME={creds['username']}\r\nPASSWORD={creds['password']}\r\n",
            "SQL": sql,
        }
        return self._post(body, creds, user_id, sql=sql)

    def get_view_data(self, view_guid: str, view_filter: dict, user_id=None) -> dict:
        creds = self.credentials.get_credentials(user_id)
        body = {
            "Protocol": "GETVIEWDATA",
            "ViewDefinitionGuid": view_guid,
            "ViewFilter": {"PersistFilter": True, "ClassName": "TViewFilter", **view_filter},
            "ResultFormat": "DDOTable",
        }
        data = self._post(body, creds, user_id)
        if not isinstance(data, dict) or data.get("Protocol") != "DATASET":
            protocol = data.get("Protocol", "missing") if isinstance(data, dict) else "missing"
            log.warning("ws_unexpected_response_format", protocol=protocol, view=view_guid)
        return data

    def get_circuits_by_status(self, status: str, user_id=None) -> list[dict]:
        response = self.get_view_data(
            settings.ws_view_vegetation_assessments,
            {
                "FilterName": "By Job Status",
                "FilterValue": status,
                "FilterCaption": STATUS_CAPTIONS.get(status, status),
            },
            user_id,
        )
        return transform_response(response)

    def get_planned_units(self, work_order: str, user_id=None) -> list[dict]:
        response = self.get_view_data(
            settings.ws_view_planned_units,
            {"FilterName": "WO#", "FilterValue": work_order, "FilterCaption": "WO Number"},
            user_id,
        )
        return transform_response(response)

    def _post(self, body: dict, creds: dict, user_id, sql: str | None = None) -> dict:
        url = f"{self.base_url}/{body['Protocol']}"
        sql_preview = truncate_sql(sql)

        def _call():
            try:
                r = self.client.post(
                    url,
                    json=body,
                    auth=(creds["username"], creds["password"]),
                    timeout=self.timeout,
                )
            except httpx.TransportError as e:
                raise ConnectivityError(f"{type(e).__name__}: {e}", sql=sql, user_id=user_id) from e
            if r.status_code == 401:
                self.credentials.mark_failed(user_id)
                log.error("ws_auth_failed", url=url, user_id=user_id, sql=sql_preview)
                raise AuthenticationError("authentication_failed", sql=sql, user_id=user_id, status_code=401)
            if r.status_code >= 500 or r.status_code == 429:
                raise ConnectivityError(f"http_{r.status_code}", sql=sql, user_id=user_id, status_code=r.status_code)
            if r.status_code >= 400:
                raise RemoteQueryError(
                    f"http_{r.status_code}",
                    remote_message=r.text[:1000],
                    sql=sql,
                    user_id=user_id,
                    status_code=r.status_code,
                )
            try:
                data = r.json()
            except ValueError as e:
                raise RemoteQueryError("invalid_json_response", remote_message=r.text[:1000], sql=sql) from e
            err = _error_text(data)
            if err is not None:
                log.error("ws_query_error", url=url, err=err, sql=sql_preview)
                raise RemoteQueryError(f"remote_error: {err}", remote_message=err, sql=sql, user_id=user_id)
            return data

        def _on_retry(attempt, delay, exc):
            log.warning(
                "ws_request_retry",
                url=url,
                attempt=attempt,
                max_retries=self.max_retries,
                delay_sec=delay,
                err=str(exc),
                sql=sql_preview,
            )

        try:
            data = retry_call(
                _call,
                attempts=self.max_retries,
                base_delay=self.backoff_base,
                max_delay=self.backoff_cap,
                retry_on=(ConnectivityError,),
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except ConnectivityError as e:
            log.error("ws_request_exhausted", url=url, attempts=self.max_retries, err=str(e), sql=sql_preview)
            raise ExhaustedRetriesError(
                f"retries_exhausted after {self.max_retries} attempts: {e}",
                attempts=self.max_retries,
                sql=sql,
                user_id=user_id,
                status_code=e.status_code,
            ) from e
        self.credentials.mark_success(user_id)
        return data
