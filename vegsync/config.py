from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

# Load .env from repo root for local development and scripts.
ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, populate_by_name=True)
    ws_base_url: str = Field(default="https://workstudio.example.com/DDOProtocol", alias="WS_BASE_URL")
    ws_service_username: str = Field(default="", alias="WS_SERVICE_USERNAME")
    ws_service_password: str = Field(default="", alias="WS_SERVICE_PASSWORD")
    ws_timeout_seconds: float = Field(default=60.0, alias="WS_TIMEOUT_SECONDS")
    ws_max_retries: int = Field(default=5, alias="WS_MAX_RETRIES")
    ws_backoff_base_seconds: float = Field(default=1.0, alias="WS_BACKOFF_BASE_SECONDS")
    ws_backoff_cap_seconds: float = Field(default=30.0, alias="WS_BACKOFF_CAP_SECONDS")
    ws_view_vegetation_assessments: str = Field(
        default="{A856F956-88DF-4807-90E2-7E12C25B5B32}", alias="WS_VIEW_VEGETATION_ASSESSMENTS"
    )
    ws_view_planned_units: str = Field(
        default="{985AECEF-D75B-40F3-9F9B-37F21C63FF4A}", alias="WS_VIEW_PLANNED_UNITS"
    )
    db_path: str = Field(default="./data/vegsync.db", alias="DB_PATH")
    local_tz: str = Field(default="America/New_York", alias="LOCAL_TZ")
    sync_default_statuses: str = Field(default="ACTIV,QC,REWRK", alias="SYNC_DEFAULT_STATUSES")
    sync_max_workers: int = Field(default=1, alias="SYNC_MAX_WORKERS")
    sync_rate_limit_seconds: float = Field(default=0.1, alias="SYNC_RATE_LIMIT_SECONDS")
    sync_lock_ttl_seconds: int = Field(default=7200, alias="SYNC_LOCK_TTL_SECONDS")
    planned_units_sync_interval_hours: int = Field(default=12, alias="PLANNED_UNITS_SYNC_INTERVAL_HOURS")
    aggregate_retention_days: int = Field(default=365, alias="AGGREGATE_RETENTION_DAYS")
    snapshot_qc_debounce_hours: int = Field(default=24, alias="SNAPSHOT_QC_DEBOUNCE_HOURS")
    # Python weekday(): Monday=0 .. Sunday=6. Saturday ends the work week.
    week_ending_weekday: int = Field(default=5, alias="WEEK_ENDING_WEEKDAY")
    weekly_miles_target: float = Field(default=6.5, alias="WEEKLY_MILES_TARGET")

    def default_statuses(self) -> list[str]:
        return [part.strip() for part in self.sync_default_statuses.split(",") if part.strip()]

settings = Settings()
