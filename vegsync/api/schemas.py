from pydantic import BaseModel
from typing import Optional, Literal

class SyncRequest(BaseModel):
    sync_type: Literal['circuit_list','aggregates','full'] = 'full'
    trigger: Literal['scheduled','manual','workflow_event'] = 'manual'
    statuses: Optional[list[str]] = None
    triggered_by: Optional[str] = None
    circuit_ids: Optional[list[int]] = None

class SyncRun(BaseModel):
    run_id: str

class SyncLogResponse(BaseModel):
    run_id: str
    sync_type: str
    sync_status: Literal['started','completed','warning','failed']
    sync_trigger: str
    api_status_filter: Optional[str] = None
    triggered_by: Optional[str] = None
    started_at_utc: str
    completed_at_utc: Optional[str] = None
    duration_seconds: Optional[int] = None
    circuits_processed: int = 0
    circuits_created: int = 0
    circuits_updated: int = 0
    aggregates_created: int = 0
    snapshots_created: int = 0
    error_message: Optional[str] = None
    error_details_json: Optional[dict] = None
    context_json: Optional[dict] = None

class ManualSnapshotRequest(BaseModel):
    created_by: Optional[str] = None

class PruneRequest(BaseModel):
    days_to_keep: Optional[int] = None
