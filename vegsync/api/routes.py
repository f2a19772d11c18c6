from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from .schemas import SyncRequest, SyncRun, SyncLogResponse, ManualSnapshotRequest, PruneRequest
from ..pipeline.orchestrator import trigger_sync, get_status
from ..pipeline.snapshots import SnapshotService
from ..pipeline.storage import list_circuit_aggregates, prune_old_aggregates
from ..pipeline.units import units_for_extension
from ..pipeline.utils import list_sync_logs
from ..providers.credentials import CredentialManager
from ..providers.errors import WorkStudioError
from ..providers.workstudio import WorkStudioClient
from ..config import settings
from ..db import get_conn, migrate

router = APIRouter()

def _conn():
    conn = get_conn(settings.db_path)
    migrate(conn)
    return conn

def _circuit_or_404(conn, circuit_id: int) -> dict:
    row = conn.execute("SELECT * FROM circuits WHERE id=?", (circuit_id,)).fetchone()
    if not row:
        raise HTTPException(404, 'circuit not found')
    return dict(row)

@router.get(
    '/health',
    summary="Health check",
    description="Returns service and DB connectivity plus last sync metadata.",
    tags=["Health"],
)
def health():
    try:
        conn = _conn()
        row = conn.execute(
            "SELECT run_id, sync_type, sync_status, started_at_utc, completed_at_utc FROM sync_logs ORDER BY started_at_utc DESC LIMIT 1"
        ).fetchone()
        return {'ok': True, 'db': 'ok', 'last_sync': dict(row) if row else None}
    except Exception as e:
        raise HTTPException(503, f'db_error: {e}')

@router.post(
    '/sync',
    response_model=SyncRun,
    status_code=202,
    summary="Trigger sync",
    description="Starts a WorkStudio sync in the background and returns the run_id.",
    tags=["Sync"],
)
def sync(req: SyncRequest, request: Request, background: BackgroundTasks):
    run_id = trigger_sync(
        background,
        sync_type=req.sync_type,
        trigger=req.trigger,
        statuses=req.statuses,
        triggered_by=req.triggered_by,
        circuit_ids=req.circuit_ids,
        cache=getattr(request.app.state, 'region_cache', None),
    )
    return SyncRun(run_id=run_id)

@router.get(
    '/sync/{run_id}',
    response_model=SyncLogResponse,
    summary="Get sync status",
    description="Return the sync log for a given run_id.",
    tags=["Sync"],
)
def sync_status(run_id: str):
    st = get_status(run_id)
    if not st:
        raise HTTPException(404, 'run not found')
    return st

@router.get(
    '/sync-logs',
    response_model=list[SyncLogResponse],
    summary="Recent sync logs",
    description="Most recent sync logs first. Optional status filter: started|completed|warning|failed.",
    tags=["Sync"],
)
def sync_logs(limit: int = 50, status: str | None = None):
    if status and status not in ('started', 'completed', 'warning', 'failed'):
        raise HTTPException(400, 'status must be started|completed|warning|failed')
    return list_sync_logs(_conn(), limit=min(max(limit, 1), 500), status=status)

@router.get(
    '/circuits/{circuit_id}/aggregates',
    summary="Circuit aggregates",
    description="Daily aggregates for one circuit, newest first. Rollups only when include_rollups=true.",
    tags=["Aggregates"],
)
def circuit_aggregates(circuit_id: int, limit: int = 90, include_rollups: bool = False):
    conn = _conn()
    _circuit_or_404(conn, circuit_id)
    return list_circuit_aggregates(conn, circuit_id, limit=min(max(limit, 1), 1000), include_rollups=include_rollups)

@router.get(
    '/circuits/{circuit_id}/snapshots',
    summary="Snapshot history",
    description="Planned-units snapshot metadata for one circuit, newest first. Use timeline=true for oldest first.",
    tags=["Snapshots"],
)
def circuit_snapshots(circuit_id: int, limit: int = 50, timeline: bool = False):
    conn = _conn()
    _circuit_or_404(conn, circuit_id)
    svc = SnapshotService(conn)
    if timeline:
        return svc.get_timeline(circuit_id)
    return svc.get_history(circuit_id, limit=min(max(limit, 1), 500))

@router.post(
    '/circuits/{circuit_id}/snapshots',
    status_code=201,
    summary="Manual snapshot",
    description="Fetches the circuit's planned units from WorkStudio and stores a manual snapshot.",
    tags=["Snapshots"],
)
def manual_snapshot(circuit_id: int, req: ManualSnapshotRequest):
    conn = _conn()
    circuit = _circuit_or_404(conn, circuit_id)
    try:
        with WorkStudioClient(CredentialManager(conn)) as client:
            rows = units_for_extension(client.get_planned_units(circuit['work_order']), circuit['extension'])
    except WorkStudioError as e:
        raise HTTPException(502, f'workstudio_error: {e.message}')
    return SnapshotService(conn).create_manual_snapshot(circuit, rows, req.created_by)

@router.get(
    '/snapshots/compare',
    summary="Compare snapshots",
    description="Unit-level diff between two stored snapshots: added, removed and changed units.",
    tags=["Snapshots"],
)
def snapshots_compare(older_id: int, newer_id: int):
    svc = SnapshotService(_conn())
    older = svc.get(older_id)
    newer = svc.get(newer_id)
    if not older or not newer:
        raise HTTPException(404, 'snapshot not found')
    return {
        'older_id': older_id,
        'newer_id': newer_id,
        **svc.compare_snapshots(older, newer),
    }

@router.post(
    '/aggregates/prune',
    summary="Prune aggregates",
    description="Deletes daily aggregates older than days_to_keep (default AGGREGATE_RETENTION_DAYS).",
    tags=["Admin"],
)
def aggregates_prune(req: PruneRequest):
    days = settings.aggregate_retention_days if req.days_to_keep is None else req.days_to_keep
    if days < 0:
        raise HTTPException(400, 'days_to_keep must be >= 0')
    return {'ok': True, 'days_to_keep': days, 'deleted': prune_old_aggregates(_conn(), days_to_keep=days)}

@router.post(
    '/cache/invalidate',
    summary="Cache admin",
    description="Clears the process-local lookup cache (region name to id).",
    tags=["Admin"],
)
def cache_invalidate(request: Request):
    cache = getattr(request.app.state, 'region_cache', None)
    cleared = cache.invalidate_all() if cache is not None else 0
    return {'ok': True, 'cleared': cleared}
