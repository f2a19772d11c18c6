import sqlite3
from contextlib import contextmanager
from pathlib import Path

def get_conn(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, isolation_level=None)  # autocommit
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

@contextmanager
def transaction(conn: sqlite3.Connection):
    """BEGIN/COMMIT around the block; joins an already open transaction."""
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")

DDL = [
    """
CREATE TABLE IF NOT EXISTS regions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  code TEXT NOT NULL UNIQUE,
  sort_order INTEGER NOT NULL DEFAULT 0,
  is_active INTEGER NOT NULL DEFAULT 1
);
""",

    # Unit catalog: each code measures exactly one kind of quantity
    """
CREATE TABLE IF NOT EXISTS unit_types (
  code TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  category TEXT NOT NULL,          -- 'VLG'|'VAR'|'VCT'|'VNW'|'VSA'
  measurement_type TEXT NOT NULL,  -- 'linear_ft'|'acres'|'tree_count'|'none'
  sort_order INTEGER NOT NULL DEFAULT 0
);
""",

    """
CREATE TABLE IF NOT EXISTS circuits (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  job_guid TEXT NOT NULL UNIQUE,
  work_order TEXT NOT NULL,
  extension TEXT NOT NULL DEFAULT '@',   -- '@' for main, A/B/C for splits
  region_id INTEGER REFERENCES regions(id),
  title TEXT,
  job_type TEXT,
  cycle_type TEXT,
  contractor TEXT,
  total_miles REAL NOT NULL DEFAULT 0,
  miles_planned REAL NOT NULL DEFAULT 0,
  percent_complete REAL NOT NULL DEFAULT 0,
  projected_acres REAL NOT NULL DEFAULT 0,
  total_linear_ft REAL NOT NULL DEFAULT 0,
  total_trees REAL NOT NULL DEFAULT 0,
  forester_name TEXT,
  assigned_to TEXT,
  taken_by TEXT,
  general_foreman TEXT,
  line_name TEXT,
  comments TEXT,
  cost_method TEXT,
  bounds_geometry TEXT,
  api_status TEXT,
  api_modified_date TEXT,
  work_plan_start_date TEXT,
  api_data_json TEXT,
  last_synced_at_utc TEXT,
  last_planned_units_synced_at_utc TEXT,
  planned_units_sync_enabled INTEGER NOT NULL DEFAULT 1,
  is_excluded INTEGER NOT NULL DEFAULT 0,
  exclusion_reason TEXT,
  excluded_by TEXT,
  excluded_at_utc TEXT,
  snapshot_seen_status TEXT,             -- last status/percent seen by the snapshot engine
  snapshot_seen_percent REAL,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS ix_circuits_work_order ON circuits(work_order, extension);",
    "CREATE INDEX IF NOT EXISTS ix_circuits_region_status ON circuits(region_id, api_status);",

    """
CREATE TABLE IF NOT EXISTS planners (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ws_username TEXT NOT NULL UNIQUE,
  display_name TEXT,
  first_seen_at_utc TEXT NOT NULL,
  last_seen_at_utc TEXT NOT NULL
);
""",
    """
CREATE TABLE IF NOT EXISTS circuit_planners (
  circuit_id INTEGER NOT NULL REFERENCES circuits(id) ON DELETE CASCADE,
  planner_id INTEGER NOT NULL REFERENCES planners(id) ON DELETE CASCADE,
  assignment_source TEXT NOT NULL,
  assigned_at_utc TEXT NOT NULL,
  PRIMARY KEY (circuit_id, planner_id)
);
""",

    """
CREATE TABLE IF NOT EXISTS circuit_aggregates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  circuit_id INTEGER NOT NULL REFERENCES circuits(id) ON DELETE CASCADE,
  aggregate_date TEXT NOT NULL,
  is_rollup INTEGER NOT NULL DEFAULT 0,
  total_units INTEGER NOT NULL DEFAULT 0,
  total_linear_ft REAL NOT NULL DEFAULT 0,
  total_acres REAL NOT NULL DEFAULT 0,
  total_trees INTEGER NOT NULL DEFAULT 0,
  units_approved INTEGER NOT NULL DEFAULT 0,
  units_refused INTEGER NOT NULL DEFAULT 0,
  units_pending INTEGER NOT NULL DEFAULT 0,
  unit_counts_by_type TEXT,
  linear_ft_by_type TEXT,
  acres_by_type TEXT,
  planner_distribution TEXT,
  permission_counts TEXT,
  error_message TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  UNIQUE (circuit_id, aggregate_date, is_rollup)
);
""",
    "CREATE INDEX IF NOT EXISTS ix_circuit_aggregates_date ON circuit_aggregates(aggregate_date);",

    """
CREATE TABLE IF NOT EXISTS planner_daily_aggregates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  planner_id INTEGER NOT NULL REFERENCES planners(id) ON DELETE CASCADE,
  region_id INTEGER NOT NULL REFERENCES regions(id),
  aggregate_date TEXT NOT NULL,
  circuits_worked INTEGER NOT NULL DEFAULT 0,
  total_units_assessed INTEGER NOT NULL DEFAULT 0,
  total_linear_ft REAL NOT NULL DEFAULT 0,
  total_acres REAL NOT NULL DEFAULT 0,
  total_trees INTEGER NOT NULL DEFAULT 0,
  miles_planned REAL NOT NULL DEFAULT 0,
  units_approved INTEGER NOT NULL DEFAULT 0,
  units_refused INTEGER NOT NULL DEFAULT 0,
  units_pending INTEGER NOT NULL DEFAULT 0,
  unit_counts_by_type TEXT,
  circuits_list TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  UNIQUE (planner_id, region_id, aggregate_date)
);
""",
    "CREATE INDEX IF NOT EXISTS ix_planner_daily_date ON planner_daily_aggregates(aggregate_date);",

    """
CREATE TABLE IF NOT EXISTS regional_daily_aggregates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  region_id INTEGER NOT NULL REFERENCES regions(id),
  aggregate_date TEXT NOT NULL,
  total_circuits INTEGER NOT NULL DEFAULT 0,
  total_planners INTEGER NOT NULL DEFAULT 0,
  total_units INTEGER NOT NULL DEFAULT 0,
  total_linear_ft REAL NOT NULL DEFAULT 0,
  total_acres REAL NOT NULL DEFAULT 0,
  total_trees INTEGER NOT NULL DEFAULT 0,
  units_approved INTEGER NOT NULL DEFAULT 0,
  units_refused INTEGER NOT NULL DEFAULT 0,
  units_pending INTEGER NOT NULL DEFAULT 0,
  unit_counts_by_type TEXT,
  permission_counts TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  UNIQUE (region_id, aggregate_date)
);
""",
    "CREATE INDEX IF NOT EXISTS ix_regional_daily_date ON regional_daily_aggregates(aggregate_date);",

    """
CREATE TABLE IF NOT EXISTS planner_weekly_aggregates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  planner_id INTEGER NOT NULL REFERENCES planners(id) ON DELETE CASCADE,
  region_id INTEGER NOT NULL REFERENCES regions(id),
  week_ending TEXT NOT NULL,
  week_starting TEXT NOT NULL,
  days_worked INTEGER NOT NULL DEFAULT 0,
  circuits_worked INTEGER NOT NULL DEFAULT 0,
  total_units_assessed INTEGER NOT NULL DEFAULT 0,
  total_linear_ft REAL NOT NULL DEFAULT 0,
  total_acres REAL NOT NULL DEFAULT 0,
  total_trees INTEGER NOT NULL DEFAULT 0,
  miles_planned REAL NOT NULL DEFAULT 0,
  miles_planned_start REAL NOT NULL DEFAULT 0,
  miles_planned_end REAL NOT NULL DEFAULT 0,
  miles_delta REAL NOT NULL DEFAULT 0,
  met_weekly_target INTEGER NOT NULL DEFAULT 0,
  units_approved INTEGER NOT NULL DEFAULT 0,
  units_refused INTEGER NOT NULL DEFAULT 0,
  units_pending INTEGER NOT NULL DEFAULT 0,
  unit_counts_by_type TEXT,
  daily_breakdown TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  UNIQUE (planner_id, region_id, week_ending)
);
""",

    """
CREATE TABLE IF NOT EXISTS regional_weekly_aggregates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  region_id INTEGER NOT NULL REFERENCES regions(id),
  week_ending TEXT NOT NULL,
  week_starting TEXT NOT NULL,
  active_circuits INTEGER NOT NULL DEFAULT 0,
  qc_circuits INTEGER NOT NULL DEFAULT 0,
  closed_circuits INTEGER NOT NULL DEFAULT 0,
  total_circuits INTEGER NOT NULL DEFAULT 0,
  excluded_circuits INTEGER NOT NULL DEFAULT 0,
  total_miles REAL NOT NULL DEFAULT 0,
  miles_planned REAL NOT NULL DEFAULT 0,
  miles_remaining REAL NOT NULL DEFAULT 0,
  avg_percent_complete REAL NOT NULL DEFAULT 0,
  total_units INTEGER NOT NULL DEFAULT 0,
  total_linear_ft REAL NOT NULL DEFAULT 0,
  total_acres REAL NOT NULL DEFAULT 0,
  total_trees INTEGER NOT NULL DEFAULT 0,
  units_approved INTEGER NOT NULL DEFAULT 0,
  units_refused INTEGER NOT NULL DEFAULT 0,
  units_pending INTEGER NOT NULL DEFAULT 0,
  active_planners INTEGER NOT NULL DEFAULT 0,
  unit_counts_by_type TEXT,
  status_breakdown TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL,
  UNIQUE (region_id, week_ending)
);
""",

    # Immutable planned-units captures (payload is the normalized document)
    """
CREATE TABLE IF NOT EXISTS planned_units_snapshots (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  circuit_id INTEGER NOT NULL REFERENCES circuits(id) ON DELETE CASCADE,
  work_order TEXT NOT NULL,
  snapshot_trigger TEXT NOT NULL,  -- 'scheduled'|'milestone_50'|'milestone_100'|'status_to_qc'|'manual'
  percent_complete REAL NOT NULL DEFAULT 0,
  api_status TEXT,
  content_hash TEXT NOT NULL,
  unit_count INTEGER NOT NULL DEFAULT 0,
  total_trees INTEGER NOT NULL DEFAULT 0,
  total_linear_ft REAL NOT NULL DEFAULT 0,
  total_acres REAL NOT NULL DEFAULT 0,
  raw_json TEXT NOT NULL,
  created_by TEXT,
  created_at_utc TEXT NOT NULL
);
""",
    "CREATE INDEX IF NOT EXISTS ix_snapshots_circuit_time ON planned_units_snapshots(circuit_id, created_at_utc DESC);",
    "CREATE INDEX IF NOT EXISTS ix_snapshots_circuit_trigger ON planned_units_snapshots(circuit_id, snapshot_trigger);",
    "CREATE INDEX IF NOT EXISTS ix_snapshots_circuit_hash ON planned_units_snapshots(circuit_id, content_hash);",

    """
CREATE TABLE IF NOT EXISTS sync_logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL UNIQUE,
  sync_type TEXT NOT NULL,      -- 'circuit_list'|'aggregates'|'full'
  sync_status TEXT NOT NULL,    -- 'started'|'completed'|'warning'|'failed'
  sync_trigger TEXT NOT NULL,   -- 'scheduled'|'manual'|'workflow_event'
  api_status_filter TEXT,
  triggered_by TEXT,
  started_at_utc TEXT NOT NULL,
  completed_at_utc TEXT,
  duration_seconds INTEGER,
  circuits_processed INTEGER NOT NULL DEFAULT 0,
  circuits_created INTEGER NOT NULL DEFAULT 0,
  circuits_updated INTEGER NOT NULL DEFAULT 0,
  aggregates_created INTEGER NOT NULL DEFAULT 0,
  snapshots_created INTEGER NOT NULL DEFAULT 0,
  error_message TEXT,
  error_details_json TEXT,
  context_json TEXT
);
""",
    "CREATE INDEX IF NOT EXISTS ix_sync_logs_started ON sync_logs(started_at_utc DESC);",

    """
CREATE TABLE IF NOT EXISTS ws_credentials (
  user_id TEXT PRIMARY KEY,
  username TEXT NOT NULL,
  password TEXT NOT NULL,
  is_valid INTEGER NOT NULL DEFAULT 1,
  fail_count INTEGER NOT NULL DEFAULT 0,
  validated_at_utc TEXT,
  last_used_at_utc TEXT,
  failed_at_utc TEXT
);
""",

    """
CREATE TABLE IF NOT EXISTS locks (
  name TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  acquired_at_utc TEXT NOT NULL,
  expires_at_utc TEXT NOT NULL
);
""",
]

REGION_SEED = [
    ("Central", "CENTRAL", 1),
    ("Lancaster", "LANCASTER", 2),
    ("Lehigh", "LEHIGH", 3),
    ("Harrisburg", "HARRISBURG", 4),
]

# (code, name, category, measurement_type)
UNIT_TYPE_SEED = [
    ("SPM", "Single Phase - Manual", "VLG", "linear_ft"),
    ("SPB", "Single Phase - Bucket", "VLG", "linear_ft"),
    ("SPE", "Single Phase - Enhanced", "VLG", "linear_ft"),
    ("MPM", "Multi-Phase - Manual", "VLG", "linear_ft"),
    ("MPB", "Multi-Phase - Bucket", "VLG", "linear_ft"),
    ("MPE", "Multi-Phase - Enhanced", "VLG", "linear_ft"),
    ("MPME", "Multi-Phase - Manual Enhanced", "VLG", "linear_ft"),
    ("MPBE", "Multi-Phase - Bucket Enhanced", "VLG", "linear_ft"),
    ("MST", "Mech Side Trim", "VLG", "linear_ft"),
    ("OHT", "Overhang Trim", "VLG", "linear_ft"),
    ("SIDET", "Side Trim", "VLG", "linear_ft"),
    ("SOHT", "Secondary OH Trim", "VLG", "linear_ft"),
    ("STB", "Side Trim - Bucket", "VLG", "linear_ft"),
    ("STM", "Side Trim - Manual", "VLG", "linear_ft"),
    ("TTS", "Trim To Spec", "VLG", "linear_ft"),
    ("HCB", "Hand Cut Brush", "VAR", "acres"),
    ("BRUSH", "Hand Cut Brush/Mowing", "VAR", "acres"),
    ("BRUSHTRIM", "Hand Cut Brush w Trim", "VAR", "acres"),
    ("MOW", "Mowing", "VAR", "acres"),
    ("HERBNA", "Herbicide - Non Aquatic", "VAR", "acres"),
    ("HERBA", "Herbicide - Aquatic", "VAR", "acres"),
    ("HERBS", "Herbicide - Substation", "VAR", "acres"),
    ("Herb-Sub", "Herbicide - Substation", "VAR", "acres"),
    ("T&M", "Time & Material", "VAR", "acres"),
    ("REM612", "Removal 6-12\"", "VCT", "tree_count"),
    ("REM1218", "Removal 12.1-18\"", "VCT", "tree_count"),
    ("REM1824", "Removal 18.1-24\"", "VCT", "tree_count"),
    ("REM2430", "Removal 24.1-30\"", "VCT", "tree_count"),
    ("REM3036", "Removal 30.1-36\"", "VCT", "tree_count"),
    ("REM36", "Removal > 36.1\"", "VCT", "tree_count"),
    ("REM>30", "Removal > 30.1\" (new)", "VCT", "tree_count"),
    ("ASH612", "Ash 6-12\"", "VCT", "tree_count"),
    ("ASH1218", "Ash 12.1-18\"", "VCT", "tree_count"),
    ("ASH1824", "Ash 18.1-24\"", "VCT", "tree_count"),
    ("ASH2430", "Ash 24.1-30\"", "VCT", "tree_count"),
    ("ASH3036", "Ash 30.1-36\"", "VCT", "tree_count"),
    ("ASH36", "Ash > 36.1\"", "VCT", "tree_count"),
    ("BTR", "Bucket Trim", "VCT", "tree_count"),
    ("VPS", "Vine Pole/Structure", "VCT", "tree_count"),
    ("NW", "No Work", "VNW", "none"),
    ("NOT", "Notification", "VNW", "none"),
    ("SENSI", "Sensitive Customer", "VSA", "none"),
]

def seed(conn: sqlite3.Connection):
    cur = conn.cursor()
    for name, code, sort_order in REGION_SEED:
        cur.execute(
            "INSERT OR IGNORE INTO regions(name, code, sort_order, is_active) VALUES(?,?,?,1)",
            (name, code, sort_order),
        )
    for sort_order, (code, name, category, measurement) in enumerate(UNIT_TYPE_SEED, start=1):
        cur.execute(
            "INSERT OR IGNORE INTO unit_types(code, name, category, measurement_type, sort_order) VALUES(?,?,?,?,?)",
            (code, name, category, measurement, sort_order),
        )

def migrate(conn: sqlite3.Connection, with_seed: bool = True):
    cur = conn.cursor()
    for stmt in DDL:
        cur.execute(stmt)
    cols = {row[1] for row in cur.execute("PRAGMA table_info(circuits)").fetchall()}
    if "snapshot_seen_status" not in cols:
        cur.execute("ALTER TABLE circuits ADD COLUMN snapshot_seen_status TEXT")
    if "snapshot_seen_percent" not in cols:
        cur.execute("ALTER TABLE circuits ADD COLUMN snapshot_seen_percent REAL")
    if with_seed:
        seed(conn)

