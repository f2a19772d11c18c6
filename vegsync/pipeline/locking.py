import sqlite3
from contextlib import contextmanager
from datetime import timedelta
import structlog
from ..utils import now_utc, parse_iso

log = structlog.get_logger()

SYNC_LOCK_NAME = "workstudio_sync"

def acquire_lock(conn: sqlite3.Connection, name: str, owner: str, ttl_seconds: int = 7200) -> bool:
    now = now_utc()
    exp = now + timedelta(seconds=ttl_seconds)
    cur = conn.cursor()
    row = cur.execute("SELECT owner, expires_at_utc FROM locks WHERE name=?", (name,)).fetchone()
    if not row:
        cur.execute(
            "INSERT OR IGNORE INTO locks(name, owner, acquired_at_utc, expires_at_utc) VALUES(?,?,?,?)",
            (name, owner, now.isoformat(), exp.isoformat()),
        )
        return cur.rowcount == 1
    expires = parse_iso(row[1])
    if row[0] == owner or expires is None or expires < now:
        if row[0] != owner:
            log.warning("lock_expired_taken_over", name=name, previous_owner=row[0], owner=owner)
        cur.execute(
            "UPDATE locks SET owner=?, acquired_at_utc=?, expires_at_utc=? WHERE name=? AND owner=?",
            (owner, now.isoformat(), exp.isoformat(), name, row[0]),
        )
        return cur.rowcount == 1
    return False

def release_lock(conn: sqlite3.Connection, name: str, owner: str):
    conn.execute("DELETE FROM locks WHERE name=? AND owner=?", (name, owner))

def lock_holder(conn: sqlite3.Connection, name: str) -> dict | None:
    row = conn.execute(
        "SELECT name, owner, acquired_at_utc, expires_at_utc FROM locks WHERE name=?", (name,)
    ).fetchone()
    return dict(row) if row else None

@contextmanager
def held_lock(conn: sqlite3.Connection, name: str, owner: str, ttl_seconds: int = 7200):
    """Yields True when the lock was taken (and releases it afterwards), else False."""
    acquired = acquire_lock(conn, name, owner, ttl_seconds)
    try:
        yield acquired
    finally:
        if acquired:
            release_lock(conn, name, owner)
