import sqlite3
import structlog
from ..config import settings
from ..utils import now_utc_iso

log = structlog.get_logger()

class CredentialManager:
    """
    Chooses the WorkStudio account for a request.
    - Per-user credentials from ws_credentials when present and still valid
    - Otherwise the service account from settings
    Marking success/failure for a null user id (service account) is a no-op.
    """
    def __init__(self, conn: sqlite3.Connection, service_username: str | None = None, service_password: str | None = None):
        self.conn = conn
        self.service_username = settings.ws_service_username if service_username is None else service_username
        self.service_password = settings.ws_service_password if service_password is None else service_password

    def _service(self) -> dict:
        return {
            "username": self.service_username,
            "password": self.service_password,
            "user_id": None,
            "type": "service",
        }

    def get_credentials(self, user_id=None) -> dict:
        if user_id is None:
            return self._service()
        row = self.conn.execute(
            "SELECT username, password FROM ws_credentials WHERE user_id=? AND is_valid=1",
            (str(user_id),),
        ).fetchone()
        if not row:
            return self._service()
        return {"username": row[0], "password": row[1], "user_id": user_id, "type": "user"}

    def has_valid_credentials(self, user_id) -> bool:
        if user_id is None:
            return False
        row = self.conn.execute(
            "SELECT 1 FROM ws_credentials WHERE user_id=? AND is_valid=1", (str(user_id),)
        ).fetchone()
        return row is not None

    def store_credentials(self, user_id, username: str, password: str):
        self.conn.execute(
            """
            INSERT INTO ws_credentials(user_id, username, password, is_valid, fail_count)
            VALUES(?,?,?,1,0)
            ON CONFLICT(user_id) DO UPDATE SET
              username=excluded.username,
              password=excluded.password,
              is_valid=1,
              fail_count=0,
              failed_at_utc=NULL
            """,
            (str(user_id), username, password),
        )

    def mark_success(self, user_id=None):
        if user_id is None:
            return
        now = now_utc_iso()
        self.conn.execute(
            """
            UPDATE ws_credentials
            SET is_valid=1, fail_count=0, validated_at_utc=?, last_used_at_utc=?
            WHERE user_id=?
            """,
            (now, now, str(user_id)),
        )

    def mark_failed(self, user_id=None):
        if user_id is None:
            return
        self.conn.execute(
            "UPDATE ws_credentials SET is_valid=0, fail_count=fail_count+1, failed_at_utc=? WHERE user_id=?",
            (now_utc_iso(), str(user_id)),
        )
        log.warning("ws_credentials_marked_failed", user_id=user_id)
