SQL_PREVIEW_CHARS = 500

def truncate_sql(sql: str | None, limit: int = SQL_PREVIEW_CHARS) -> str | None:
    if sql is None:
        return None
    return sql if len(sql) <= limit else sql[:limit]


class WorkStudioError(Exception):
    """Base class for failures talking to or interpreting WorkStudio."""

    def __init__(self, message: str, *, sql: str | None = None, user_id=None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.sql = truncate_sql(sql)
        self.user_id = user_id
        self.status_code = status_code

    def context(self) -> dict:
        ctx = {"error": self.message}
        if self.sql is not None:
            ctx["sql"] = self.sql
        if self.user_id is not None:
            ctx["user_id"] = self.user_id
        if self.status_code is not None:
            ctx["status_code"] = self.status_code
        return ctx


class AuthenticationError(WorkStudioError):
    """HTTP 401. Never retried."""


class ConnectivityError(WorkStudioError):
    """Transport failure, timeout, 5xx or 429. Retryable."""


class ExhaustedRetriesError(WorkStudioError):
    def __init__(self, message: str, *, attempts: int, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class RemoteQueryError(WorkStudioError):
    """The remote system answered but rejected the request or reported an error."""

    def __init__(self, message: str, *, remote_message: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.remote_message = remote_message


class TransformParseError(WorkStudioError):
    def __init__(self, message: str, *, byte_length: int = 0):
        super().__init__(message)
        self.byte_length = byte_length


class CircuitCalculationError(WorkStudioError):
    def __init__(self, message: str, *, circuit_id=None, work_order: str | None = None):
        super().__init__(message)
        self.circuit_id = circuit_id
        self.work_order = work_order


# Failures that mean the remote system or our access to it is broken; a sync
# cycle stops on these instead of recording a per-circuit error.
INFRASTRUCTURE_ERRORS = (AuthenticationError, ExhaustedRetriesError)
