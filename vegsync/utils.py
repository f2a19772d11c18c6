import hashlib, json, math, threading
import time as time_module
from datetime import datetime, date, timezone
from dateutil import tz

def sha256_json(obj) -> str:
    return hashlib.sha256(json.dumps(obj, sort_keys=True, default=str).encode()).hexdigest()

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def now_utc_iso() -> str:
    return now_utc().isoformat()

def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

def local_today(local_tz: str) -> date:
    return now_utc().astimezone(tz.gettz(local_tz)).date()

def as_date_str(value) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]

def is_numeric(value) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        if isinstance(value, (int, float)):
            return math.isfinite(value)
        return math.isfinite(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return False

def to_number(value, default=0.0) -> float:
    # Non-numeric remote values collapse to the default instead of failing the row.
    if not is_numeric(value):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).strip())

def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    return min(max_delay, base_delay * (2 ** (attempt - 1)))

def retry_call(
    fn,
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: tuple = (Exception,),
    on_retry=None,
    sleep=time_module.sleep,
):
    """Call ``fn`` until it succeeds or ``attempts`` are used up.

    Only exceptions matching ``retry_on`` are retried; anything else propagates
    on first occurrence. The last retryable exception is re-raised unchanged.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            if on_retry is not None:
                on_retry(attempt, delay, exc)
            if delay > 0:
                sleep(delay)


class RateLimiter:
    def __init__(self, min_interval_seconds: float, sleep=time_module.sleep):
        self.min_interval_seconds = float(min_interval_seconds or 0.0)
        self._last_call = None
        self._lock = threading.Lock()
        self._sleep = sleep

    def wait(self):
        if self.min_interval_seconds <= 0:
            return
        with self._lock:
            now = time_module.monotonic()
            if self._last_call is not None:
                sleep_for = self.min_interval_seconds - (now - self._last_call)
                if sleep_for > 0:
                    self._sleep(sleep_for)
            self._last_call = time_module.monotonic()
