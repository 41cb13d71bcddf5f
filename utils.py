# utils.py
from datetime import datetime, timezone
import os


class APIError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# Anything listed here is scrubbed from log output
SENSITIVE_TOKENS = [t for t in [
    os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
    os.getenv("SUPABASE_ANON_KEY"),
    os.getenv("SUPABASE_JWT_SECRET"),
    os.getenv("ONESIGNAL_REST_API_KEY"),
    os.getenv("WEBHOOK_SECRET"),
    os.getenv("FOOTBALL_DATA_API_KEY"),
] if t]

ENABLE_DEBUG_LOGS = os.getenv("ENABLE_DEBUG_LOGS", "0") == "1"


def redact(s: str) -> str:
    if not isinstance(s, str):
        return s
    redacted = s
    for token in SENSITIVE_TOKENS:
        if token and token in redacted:
            redacted = redacted.replace(token, "[REDACTED]")
    return redacted


def safe_print(*args, **kwargs):
    parts = []
    for a in args:
        parts.append(redact(str(a)))
    print(*parts, **kwargs)


def debug_print(*args, **kwargs):
    if ENABLE_DEBUG_LOGS:
        safe_print(*args, **kwargs)


def now_utc():
    return datetime.now(timezone.utc)


def parse_iso8601_utc(val):
    """
    Accepts:
      - ISO-8601 strings ('2025-08-16T11:30:00Z', '2025-08-16T12:30:00+01:00', '2025-08-16T11:30:00')
      - datetime (naive or tz-aware)
      - None / empty
    Returns a timezone-aware UTC datetime, or None if not set/parsable.
    """
    if not val:
        return None

    try:
        if isinstance(val, datetime):
            dt = val
        else:
            s = str(val).strip()
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            dt = datetime.fromisoformat(s)

        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (TypeError, ValueError):
        safe_print(f"⚠️ Could not parse datetime value: {val}")
        return None
