import os
from pathlib import Path

API_BASE_URL = os.getenv("ROLLCALL_CLIENT_API_BASE_URL", "http://127.0.0.1:8000").strip().rstrip("/")
SESSION_FILE = Path(
    os.getenv("ROLLCALL_CLIENT_SESSION_FILE", Path.home() / ".rollcall" / "session.json")
)


def _parse_float(value: str | None, fallback: float) -> float:
    if value is None or not value.strip():
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


MAX_ATTEMPTS = max(1, int(os.getenv("ROLLCALL_CLIENT_MAX_ATTEMPTS", "3")))
# A request that has not answered within this window fails closed.
REQUEST_TIMEOUT_SECONDS = _parse_float(os.getenv("ROLLCALL_CLIENT_REQUEST_TIMEOUT_SECONDS"), 10.0)
# How long Success / Failure stay on screen before returning to the dashboard.
RESULT_DISPLAY_SECONDS = _parse_float(os.getenv("ROLLCALL_CLIENT_RESULT_DISPLAY_SECONDS"), 2.0)
ATTENDANCE_METHOD = "qr+face"
