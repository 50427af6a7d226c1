import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

ASSETS_DIR = Path(os.getenv("ROLLCALL_ASSETS_DIR", BASE_DIR / "assets"))
FACES_DIR = Path(os.getenv("ROLLCALL_FACES_DIR", ASSETS_DIR / "faces"))
DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))
ADMIN_USERNAME = os.getenv("ROLLCALL_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("ROLLCALL_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float, *, low: float | None = None, high: float | None = None) -> float:
    if value is None or not value.strip():
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    if low is not None and parsed < low:
        return fallback
    if high is not None and parsed > high:
        return fallback
    return parsed


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:8081", "http://127.0.0.1:8081", "http://localhost:19006"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Client-Info"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("ROLLCALL_ENABLE_DEBUG_ENDPOINTS"), False)

# Face verification
MATCH_THRESHOLD = _parse_float(os.getenv("ROLLCALL_MATCH_THRESHOLD"), 0.75, low=0.0, high=1.0)
MOCK_CONFIDENCE_MIN = _parse_float(os.getenv("ROLLCALL_MOCK_CONFIDENCE_MIN"), 0.80, low=0.0, high=1.0)
MOCK_CONFIDENCE_MAX = _parse_float(os.getenv("ROLLCALL_MOCK_CONFIDENCE_MAX"), 0.95, low=0.0, high=1.0)
MAX_IMAGE_BASE64_BYTES = max(1, int(os.getenv("ROLLCALL_MAX_IMAGE_BASE64_BYTES", "2000000")))
FACE_DETECTION_ENABLED = _parse_bool(os.getenv("ROLLCALL_FACE_DETECTION_ENABLED"), True)
MIN_FACE_SIZE = int(os.getenv("ROLLCALL_MIN_FACE_SIZE", "80"))

# Attendance flow
MAX_VERIFICATION_ATTEMPTS = max(1, int(os.getenv("ROLLCALL_MAX_VERIFICATION_ATTEMPTS", "3")))
QR_TOKEN_MAX_LENGTH = max(16, int(os.getenv("ROLLCALL_QR_TOKEN_MAX_LENGTH", "512")))
DEFAULT_METHOD = "qr+face"
