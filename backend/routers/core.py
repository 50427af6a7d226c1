from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    DB_PATH,
    DEFAULT_METHOD,
    ENABLE_DEBUG_ENDPOINTS,
    FACE_DETECTION_ENABLED,
    MATCH_THRESHOLD,
    MAX_IMAGE_BASE64_BYTES,
    MAX_VERIFICATION_ATTEMPTS,
)
from backend.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/verification")
def verification_config():
    return {
        "match_threshold": MATCH_THRESHOLD,
        "max_attempts": MAX_VERIFICATION_ATTEMPTS,
        "max_image_base64_bytes": MAX_IMAGE_BASE64_BYTES,
        "face_detection_enabled": FACE_DETECTION_ENABLED,
        "default_method": DEFAULT_METHOD,
    }
