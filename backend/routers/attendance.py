import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.config import DEFAULT_METHOD
from backend.security import require_student
from backend.verifier import (
    FaceVerifier,
    ImageTooLarge,
    InvalidImage,
    NoFaceDetected,
    get_verifier,
)
from database.db import (
    commit_attendance,
    get_student_by_id,
    insert_verification_event,
    validate_qr_token,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class QrValidateRequest(BaseModel):
    # Untrusted scanner output; anything that is not a usable token comes back as `malformed`.
    qr_payload: Any = None


class FaceVerifyRequest(BaseModel):
    image_base64: str
    student_id: str | None = None
    session_id: str | None = None


class CommitRequest(BaseModel):
    class_id: str
    session_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    method: str = DEFAULT_METHOD
    student_id: str | None = None


def _resolve_student_id(session: dict, requested: str | None) -> str:
    student_id = str(session["sub"])
    if requested and requested.strip() and requested.strip() != student_id:
        raise HTTPException(status_code=403, detail="Student does not match the signed-in session.")
    return student_id


def _verification_error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


@router.post("/attendance/validate-qr")
def validate_qr(payload: QrValidateRequest, _session: dict = Depends(require_student)):
    return validate_qr_token(payload.qr_payload)


@router.post("/attendance/verify-face")
def verify_face(
    payload: FaceVerifyRequest,
    session: dict = Depends(require_student),
    verifier: FaceVerifier = Depends(get_verifier),
):
    student_id = _resolve_student_id(session, payload.student_id)
    student = get_student_by_id(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")

    if not student["face_enrolled"]:
        insert_verification_event(
            outcome="NOT_ENROLLED",
            student_id=student_id,
            session_id=payload.session_id,
            message="Verification attempted before face enrollment.",
        )
        raise _verification_error(409, "FACE_NOT_ENROLLED", "Enroll your face before marking attendance.")

    try:
        result = verifier.verify(
            student_id=student_id,
            image_base64=payload.image_base64,
            template_ref=student["face_template_ref"],
        )
    except ImageTooLarge as exc:
        logger.warning("Oversized verification image student=%s", student_id)
        insert_verification_event(
            outcome="IMAGE_TOO_LARGE",
            student_id=student_id,
            session_id=payload.session_id,
            message=str(exc),
        )
        raise _verification_error(413, exc.code, "Image too large.")
    except NoFaceDetected as exc:
        insert_verification_event(
            outcome="NO_FACE",
            student_id=student_id,
            session_id=payload.session_id,
            message=str(exc),
        )
        raise _verification_error(422, exc.code, str(exc))
    except InvalidImage as exc:
        logger.warning("Undecodable verification image student=%s", student_id)
        insert_verification_event(
            outcome="INVALID_IMAGE",
            student_id=student_id,
            session_id=payload.session_id,
            message=str(exc),
        )
        raise _verification_error(422, exc.code, str(exc))

    insert_verification_event(
        outcome="MATCH" if result.match else "MISMATCH",
        student_id=student_id,
        session_id=payload.session_id,
        confidence=result.confidence,
        matched=result.match,
        message="Verified" if result.match else "Not verified",
    )
    return {
        "match": result.match,
        "confidence": result.confidence,
        "message": "Verified" if result.match else "Not verified",
    }


@router.post("/attendance/commit")
def commit(payload: CommitRequest, session: dict = Depends(require_student)):
    student_id = _resolve_student_id(session, payload.student_id)
    result = commit_attendance(
        student_id=student_id,
        class_id=payload.class_id.strip(),
        session_id=payload.session_id.strip(),
        method=payload.method,
        confidence=payload.confidence,
    )
    return {"status": result["status"], "message": result["message"]}
