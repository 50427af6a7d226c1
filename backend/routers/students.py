from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.security import require_session, require_student
from backend.services.enrollment import AlreadyEnrolled, UnknownStudent, enroll_face
from backend.verifier import FaceVerifier, ImageTooLarge, VerificationError, get_verifier
from database.db import get_sessions_for_date, get_student_attendance, get_student_summary

router = APIRouter()


class FaceEnrollRequest(BaseModel):
    image_base64: str
    consent: bool = True


@router.post("/students/me/face")
def enroll_my_face(
    payload: FaceEnrollRequest,
    session: dict = Depends(require_student),
    verifier: FaceVerifier = Depends(get_verifier),
):
    if not payload.consent:
        raise HTTPException(status_code=400, detail="Consent is required for face enrollment.")

    try:
        return enroll_face(str(session["sub"]), payload.image_base64, verifier)
    except UnknownStudent:
        raise HTTPException(status_code=404, detail="Student not found.")
    except AlreadyEnrolled:
        raise HTTPException(status_code=409, detail="Face already enrolled.")
    except ImageTooLarge as exc:
        raise HTTPException(status_code=413, detail={"code": exc.code, "message": "Image too large."})
    except VerificationError as exc:
        raise HTTPException(status_code=422, detail={"code": exc.code, "message": str(exc)})


@router.get("/students/me/attendance")
def my_attendance(
    limit: int = Query(default=20, ge=1, le=200),
    session: dict = Depends(require_student),
):
    return get_student_attendance(str(session["sub"]), limit=limit)


@router.get("/students/me/summary")
def my_summary(session: dict = Depends(require_student)):
    return get_student_summary(str(session["sub"]))


@router.get("/sessions")
def sessions_for_day(date: str | None = None, _session: dict = Depends(require_session)):
    day = date or datetime.now().strftime("%Y-%m-%d")
    try:
        datetime.strptime(day, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD.")
    return {"date": day, "sessions": get_sessions_for_date(day)}
