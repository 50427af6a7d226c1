import sqlite3
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.security import require_admin
from database.db import (
    close_expired_sessions,
    close_session,
    create_class,
    create_session,
    get_attendance_for_session,
    get_class,
    get_session,
    get_verification_events,
    get_verification_events_total,
    to_local_naive,
)

router = APIRouter(dependencies=[Depends(require_admin)])
ALLOWED_OUTCOMES: set[str] = {
    "MATCH",
    "MISMATCH",
    "NO_FACE",
    "INVALID_IMAGE",
    "IMAGE_TOO_LARGE",
    "NOT_ENROLLED",
}


class ClassCreate(BaseModel):
    name: str
    code: str
    instructor_name: str | None = None
    department: str | None = None


class SessionCreate(BaseModel):
    class_id: str
    starts_at: datetime
    ends_at: datetime | None = None
    qr_token: str | None = None
    room: str | None = None


@router.post("/admin/classes")
def add_class(payload: ClassCreate):
    name = payload.name.strip()
    code = payload.code.strip()
    if not name or not code:
        raise HTTPException(status_code=400, detail="Class name and code are required.")
    try:
        return create_class(
            name=name,
            code=code,
            instructor_name=payload.instructor_name,
            department=payload.department,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Class code already exists.")


@router.post("/admin/sessions")
def add_session(payload: SessionCreate):
    if not get_class(payload.class_id):
        raise HTTPException(status_code=404, detail="Class not found.")
    if payload.ends_at is not None and to_local_naive(payload.ends_at) <= to_local_naive(payload.starts_at):
        raise HTTPException(status_code=400, detail="ends_at must be after starts_at.")
    try:
        return create_session(
            class_id=payload.class_id,
            starts_at=payload.starts_at,
            ends_at=payload.ends_at,
            qr_token=payload.qr_token,
            room=payload.room,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="QR token already issued for another session.")


@router.post("/admin/sessions/maintenance")
def run_session_maintenance():
    closed = close_expired_sessions()
    return {"ok": True, "message": "Session maintenance completed.", "closed": closed}


@router.post("/admin/sessions/{session_id}/close")
def end_session(session_id: str):
    if not get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found.")
    closed = close_session(session_id)
    return {"ok": True, "closed": closed}


@router.get("/admin/sessions/{session_id}/attendance")
def session_attendance(session_id: str):
    session = get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found.")
    rows = get_attendance_for_session(session_id)
    return {"session": session, "total": len(rows), "rows": rows}


@router.get("/admin/verification-events")
def list_verification_events(
    student_id: str | None = None,
    outcome: str | None = None,
    date: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_outcome = outcome.strip().upper() if outcome else None
    if clean_outcome and clean_outcome not in ALLOWED_OUTCOMES:
        raise HTTPException(status_code=400, detail="Invalid outcome filter.")

    rows = get_verification_events(
        student_id=student_id,
        outcome=clean_outcome,
        date=date,
        limit=limit,
        offset=offset,
    )
    total = get_verification_events_total(student_id=student_id, outcome=clean_outcome, date=date)
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }
