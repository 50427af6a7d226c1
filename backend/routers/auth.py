import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import ROLE_ADMIN, ROLE_STUDENT, issue_session_token, require_session
from database.db import (
    create_student,
    create_tables,
    get_student_by_id,
    verify_admin_credentials,
    verify_student_credentials,
)

router = APIRouter()

MIN_PASSWORD_LENGTH = 6


class StudentSignup(BaseModel):
    registration_number: str
    password: str
    name: str
    email: str | None = None
    phone: str | None = None
    department: str | None = None
    class_no: str | None = None
    section: str | None = None


class StudentLogin(BaseModel):
    registration_number: str
    password: str


class AdminLogin(BaseModel):
    username: str
    password: str


def _token_response(subject: str, role: str) -> dict:
    token, claims = issue_session_token(subject, role=role)
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


def _with_schema_retry(fn, *args):
    try:
        return fn(*args)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            return fn(*args)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )


@router.post("/auth/signup")
def student_signup(payload: StudentSignup):
    registration_number = payload.registration_number.strip()
    name = payload.name.strip()

    if not registration_number or not name:
        raise HTTPException(status_code=400, detail="Registration number and name are required.")
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
        )

    try:
        student = create_student(
            registration_number=registration_number,
            password=payload.password,
            name=name,
            email=payload.email,
            phone=payload.phone,
            department=payload.department,
            class_no=payload.class_no,
            section=payload.section,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(
            status_code=409,
            detail="Registration number already exists. Please log in instead.",
        )

    return {**_token_response(student["id"], ROLE_STUDENT), "student": student}


@router.post("/auth/login")
def student_login(payload: StudentLogin):
    registration_number = payload.registration_number.strip()
    if not registration_number:
        raise HTTPException(status_code=400, detail="Registration number is required.")
    if not payload.password:
        raise HTTPException(status_code=400, detail="Password is required.")

    student = _with_schema_retry(verify_student_credentials, registration_number, payload.password)
    if not student:
        raise HTTPException(status_code=401, detail="Invalid registration number or password.")

    return {**_token_response(student["id"], ROLE_STUDENT), "student": student}


@router.post("/auth/admin/login")
def admin_login(payload: AdminLogin):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    admin = _with_schema_retry(verify_admin_credentials, username, password)
    if not admin:
        raise HTTPException(status_code=401, detail="Invalid admin credentials.")

    return {**_token_response(admin["username"], ROLE_ADMIN), "username": admin["username"]}


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    body = {
        "subject": session.get("sub"),
        "role": session.get("role"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
    if session.get("role") == ROLE_STUDENT:
        student = get_student_by_id(str(session["sub"]))
        if not student:
            raise HTTPException(status_code=404, detail="Student not found.")
        body["student"] = student
    return body
