import hashlib
import hmac
import logging
import secrets
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, TypedDict

from backend.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    DEFAULT_METHOD,
    MATCH_THRESHOLD,
    QR_TOKEN_MAX_LENGTH,
)

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
ATTENDANCE_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_attendance_marks.sql"
BUSY_TIMEOUT_SECONDS = 10.0

CommitStatus = Literal["ok", "duplicate", "session_closed", "error"]
QrReason = Literal["malformed", "unknown_token", "expired", "not_started", "closed"]
WindowState = Literal["open", "not_started", "expired", "closed"]
VerificationOutcome = Literal[
    "MATCH",
    "MISMATCH",
    "NO_FACE",
    "INVALID_IMAGE",
    "IMAGE_TOO_LARGE",
    "NOT_ENROLLED",
]


class QrValidationResult(TypedDict):
    valid: bool
    session_id: str | None
    class_id: str | None
    reason: QrReason | None


class CommitResult(TypedDict):
    status: CommitStatus
    message: str
    mark_id: int | None


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def to_local_naive(value: datetime) -> datetime:
    """Stored times are naive local time; aware values are converted into it."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def _iso(value: datetime) -> str:
    return to_local_naive(value).isoformat(timespec="seconds")


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=BUSY_TIMEOUT_SECONDS, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_users (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id TEXT PRIMARY KEY,
        registration_number TEXT NOT NULL UNIQUE COLLATE NOCASE,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        department TEXT,
        class_no TEXT,
        section TEXT,
        face_template_ref TEXT,           -- write-once, set by enrollment
        face_enrolled_at TEXT,
        created_at TEXT NOT NULL
    )
    """)

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    _ensure_default_admin(cursor)

    # Commit base schema first so the attendance migration can manage its own
    # transaction block.
    conn.commit()
    ensure_attendance_schema(conn)

    conn.commit()
    conn.close()


def ensure_attendance_schema(conn: sqlite3.Connection) -> None:
    """
    Ensure `classes`, `sessions`, `attendance_marks` and `verification_events` exist.

    SQL source: `database/migrations/001_attendance_marks.sql`.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type='table'
          AND name IN ('classes', 'sessions', 'attendance_marks', 'verification_events')
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if not {"classes", "sessions", "attendance_marks", "verification_events"}.issubset(existing):
        sql = ATTENDANCE_MIGRATION_FILE.read_text(encoding="utf-8")
        conn.executescript(sql)


# -----------------------------
# Students / admins
# -----------------------------
def _student_public(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return {
        "id": row["id"],
        "registration_number": row["registration_number"],
        "name": row["name"],
        "email": row["email"],
        "phone": row["phone"],
        "department": row["department"],
        "class_no": row["class_no"],
        "section": row["section"],
        "face_enrolled": row["face_template_ref"] is not None,
        "face_template_ref": row["face_template_ref"],
        "created_at": row["created_at"],
    }


def create_student(
    *,
    registration_number: str,
    password: str,
    name: str,
    email: str | None = None,
    phone: str | None = None,
    department: str | None = None,
    class_no: str | None = None,
    section: str | None = None,
) -> dict:
    """Insert a student; raises sqlite3.IntegrityError when the registration number is taken."""
    student_id = str(uuid.uuid4())
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO students (
                id, registration_number, name, password_hash,
                email, phone, department, class_no, section, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                student_id,
                registration_number.strip(),
                name.strip(),
                _hash_password(password),
                (email or "").strip().lower() or None,
                (phone or "").strip() or None,
                (department or "").strip() or None,
                (class_no or "").strip() or None,
                (section or "").strip() or None,
                _iso(datetime.now()),
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return get_student_by_id(student_id)


def get_student_by_id(student_id: str) -> dict | None:
    conn = connect_db()
    try:
        row = conn.execute("SELECT * FROM students WHERE id = ?", (student_id,)).fetchone()
        return _student_public(row)
    finally:
        conn.close()


def verify_student_credentials(registration_number: str, password: str) -> dict | None:
    conn = connect_db()
    try:
        row = conn.execute(
            """
            SELECT *
            FROM students
            WHERE registration_number = ? COLLATE NOCASE
            """,
            (registration_number.strip(),),
        ).fetchone()
    finally:
        conn.close()

    if not row:
        return None
    if not _verify_password(password, str(row["password_hash"])):
        return None
    return _student_public(row)


def set_face_template(student_id: str, template_ref: str) -> bool:
    """Set the enrolled face template once. Returns False if already enrolled or unknown."""
    conn = connect_db()
    try:
        cur = conn.execute(
            """
            UPDATE students
            SET face_template_ref = ?,
                face_enrolled_at = ?
            WHERE id = ?
              AND face_template_ref IS NULL
            """,
            (template_ref, _iso(datetime.now()), student_id),
        )
        conn.commit()
        return cur.rowcount == 1
    finally:
        conn.close()


def verify_admin_credentials(username: str, password: str) -> dict | None:
    conn = connect_db()
    try:
        row = conn.execute(
            """
            SELECT id, username, password_hash
            FROM admin_users
            WHERE username = ? COLLATE NOCASE
            """,
            (username.strip(),),
        ).fetchone()
    finally:
        conn.close()

    if not row:
        return None
    if not _verify_password(password, str(row["password_hash"])):
        return None
    return {"id": int(row["id"]), "username": str(row["username"])}


# -----------------------------
# Classes / sessions
# -----------------------------
def create_class(
    *,
    name: str,
    code: str,
    instructor_name: str | None = None,
    department: str | None = None,
) -> dict:
    class_id = str(uuid.uuid4())
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO classes (id, name, code, instructor_name, department, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                class_id,
                name.strip(),
                code.strip(),
                (instructor_name or "").strip() or None,
                (department or "").strip() or None,
                _iso(datetime.now()),
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return get_class(class_id)


def get_class(class_id: str) -> dict | None:
    conn = connect_db()
    try:
        row = conn.execute("SELECT * FROM classes WHERE id = ?", (class_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def create_session(
    *,
    class_id: str,
    starts_at: datetime,
    ends_at: datetime | None = None,
    qr_token: str | None = None,
    room: str | None = None,
) -> dict:
    """
    Create an active session. The QR token is issued by the scheduling side;
    when omitted an opaque random token is generated.
    """
    session_id = str(uuid.uuid4())
    token = (qr_token or "").strip() or secrets.token_urlsafe(24)
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO sessions (id, class_id, starts_at, ends_at, status, qr_token, room, created_at)
            VALUES (?, ?, ?, ?, 'active', ?, ?, ?)
            """,
            (
                session_id,
                class_id,
                _iso(starts_at),
                _iso(ends_at) if ends_at else None,
                token,
                (room or "").strip() or None,
                _iso(datetime.now()),
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return get_session(session_id)


def get_session(session_id: str) -> dict | None:
    conn = connect_db()
    try:
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def close_session(session_id: str, *, now: datetime | None = None) -> bool:
    marker = to_local_naive(now or datetime.now())
    conn = connect_db()
    try:
        cur = conn.execute(
            """
            UPDATE sessions
            SET status = 'closed',
                closed_at = ?
            WHERE id = ? AND status = 'active'
            """,
            (_iso(marker), session_id),
        )
        conn.commit()
        return cur.rowcount == 1
    finally:
        conn.close()


def close_expired_sessions(*, now: datetime | None = None) -> int:
    """Move every active session whose end has passed to `closed`."""
    marker = _iso(now or datetime.now())
    conn = connect_db()
    try:
        cur = conn.execute(
            """
            UPDATE sessions
            SET status = 'closed',
                closed_at = ?
            WHERE status = 'active'
              AND ends_at IS NOT NULL
              AND ends_at < ?
            """,
            (marker, marker),
        )
        conn.commit()
        closed = int(cur.rowcount)
    finally:
        conn.close()
    if closed:
        logger.info("Closed %d expired session(s)", closed)
    return closed


def get_sessions_for_date(date: str) -> list[dict]:
    conn = connect_db()
    try:
        rows = conn.execute(
            """
            SELECT
                s.id,
                s.class_id,
                c.name,
                c.code,
                c.instructor_name,
                s.room,
                s.starts_at,
                s.ends_at,
                s.status
            FROM sessions s
            JOIN classes c ON c.id = s.class_id
            WHERE substr(s.starts_at, 1, 10) = ?
            ORDER BY s.starts_at ASC
            """,
            (date,),
        ).fetchall()
    finally:
        conn.close()
    return [
        {
            "session_id": r["id"],
            "class_id": r["class_id"],
            "class_name": r["name"],
            "class_code": r["code"],
            "instructor_name": r["instructor_name"],
            "room": r["room"],
            "starts_at": r["starts_at"],
            "ends_at": r["ends_at"],
            "status": r["status"],
        }
        for r in rows
    ]


def session_window_state(session: dict, now: datetime) -> WindowState:
    """Where `now` falls relative to the session's status and time window (end inclusive)."""
    if session["status"] != "active":
        return "closed"
    now = to_local_naive(now)
    starts_at = _parse_iso(session["starts_at"])
    ends_at = _parse_iso(session["ends_at"])
    if starts_at is not None and now < starts_at:
        return "not_started"
    if ends_at is not None and now > ends_at:
        return "expired"
    return "open"


# -----------------------------
# QR validation
# -----------------------------
def _is_malformed_token(qr_payload: Any) -> bool:
    if not isinstance(qr_payload, str):
        return True
    token = qr_payload.strip()
    if not token or len(token) > QR_TOKEN_MAX_LENGTH:
        return True
    return any(ch.isspace() or not ch.isprintable() for ch in token)


def validate_qr_token(qr_payload: Any, *, now: datetime | None = None) -> QrValidationResult:
    """
    Resolve a scanned QR payload to its session.

    Read-only: never mutates state, so repeated calls with the same payload and
    unchanged session state return the same result. Negative outcomes are
    returned with a reason instead of raised.
    """
    if _is_malformed_token(qr_payload):
        return {"valid": False, "session_id": None, "class_id": None, "reason": "malformed"}

    marker = to_local_naive(now or datetime.now())
    conn = connect_db()
    try:
        row = conn.execute(
            "SELECT * FROM sessions WHERE qr_token = ?",
            (qr_payload.strip(),),
        ).fetchone()
    finally:
        conn.close()

    if not row:
        return {"valid": False, "session_id": None, "class_id": None, "reason": "unknown_token"}

    state = session_window_state(dict(row), marker)
    if state != "open":
        return {"valid": False, "session_id": None, "class_id": None, "reason": state}

    return {
        "valid": True,
        "session_id": str(row["id"]),
        "class_id": str(row["class_id"]),
        "reason": None,
    }


# -----------------------------
# Attendance commit
# -----------------------------
def _commit_result(status: CommitStatus, message: str, mark_id: int | None = None) -> CommitResult:
    return {"status": status, "message": message, "mark_id": mark_id}


def commit_attendance(
    *,
    student_id: str,
    class_id: str,
    session_id: str,
    method: str | None = None,
    confidence: float | None = None,
    now: datetime | None = None,
) -> CommitResult:
    """
    Record exactly one attendance mark for (student_id, session_id).

    The whole check-and-insert runs inside a single `BEGIN IMMEDIATE` write
    transaction and the ledger carries a UNIQUE(student_id, session_id)
    constraint, so concurrent or repeated calls create at most one row; every
    other call reports `duplicate`. Marks are refused once the session window
    has closed, regardless of what QR validation said earlier.
    """
    marker = to_local_naive(now or datetime.now())
    method_value = (method or "").strip() or DEFAULT_METHOD

    if confidence is None or not 0.0 <= float(confidence) <= 1.0:
        return _commit_result("error", "Confidence must be between 0 and 1.")
    if float(confidence) < MATCH_THRESHOLD:
        return _commit_result("error", "Face verification confidence is below the match threshold.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("BEGIN IMMEDIATE")

        cur.execute("SELECT id FROM students WHERE id = ?", (student_id,))
        if cur.fetchone() is None:
            conn.rollback()
            return _commit_result("error", "Unknown student.")

        cur.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
        session_row = cur.fetchone()
        if session_row is None:
            conn.rollback()
            return _commit_result("error", "Unknown session.")
        if str(session_row["class_id"]) != class_id:
            conn.rollback()
            return _commit_result("error", "Session does not belong to this class.")

        cur.execute(
            """
            SELECT id
            FROM attendance_marks
            WHERE student_id = ? AND session_id = ?
            """,
            (student_id, session_id),
        )
        existing = cur.fetchone()
        if existing is not None:
            conn.rollback()
            logger.info("Duplicate attendance commit student=%s session=%s", student_id, session_id)
            return _commit_result("duplicate", "Attendance already recorded for this session.", int(existing["id"]))

        state = session_window_state(dict(session_row), marker)
        if state != "open":
            conn.rollback()
            logger.warning(
                "Attendance refused student=%s session=%s window=%s", student_id, session_id, state
            )
            return _commit_result("session_closed", "This session is no longer accepting attendance.")

        cur.execute(
            """
            INSERT INTO attendance_marks (student_id, session_id, class_id, marked_at, method, confidence)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (student_id, session_id, class_id, _iso(marker), method_value, float(confidence)),
        )
        mark_id = int(cur.lastrowid)
        conn.commit()
        logger.info("Attendance marked student=%s session=%s mark=%d", student_id, session_id, mark_id)
        return _commit_result("ok", "Attendance marked.", mark_id)
    except sqlite3.IntegrityError:
        conn.rollback()
        return _commit_result("duplicate", "Attendance already recorded for this session.")
    except sqlite3.Error:
        conn.rollback()
        logger.exception("Attendance commit failed student=%s session=%s", student_id, session_id)
        return _commit_result("error", "Attendance could not be recorded. Please retry.")
    finally:
        conn.close()


def get_attendance_for_session(session_id: str) -> list[dict]:
    conn = connect_db()
    try:
        rows = conn.execute(
            """
            SELECT
                m.id,
                m.student_id,
                s.registration_number,
                s.name,
                m.marked_at,
                m.method,
                m.confidence
            FROM attendance_marks m
            JOIN students s ON s.id = m.student_id
            WHERE m.session_id = ?
            ORDER BY m.marked_at ASC, m.id ASC
            """,
            (session_id,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def get_student_attendance(student_id: str, *, limit: int = 20) -> list[dict]:
    conn = connect_db()
    try:
        rows = conn.execute(
            """
            SELECT
                m.id,
                m.session_id,
                m.class_id,
                c.name AS class_name,
                c.code AS class_code,
                m.marked_at,
                m.method,
                m.confidence
            FROM attendance_marks m
            JOIN classes c ON c.id = m.class_id
            WHERE m.student_id = ?
            ORDER BY m.marked_at DESC, m.id DESC
            LIMIT ?
            """,
            (student_id, int(limit)),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def _percentage(attended: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(round(attended * 100.0 / total))


def _standing(percentage: int) -> str:
    if percentage >= 90:
        return "Excellent"
    if percentage >= 80:
        return "Good"
    if percentage >= 75:
        return "Average"
    return "Needs Improvement"


def get_student_summary(student_id: str, *, now: datetime | None = None) -> dict:
    """Attendance totals over every session that has started, overall and per class."""
    marker = _iso(now or datetime.now())
    conn = connect_db()
    try:
        rows = conn.execute(
            """
            SELECT
                c.id,
                c.name,
                c.code,
                COUNT(s.id) AS total,
                COUNT(m.id) AS attended
            FROM classes c
            LEFT JOIN sessions s
              ON s.class_id = c.id
             AND s.starts_at <= ?
            LEFT JOIN attendance_marks m
              ON m.session_id = s.id
             AND m.student_id = ?
            GROUP BY c.id, c.name, c.code
            ORDER BY c.name ASC
            """,
            (marker, student_id),
        ).fetchall()
    finally:
        conn.close()

    classes = []
    total_sessions = 0
    attended_sessions = 0
    for r in rows:
        total = int(r["total"] or 0)
        attended = int(r["attended"] or 0)
        total_sessions += total
        attended_sessions += attended
        percentage = _percentage(attended, total)
        classes.append(
            {
                "class_id": r["id"],
                "name": r["name"],
                "code": r["code"],
                "attended": attended,
                "total": total,
                "percentage": percentage,
                "standing": _standing(percentage),
            }
        )

    overall = _percentage(attended_sessions, total_sessions)
    return {
        "total_sessions": total_sessions,
        "attended": attended_sessions,
        "missed": max(0, total_sessions - attended_sessions),
        "percentage": overall,
        "standing": _standing(overall),
        "classes": classes,
    }


# -----------------------------
# Verification audit trail
# -----------------------------
def insert_verification_event(
    *,
    outcome: VerificationOutcome,
    student_id: str | None,
    confidence: float | None = None,
    matched: bool = False,
    message: str | None = None,
    session_id: str | None = None,
) -> int:
    """Append one verification audit event and return its id."""
    conn = connect_db()
    try:
        cur = conn.execute(
            """
            INSERT INTO verification_events (
                student_id, session_id, outcome, confidence, matched, message, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                student_id,
                session_id,
                outcome,
                confidence,
                1 if matched else 0,
                message,
                _iso(datetime.now()),
            ),
        )
        conn.commit()
        return int(cur.lastrowid)
    finally:
        conn.close()


def _build_verification_events_where_clause(
    *,
    student_id: str | None,
    outcome: str | None,
    date: str | None,
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if student_id:
        clauses.append("student_id = ?")
        params.append(student_id)
    if outcome:
        clauses.append("outcome = ?")
        params.append(outcome)
    if date:
        clauses.append("substr(created_at, 1, 10) = ?")
        params.append(date)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def get_verification_events(
    *,
    student_id: str | None = None,
    outcome: str | None = None,
    date: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    where, params = _build_verification_events_where_clause(
        student_id=student_id,
        outcome=outcome,
        date=date,
    )
    conn = connect_db()
    try:
        rows = conn.execute(
            f"""
            SELECT id, student_id, session_id, outcome, confidence, matched, message, created_at
            FROM verification_events
            {where}
            ORDER BY id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, int(limit), int(offset)),
        ).fetchall()
    finally:
        conn.close()
    return [{**dict(r), "matched": bool(r["matched"])} for r in rows]


def get_verification_events_total(
    *,
    student_id: str | None = None,
    outcome: str | None = None,
    date: str | None = None,
) -> int:
    where, params = _build_verification_events_where_clause(
        student_id=student_id,
        outcome=outcome,
        date=date,
    )
    conn = connect_db()
    try:
        row = conn.execute(f"SELECT COUNT(1) FROM verification_events {where}", params).fetchone()
        return int(row[0] or 0)
    finally:
        conn.close()
