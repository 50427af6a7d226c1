from datetime import datetime

import pytest

import database.db as db


@pytest.fixture()
def session(temp_db):
    klass = db.create_class(name="Compilers", code="CS420")
    return db.create_session(
        class_id=klass["id"],
        starts_at=datetime(2026, 3, 2, 14, 0),
        ends_at=datetime(2026, 3, 2, 15, 0),
        qr_token="qr-cs420-0302",
    )


def test_valid_token_resolves_session(session):
    result = db.validate_qr_token("qr-cs420-0302", now=datetime(2026, 3, 2, 14, 30))
    assert result == {
        "valid": True,
        "session_id": session["id"],
        "class_id": session["class_id"],
        "reason": None,
    }


def test_validation_is_idempotent(session):
    at = datetime(2026, 3, 2, 14, 30)
    first = db.validate_qr_token("qr-cs420-0302", now=at)
    second = db.validate_qr_token("qr-cs420-0302", now=at)
    assert first == second
    assert db.get_session(session["id"])["status"] == "active"


@pytest.mark.parametrize("payload", ["", "   ", None, 42, "two words", "tab\there", "x" * 600])
def test_malformed_payloads(session, payload):
    result = db.validate_qr_token(payload, now=datetime(2026, 3, 2, 14, 30))
    assert result == {"valid": False, "session_id": None, "class_id": None, "reason": "malformed"}


@pytest.mark.parametrize(
    "payload, at, reason",
    [
        ("no-such-token", datetime(2026, 3, 2, 14, 30), "unknown_token"),
        ("qr-cs420-0302", datetime(2026, 3, 2, 15, 0, 1), "expired"),
        ("qr-cs420-0302", datetime(2026, 3, 2, 13, 59), "not_started"),
    ],
)
def test_negative_outcomes_carry_a_reason(session, payload, at, reason):
    result = db.validate_qr_token(payload, now=at)
    assert result["valid"] is False
    assert result["reason"] == reason
    assert result["session_id"] is None


def test_closed_session_token(session):
    db.close_session(session["id"], now=datetime(2026, 3, 2, 14, 10))
    result = db.validate_qr_token("qr-cs420-0302", now=datetime(2026, 3, 2, 14, 30))
    assert result["reason"] == "closed"


def test_same_token_serves_different_students(session):
    # Reuse is limited by the time window and per-student uniqueness only.
    at = datetime(2026, 3, 2, 14, 20)
    ids = [
        db.create_student(registration_number=f"R-{n}", password="secret123", name=f"S{n}")["id"]
        for n in range(2)
    ]
    for student_id in ids:
        qr = db.validate_qr_token("qr-cs420-0302", now=at)
        result = db.commit_attendance(
            student_id=student_id,
            class_id=qr["class_id"],
            session_id=qr["session_id"],
            confidence=0.8,
            now=at,
        )
        assert result["status"] == "ok"
    assert len(db.get_attendance_for_session(session["id"])) == 2


def test_timezone_aware_now_is_compared_in_local_time(session):
    at = datetime(2026, 3, 2, 14, 30).astimezone()
    assert db.validate_qr_token("qr-cs420-0302", now=at)["valid"] is True

    late = datetime(2026, 3, 2, 15, 30).astimezone()
    assert db.validate_qr_token("qr-cs420-0302", now=late)["reason"] == "expired"
