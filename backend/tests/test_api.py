from datetime import datetime, timedelta

import backend.routers.core as core
import database.db as db
from backend.verifier import FaceVerifier, FixedConfidenceStrategy, get_verifier
from conftest import encode_image


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client, admin_headers):
    res = client.get("/debug/dbpath", headers=admin_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, admin_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=admin_headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_verification_config_reports_defaults(client):
    res = client.get("/config/verification")
    assert res.status_code == 200
    body = res.json()
    assert body["match_threshold"] == 0.75
    assert body["max_attempts"] == 3
    assert body["default_method"] == "qr+face"


def test_signup_login_and_me(client):
    res = client.post(
        "/auth/signup",
        json={"registration_number": "REG-100", "password": "pass1234", "name": "Lin"},
    )
    assert res.status_code == 200
    assert res.json()["student"]["face_enrolled"] is False

    res = client.post("/auth/login", json={"registration_number": "reg-100", "password": "pass1234"})
    assert res.status_code == 200
    body = res.json()
    assert body["role"] == "student"
    assert body["token_type"] == "bearer"

    res = client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert res.status_code == 200
    assert res.json()["student"]["registration_number"] == "REG-100"


def test_signup_rejects_duplicate_registration_number(client, student):
    res = client.post(
        "/auth/signup",
        json={"registration_number": "REG-001", "password": "another1", "name": "Copy"},
    )
    assert res.status_code == 409


def test_signup_rejects_short_password(client):
    res = client.post(
        "/auth/signup",
        json={"registration_number": "REG-200", "password": "abc", "name": "Short"},
    )
    assert res.status_code == 400


def test_login_rejects_invalid_credentials(client, student):
    res = client.post("/auth/login", json={"registration_number": "REG-001", "password": "wrong-pass"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid registration number or password."


def test_attendance_endpoints_require_student_session(client, admin_headers):
    res = client.post("/attendance/validate-qr", json={"qr_payload": "T1"})
    assert res.status_code == 401

    res = client.post("/attendance/validate-qr", json={"qr_payload": "T1"}, headers={"Authorization": "Basic abc"})
    assert res.status_code == 401

    res = client.post("/attendance/validate-qr", json={"qr_payload": "T1"}, headers=admin_headers)
    assert res.status_code == 403


def test_admin_endpoints_reject_student_tokens(client, student):
    res = client.post("/admin/classes", json={"name": "X", "code": "X1"}, headers=student["headers"])
    assert res.status_code == 403


def test_face_enrollment_is_write_once(client, student):
    res = client.post(
        "/students/me/face",
        json={"image_base64": encode_image()},
        headers=student["headers"],
    )
    assert res.status_code == 200
    assert res.json()["face_enrolled"] is True

    res = client.post(
        "/students/me/face",
        json={"image_base64": encode_image(value=30)},
        headers=student["headers"],
    )
    assert res.status_code == 409


def test_face_enrollment_requires_consent(client, student):
    res = client.post(
        "/students/me/face",
        json={"image_base64": encode_image(), "consent": False},
        headers=student["headers"],
    )
    assert res.status_code == 400


def test_verify_face_before_enrollment_is_conflict(client, student):
    res = client.post(
        "/attendance/verify-face",
        json={"image_base64": encode_image()},
        headers=student["headers"],
    )
    assert res.status_code == 409
    assert res.json()["detail"]["code"] == "FACE_NOT_ENROLLED"


def test_verify_face_returns_match(client, enrolled_student):
    res = client.post(
        "/attendance/verify-face",
        json={"image_base64": encode_image(), "student_id": enrolled_student["id"]},
        headers=enrolled_student["headers"],
    )
    assert res.status_code == 200
    assert res.json() == {"match": True, "confidence": 0.82, "message": "Verified"}


def test_verify_face_below_threshold_is_not_verified(client, enrolled_student):
    client.app.dependency_overrides[get_verifier] = lambda: FaceVerifier(
        FixedConfidenceStrategy(0.6), detector=None
    )
    res = client.post(
        "/attendance/verify-face",
        json={"image_base64": encode_image()},
        headers=enrolled_student["headers"],
    )
    assert res.status_code == 200
    assert res.json()["match"] is False
    assert res.json()["message"] == "Not verified"


def test_verify_face_rejects_other_students_id(client, enrolled_student):
    res = client.post(
        "/attendance/verify-face",
        json={"image_base64": encode_image(), "student_id": "someone-else"},
        headers=enrolled_student["headers"],
    )
    assert res.status_code == 403


def test_verify_face_maps_image_errors(client, enrolled_student, monkeypatch, verifier):
    res = client.post(
        "/attendance/verify-face",
        json={"image_base64": "not base64 at all!"},
        headers=enrolled_student["headers"],
    )
    assert res.status_code == 422
    assert res.json()["detail"]["code"] == "INVALID_IMAGE"

    monkeypatch.setattr(verifier, "max_image_bytes", 10)
    res = client.post(
        "/attendance/verify-face",
        json={"image_base64": encode_image()},
        headers=enrolled_student["headers"],
    )
    assert res.status_code == 413
    assert res.json()["detail"]["code"] == "IMAGE_TOO_LARGE"


def test_verify_face_outcomes_are_audited(client, enrolled_student, admin_headers):
    client.post(
        "/attendance/verify-face",
        json={"image_base64": encode_image()},
        headers=enrolled_student["headers"],
    )
    client.post(
        "/attendance/verify-face",
        json={"image_base64": "%%%"},
        headers=enrolled_student["headers"],
    )

    res = client.get("/admin/verification-events", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 2
    assert {row["outcome"] for row in body["rows"]} == {"MATCH", "INVALID_IMAGE"}

    res = client.get("/admin/verification-events?outcome=match", headers=admin_headers)
    assert res.json()["total"] == 1
    assert res.json()["rows"][0]["matched"] is True

    res = client.get("/admin/verification-events?outcome=bogus", headers=admin_headers)
    assert res.status_code == 400


def test_scan_verify_commit_flow(client, enrolled_student, open_session, admin_headers):
    headers = enrolled_student["headers"]

    res = client.post("/attendance/validate-qr", json={"qr_payload": "T1-open"}, headers=headers)
    assert res.status_code == 200
    qr = res.json()
    assert qr["valid"] is True
    assert qr["session_id"] == open_session["id"]

    res = client.post("/attendance/verify-face", json={"image_base64": encode_image()}, headers=headers)
    confidence = res.json()["confidence"]

    commit = {"class_id": qr["class_id"], "session_id": qr["session_id"], "confidence": confidence}
    res = client.post("/attendance/commit", json=commit, headers=headers)
    assert res.status_code == 200
    assert res.json()["status"] == "ok"

    res = client.post("/attendance/commit", json=commit, headers=headers)
    assert res.json()["status"] == "duplicate"

    res = client.get(f"/admin/sessions/{open_session['id']}/attendance", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 1
    assert body["rows"][0]["method"] == "qr+face"
    assert body["rows"][0]["confidence"] == 0.82

    res = client.get("/students/me/attendance", headers=headers)
    assert res.status_code == 200
    assert res.json()[0]["class_code"] == "CS201"


def test_commit_rejects_out_of_range_confidence(client, enrolled_student, open_session):
    res = client.post(
        "/attendance/commit",
        json={"class_id": open_session["class_id"], "session_id": open_session["id"], "confidence": 1.5},
        headers=enrolled_student["headers"],
    )
    assert res.status_code == 422


def test_commit_below_threshold_is_error(client, enrolled_student, open_session):
    res = client.post(
        "/attendance/commit",
        json={"class_id": open_session["class_id"], "session_id": open_session["id"], "confidence": 0.5},
        headers=enrolled_student["headers"],
    )
    assert res.status_code == 200
    assert res.json()["status"] == "error"
    assert db.get_attendance_for_session(open_session["id"]) == []


def test_admin_creates_class_and_session(client, admin_headers):
    res = client.post(
        "/admin/classes",
        json={"name": "Operating Systems", "code": "CS301", "instructor_name": "Dr. Iyer"},
        headers=admin_headers,
    )
    assert res.status_code == 200
    class_id = res.json()["id"]

    res = client.post("/admin/classes", json={"name": "Dup", "code": "cs301"}, headers=admin_headers)
    assert res.status_code == 409

    starts = datetime.now().replace(microsecond=0)
    res = client.post(
        "/admin/sessions",
        json={
            "class_id": class_id,
            "starts_at": starts.isoformat(),
            "ends_at": (starts + timedelta(hours=1)).isoformat(),
        },
        headers=admin_headers,
    )
    assert res.status_code == 200
    session = res.json()
    assert session["status"] == "active"
    assert session["qr_token"]

    res = client.post(
        "/admin/sessions",
        json={
            "class_id": class_id,
            "starts_at": starts.isoformat(),
            "ends_at": (starts - timedelta(hours=1)).isoformat(),
        },
        headers=admin_headers,
    )
    assert res.status_code == 400

    res = client.post(
        "/admin/sessions",
        json={"class_id": "missing", "starts_at": starts.isoformat()},
        headers=admin_headers,
    )
    assert res.status_code == 404

    res = client.post(f"/admin/sessions/{session['id']}/close", headers=admin_headers)
    assert res.json() == {"ok": True, "closed": True}
    assert db.get_session(session["id"])["status"] == "closed"


def test_sessions_for_day(client, student, open_session):
    day = open_session["starts_at"][:10]
    res = client.get(f"/sessions?date={day}", headers=student["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["date"] == day
    assert [s["session_id"] for s in body["sessions"]] == [open_session["id"]]
    assert "qr_token" not in body["sessions"][0]

    res = client.get("/sessions?date=19-10-2026", headers=student["headers"])
    assert res.status_code == 400


def test_student_summary(client, enrolled_student, open_session):
    now = datetime.now()
    db.create_session(
        class_id=open_session["class_id"],
        starts_at=now - timedelta(days=1, hours=1),
        ends_at=now - timedelta(days=1),
    )
    db.commit_attendance(
        student_id=enrolled_student["id"],
        class_id=open_session["class_id"],
        session_id=open_session["id"],
        confidence=0.9,
    )

    res = client.get("/students/me/summary", headers=enrolled_student["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["total_sessions"] == 2
    assert body["attended"] == 1
    assert body["missed"] == 1
    assert body["percentage"] == 50
    assert body["standing"] == "Needs Improvement"
    assert body["classes"][0]["code"] == "CS201"


def test_admin_session_with_mixed_timezone_offsets(client, admin_headers):
    res = client.post("/admin/classes", json={"name": "Signals", "code": "EE210"}, headers=admin_headers)
    class_id = res.json()["id"]
    starts = datetime(2026, 3, 2, 9, 0).astimezone()

    res = client.post(
        "/admin/sessions",
        json={
            "class_id": class_id,
            "starts_at": starts.isoformat(),
            "ends_at": "2026-03-02T10:00:00",
        },
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["starts_at"] == "2026-03-02T09:00:00"

    res = client.post(
        "/admin/sessions",
        json={
            "class_id": class_id,
            "starts_at": starts.isoformat(),
            "ends_at": "2026-03-02T08:00:00",
        },
        headers=admin_headers,
    )
    assert res.status_code == 400


def test_validate_qr_rejects_non_string_payloads_as_malformed(client, student):
    for body in ({"qr_payload": None}, {"qr_payload": 42}, {}):
        res = client.post("/attendance/validate-qr", json=body, headers=student["headers"])
        assert res.status_code == 200
        assert res.json() == {"valid": False, "session_id": None, "class_id": None, "reason": "malformed"}
