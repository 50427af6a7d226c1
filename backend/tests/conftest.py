import base64
from datetime import datetime, timedelta

import cv2  # type: ignore
import numpy as np  # type: ignore
import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.services.enrollment as enrollment
from backend.verifier import FaceVerifier, FixedConfidenceStrategy, get_verifier
import database.db as db


def encode_image(width: int = 64, height: int = 64, value: int = 128) -> str:
    frame = np.full((height, width, 3), value, dtype=np.uint8)
    ok, buf = cv2.imencode(".jpg", frame)
    assert ok
    return base64.b64encode(buf.tobytes()).decode("ascii")


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"

    # Point DB and face storage to temp locations for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(main, "DB_PATH", test_db, raising=False)
    monkeypatch.setattr(config, "FACES_DIR", tmp_path / "faces")
    monkeypatch.setattr(main, "FACES_DIR", tmp_path / "faces")
    monkeypatch.setattr(enrollment, "FACES_DIR", tmp_path / "faces")

    db.create_tables()
    return test_db


@pytest.fixture()
def verifier():
    # Detection off: any decodable image counts as a face.
    return FaceVerifier(FixedConfidenceStrategy(0.82), detector=None)


@pytest.fixture()
def client(temp_db, verifier):
    main.app.dependency_overrides[get_verifier] = lambda: verifier
    try:
        with TestClient(main.app) as c:
            yield c
    finally:
        main.app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers(client):
    res = client.post(
        "/auth/admin/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def student(client):
    res = client.post(
        "/auth/signup",
        json={
            "registration_number": "REG-001",
            "password": "secret123",
            "name": "Ada Student",
            "department": "CS",
        },
    )
    assert res.status_code == 200
    body = res.json()
    return {
        "id": body["student"]["id"],
        "headers": {"Authorization": f"Bearer {body['access_token']}"},
    }


@pytest.fixture()
def enrolled_student(client, student):
    res = client.post(
        "/students/me/face",
        json={"image_base64": encode_image()},
        headers=student["headers"],
    )
    assert res.status_code == 200
    return student


@pytest.fixture()
def open_session(temp_db):
    now = datetime.now()
    klass = db.create_class(name="Data Structures", code="CS201", instructor_name="Dr. Rao")
    session = db.create_session(
        class_id=klass["id"],
        starts_at=now - timedelta(hours=1),
        ends_at=now + timedelta(hours=1),
        qr_token="T1-open",
        room="B-12",
    )
    return session
