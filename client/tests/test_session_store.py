from client.session import SessionStore, StudentSession


def _session(expires_at=2_000):
    return StudentSession(
        student_id="stu-1",
        registration_number="REG-001",
        name="Ada",
        access_token="abc.def",
        expires_at=expires_at,
    )


def test_save_then_load(tmp_path):
    store = SessionStore(tmp_path / "nested" / "session.json")
    store.save(_session())

    assert store.load(now=1_000) == _session()
    assert not (tmp_path / "nested" / "session.json.tmp").exists()


def test_expired_session_loads_as_none(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session(expires_at=1_000))
    assert store.load(now=1_000) is None


def test_missing_or_corrupt_file(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    assert store.load() is None

    store.path.write_text("{not json", encoding="utf-8")
    assert store.load() is None


def test_clear(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(_session())
    store.clear()
    store.clear()
    assert store.load(now=0) is None


def test_from_login_response_and_header():
    session = StudentSession.from_login_response(
        {
            "access_token": "tok",
            "expires_at": 99,
            "student": {"id": "stu-9", "registration_number": "R9", "name": "Kai"},
        }
    )
    assert session.student_id == "stu-9"
    assert session.auth_header == {"Authorization": "Bearer tok"}
    assert session.is_expired(now=100)
