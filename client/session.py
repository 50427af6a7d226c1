import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from client.config import SESSION_FILE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StudentSession:
    """Signed-in student, passed explicitly to everything that talks to the API."""

    student_id: str
    registration_number: str
    name: str
    access_token: str
    expires_at: int

    @classmethod
    def from_login_response(cls, body: dict) -> "StudentSession":
        student = body["student"]
        return cls(
            student_id=str(student["id"]),
            registration_number=str(student["registration_number"]),
            name=str(student["name"]),
            access_token=str(body["access_token"]),
            expires_at=int(body["expires_at"]),
        )

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at <= int(now if now is not None else time.time())

    @property
    def auth_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class SessionStore:
    """Explicit load/save of one StudentSession to a JSON file."""

    def __init__(self, path: Path = SESSION_FILE):
        self.path = Path(path)

    def save(self, session: StudentSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(asdict(session), sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def load(self, *, now: float | None = None) -> StudentSession | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            session = StudentSession(
                student_id=str(data["student_id"]),
                registration_number=str(data["registration_number"]),
                name=str(data["name"]),
                access_token=str(data["access_token"]),
                expires_at=int(data["expires_at"]),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable session file %s", self.path)
            return None
        if session.is_expired(now):
            return None
        return session

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
