from dataclasses import dataclass
from typing import Protocol

import httpx

from client.config import API_BASE_URL, REQUEST_TIMEOUT_SECONDS
from client.errors import ApiError, ImageRejected, NoFaceDetected
from client.session import StudentSession


@dataclass(frozen=True)
class QrValidation:
    valid: bool
    session_id: str | None = None
    class_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class FaceVerification:
    confidence: float
    match: bool


@dataclass(frozen=True)
class CommitOutcome:
    status: str  # ok | duplicate | session_closed | error
    message: str


class AttendanceApi(Protocol):
    async def validate_qr(self, qr_payload: str) -> QrValidation:
        ...

    async def verify_face(self, student_id: str, image_base64: str) -> FaceVerification:
        ...

    async def commit(
        self,
        *,
        student_id: str,
        class_id: str,
        session_id: str,
        method: str,
        confidence: float,
    ) -> CommitOutcome:
        ...


def _detail(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text or f"HTTP {response.status_code}"
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return detail.get("code"), str(detail.get("message") or detail.get("code") or "")
    if isinstance(detail, str):
        return None, detail
    return None, f"HTTP {response.status_code}"


async def login(
    registration_number: str,
    password: str,
    *,
    base_url: str = API_BASE_URL,
    client: httpx.AsyncClient | None = None,
) -> StudentSession:
    owns_client = client is None
    http = client or httpx.AsyncClient(base_url=base_url, timeout=REQUEST_TIMEOUT_SECONDS)
    try:
        response = await http.post(
            "/auth/login",
            json={"registration_number": registration_number, "password": password},
        )
    except httpx.HTTPError as exc:
        raise ApiError(f"Login failed: {exc}")
    finally:
        if owns_client:
            await http.aclose()

    if response.status_code != 200:
        code, message = _detail(response)
        raise ApiError(message, status_code=response.status_code, code=code)
    return StudentSession.from_login_response(response.json())


class HttpAttendanceApi:
    """AttendanceApi over the Rollcall HTTP endpoints, authenticated as one student."""

    def __init__(
        self,
        session: StudentSession,
        *,
        base_url: str = API_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.session = session
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict) -> httpx.Response:
        try:
            return await self._client.post(path, json=body, headers=self.session.auth_header)
        except httpx.HTTPError as exc:
            raise ApiError(f"Request to {path} failed: {exc}")

    async def validate_qr(self, qr_payload: str) -> QrValidation:
        response = await self._post("/attendance/validate-qr", {"qr_payload": qr_payload})
        if response.status_code != 200:
            code, message = _detail(response)
            raise ApiError(message, status_code=response.status_code, code=code)
        body = response.json()
        return QrValidation(
            valid=bool(body.get("valid")),
            session_id=body.get("session_id"),
            class_id=body.get("class_id"),
            reason=body.get("reason"),
        )

    async def verify_face(self, student_id: str, image_base64: str) -> FaceVerification:
        response = await self._post(
            "/attendance/verify-face",
            {"student_id": student_id, "image_base64": image_base64},
        )
        if response.status_code == 200:
            body = response.json()
            return FaceVerification(confidence=float(body["confidence"]), match=bool(body["match"]))

        code, message = _detail(response)
        if code == "NO_FACE_DETECTED":
            raise NoFaceDetected(message)
        if response.status_code == 413 or code in {"IMAGE_TOO_LARGE", "INVALID_IMAGE"}:
            raise ImageRejected(message, code=code)
        raise ApiError(message, status_code=response.status_code, code=code)

    async def commit(
        self,
        *,
        student_id: str,
        class_id: str,
        session_id: str,
        method: str,
        confidence: float,
    ) -> CommitOutcome:
        response = await self._post(
            "/attendance/commit",
            {
                "student_id": student_id,
                "class_id": class_id,
                "session_id": session_id,
                "method": method,
                "confidence": confidence,
            },
        )
        if response.status_code != 200:
            code, message = _detail(response)
            raise ApiError(message, status_code=response.status_code, code=code)
        body = response.json()
        return CommitOutcome(status=str(body["status"]), message=str(body.get("message") or ""))
