import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, TypeVar

from client.api import AttendanceApi
from client.config import ATTENDANCE_METHOD, MAX_ATTEMPTS, REQUEST_TIMEOUT_SECONDS, RESULT_DISPLAY_SECONDS
from client.errors import ApiError, ImageRejected, NoFaceDetected
from client.session import StudentSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXHAUSTED_MESSAGE = "Face verification failed. Please contact your instructor."


class FlowState(str, Enum):
    SCANNING = "scanning"
    AWAITING_CAPTURE = "awaiting_capture"
    VERIFYING = "verifying"
    RETRY = "retry"
    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_STATES = {FlowState.SUCCESS, FlowState.FAILURE}


@dataclass(frozen=True)
class VerificationAttempt:
    attempt_number: int
    outcome: str
    confidence: float | None = None


@dataclass(frozen=True)
class FlowSnapshot:
    state: FlowState
    attempts: int
    max_attempts: int
    message: str
    already_recorded: bool = False

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class AttendanceFlow:
    """
    Scan -> capture -> verify -> commit, with a bounded number of attempts.

    One instance drives one scan flow on the device. Events that arrive in the
    wrong state, or while a verification round-trip is in flight, are ignored.
    The scanned QR payload is kept across retries so the student never has to
    re-scan; the attempt counter only resets when a new code is scanned.
    """

    def __init__(
        self,
        api: AttendanceApi,
        session: StudentSession,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        result_display_seconds: float = RESULT_DISPLAY_SECONDS,
        method: str = ATTENDANCE_METHOD,
    ):
        self.api = api
        self.session = session
        self.max_attempts = max(1, int(max_attempts))
        self.timeout = float(timeout)
        self.result_display_seconds = float(result_display_seconds)
        self.method = method

        self.state = FlowState.SCANNING
        self.attempts = 0
        self.history: list[VerificationAttempt] = []
        self.message = ""
        self.already_recorded = False
        self.processing = False
        self.qr_payload: str | None = None
        self.captured_image: str | None = None

    def snapshot(self) -> FlowSnapshot:
        return FlowSnapshot(
            state=self.state,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            message=self.message,
            already_recorded=self.already_recorded,
        )

    def _transition(self, new_state: FlowState, message: str = "") -> None:
        logger.debug("attendance flow %s -> %s (attempts=%d)", self.state.value, new_state.value, self.attempts)
        self.state = new_state
        self.message = message

    # -----------------------------
    # UI events
    # -----------------------------
    def on_qr_decoded(self, payload: str) -> bool:
        if self.state != FlowState.SCANNING or self.processing:
            return False
        if not payload:
            return False
        self.qr_payload = payload
        self.captured_image = None
        self.attempts = 0
        self.history = []
        self.already_recorded = False
        self._transition(FlowState.AWAITING_CAPTURE)
        return True

    def capture(self, image_base64: str) -> bool:
        if self.state != FlowState.AWAITING_CAPTURE or self.processing:
            return False
        if not image_base64:
            return False
        self.captured_image = image_base64
        self._transition(FlowState.VERIFYING)
        return True

    def retake(self) -> bool:
        """Discard the captured photo before it is submitted."""
        if self.state != FlowState.VERIFYING or self.processing:
            return False
        self.captured_image = None
        self._transition(FlowState.AWAITING_CAPTURE)
        return True

    def retry(self) -> bool:
        if self.state != FlowState.RETRY or self.processing:
            return False
        self.captured_image = None
        self._transition(FlowState.AWAITING_CAPTURE)
        return True

    def exit(self) -> None:
        """Leave the flow; everything captured so far is dropped."""
        if self.processing:
            return
        self.qr_payload = None
        self.captured_image = None
        self.history = []
        self.already_recorded = False
        self._transition(FlowState.SCANNING)

    async def return_to_dashboard(self) -> bool:
        """Hold a terminal result on screen for the display delay, then leave the flow."""
        if self.state not in TERMINAL_STATES:
            return False
        await asyncio.sleep(self.result_display_seconds)
        self.exit()
        return True

    # -----------------------------
    # Verification round-trip
    # -----------------------------
    async def verify(self) -> FlowSnapshot:
        if self.state != FlowState.VERIFYING or self.processing or self.captured_image is None:
            return self.snapshot()

        self.processing = True
        try:
            await self._run_attempt()
        except Exception as exc:
            logger.exception("Unexpected error during attendance verification")
            self._fail("error", str(exc) or "Verification failed.")
        finally:
            self.processing = False
        return self.snapshot()

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ApiError(f"No response from the server after {self.timeout:g}s.")

    async def _run_attempt(self) -> None:
        student_id = self.session.student_id
        image = self.captured_image

        try:
            validation = await self._call(self.api.validate_qr(self.qr_payload))
        except ApiError as exc:
            self._fail("network_error", str(exc))
            return

        if not validation.valid:
            if validation.reason == "malformed":
                # Nothing to retry with this payload: rescan, no attempt consumed.
                self.qr_payload = None
                self.captured_image = None
                self._transition(FlowState.SCANNING, "QR code could not be read. Please scan again.")
                return
            self._fail(f"qr_{validation.reason or 'invalid'}", "QR code is invalid or expired.")
            return

        try:
            verification = await self._call(self.api.verify_face(student_id, image))
        except NoFaceDetected:
            self.captured_image = None
            self._transition(FlowState.AWAITING_CAPTURE, "No face detected. Please retake the photo.")
            return
        except ImageRejected as exc:
            self.captured_image = None
            self._transition(FlowState.AWAITING_CAPTURE, f"Photo could not be used ({exc}). Please retake it.")
            return
        except ApiError as exc:
            self._fail("network_error", str(exc))
            return

        if not verification.match:
            self._fail("face_mismatch", "Face verification failed.", verification.confidence)
            return

        try:
            result = await self._call(
                self.api.commit(
                    student_id=student_id,
                    class_id=validation.class_id,
                    session_id=validation.session_id,
                    method=self.method,
                    confidence=verification.confidence,
                )
            )
        except ApiError as exc:
            self._fail("network_error", str(exc), verification.confidence)
            return

        if result.status in {"ok", "duplicate"}:
            self._succeed(verification.confidence, already_recorded=result.status == "duplicate")
            return
        self._fail(result.status, result.message or "Attendance could not be recorded.", verification.confidence)

    def _succeed(self, confidence: float, *, already_recorded: bool) -> None:
        self.attempts += 1
        self.history.append(VerificationAttempt(self.attempts, "duplicate" if already_recorded else "ok", confidence))
        self.captured_image = None
        self.already_recorded = already_recorded
        message = "Attendance already recorded." if already_recorded else "Attendance marked!"
        self._transition(FlowState.SUCCESS, message)

    def _fail(self, outcome: str, message: str, confidence: float | None = None) -> None:
        self.attempts += 1
        self.history.append(VerificationAttempt(self.attempts, outcome, confidence))
        self.captured_image = None
        if self.attempts >= self.max_attempts:
            logger.warning("Attendance flow exhausted %d attempts (last=%s)", self.attempts, outcome)
            self._transition(FlowState.FAILURE, EXHAUSTED_MESSAGE)
            return
        remaining = self.max_attempts - self.attempts
        self._transition(FlowState.RETRY, f"{message} {remaining} attempts remaining.")
