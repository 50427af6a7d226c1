class ClientError(Exception):
    """Base class for failures surfaced to the attendance flow."""


class ApiError(ClientError):
    """Transient or infrastructure failure: network, timeout, unexpected status."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ImageRejected(ClientError):
    """Captured image was refused before verification (oversized or undecodable)."""

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code


class NoFaceDetected(ClientError):
    """No face found in the captured image; the user should retake it."""
