import base64
import binascii
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import (
    FACE_DETECTION_ENABLED,
    MATCH_THRESHOLD,
    MAX_IMAGE_BASE64_BYTES,
    MIN_FACE_SIZE,
    MOCK_CONFIDENCE_MAX,
    MOCK_CONFIDENCE_MIN,
)

logger = logging.getLogger(__name__)

# Use Haar cascade for face detection (simple + offline)
CASCADE_PATH = Path(cv2.data.haarcascades) / "haarcascade_frontalface_default.xml"


class VerificationError(Exception):
    """Image could not be turned into a verification decision."""

    code = "VERIFICATION_ERROR"


class ImageTooLarge(VerificationError):
    code = "IMAGE_TOO_LARGE"


class InvalidImage(VerificationError):
    code = "INVALID_IMAGE"


class NoFaceDetected(VerificationError):
    code = "NO_FACE_DETECTED"


@dataclass(frozen=True)
class VerificationResult:
    confidence: float
    match: bool


def is_match(confidence: float, threshold: float = MATCH_THRESHOLD) -> bool:
    return confidence >= threshold


def decode_image(image_base64: str, *, max_bytes: int = MAX_IMAGE_BASE64_BYTES) -> np.ndarray:
    """Size-check, base64-decode and image-decode a captured frame (BGR)."""
    if not isinstance(image_base64, str) or not image_base64.strip():
        raise InvalidImage("Image data is empty.")

    data = image_base64.strip()
    # Accept data URLs from camera plugins ("data:image/jpeg;base64,....").
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]

    # Some encoders wrap base64 output across lines.
    data = "".join(data.split())

    if len(data) > max_bytes:
        raise ImageTooLarge(f"Image exceeds {max_bytes} bytes of base64 data.")

    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImage("Image is not valid base64.")

    img_array = np.frombuffer(raw, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise InvalidImage("Invalid image data.")
    return frame


class HaarFaceDetector:
    def __init__(self, cascade_path: Path = CASCADE_PATH, *, min_face_size: int = MIN_FACE_SIZE):
        self._cascade = cv2.CascadeClassifier(str(cascade_path))
        self._min_face_size = int(min_face_size)

    def extract_face(self, frame_bgr: np.ndarray) -> np.ndarray:
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        faces = self._cascade.detectMultiScale(
            gray,
            scaleFactor=1.2,
            minNeighbors=5,
            minSize=(self._min_face_size, self._min_face_size),
        )
        if len(faces) == 0:
            raise NoFaceDetected("No face detected. Please retake the photo.")

        # take largest face
        x, y, w, h = sorted(faces, key=lambda r: r[2] * r[3], reverse=True)[0]
        face = gray[y:y + h, x:x + w]
        return cv2.resize(face, (200, 200))


class VerificationStrategy(ABC):
    """Produces a [0, 1] similarity score between a captured face and the student's enrolled template."""

    @abstractmethod
    def score(self, *, student_id: str, face: np.ndarray, template_ref: str | None) -> float:
        raise NotImplementedError


class MockConfidenceStrategy(VerificationStrategy):
    """Stand-in for a real matcher: uniform random confidence within [low, high]."""

    def __init__(self, low: float = MOCK_CONFIDENCE_MIN, high: float = MOCK_CONFIDENCE_MAX, *, rng: random.Random | None = None):
        if low > high:
            low, high = high, low
        self._low = low
        self._high = high
        self._rng = rng or random.Random()

    def score(self, *, student_id: str, face: np.ndarray, template_ref: str | None) -> float:
        return self._rng.uniform(self._low, self._high)


class FixedConfidenceStrategy(VerificationStrategy):
    def __init__(self, confidence: float):
        self.confidence = float(confidence)

    def score(self, *, student_id: str, face: np.ndarray, template_ref: str | None) -> float:
        return self.confidence


class FaceVerifier:
    """
    Decode -> detect -> score -> threshold.

    Raises ImageTooLarge / InvalidImage / NoFaceDetected for images that cannot
    be judged at all; a judged image always yields a VerificationResult, even
    when it does not match.
    """

    def __init__(
        self,
        strategy: VerificationStrategy,
        *,
        threshold: float = MATCH_THRESHOLD,
        detector: HaarFaceDetector | None = None,
        max_image_bytes: int = MAX_IMAGE_BASE64_BYTES,
    ):
        self.strategy = strategy
        self.threshold = float(threshold)
        self.detector = detector
        self.max_image_bytes = int(max_image_bytes)

    def extract_face(self, image_base64: str) -> np.ndarray:
        frame = decode_image(image_base64, max_bytes=self.max_image_bytes)
        if self.detector is None:
            return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        return self.detector.extract_face(frame)

    def verify(self, *, student_id: str, image_base64: str, template_ref: str | None = None) -> VerificationResult:
        face = self.extract_face(image_base64)
        raw = float(self.strategy.score(student_id=student_id, face=face, template_ref=template_ref))
        confidence = min(1.0, max(0.0, raw))
        result = VerificationResult(confidence=confidence, match=is_match(confidence, self.threshold))
        logger.debug("Face verification student=%s confidence=%.3f match=%s", student_id, confidence, result.match)
        return result


_VERIFIER: FaceVerifier | None = None


def get_verifier() -> FaceVerifier:
    global _VERIFIER
    if _VERIFIER is None:
        detector = HaarFaceDetector() if FACE_DETECTION_ENABLED else None
        _VERIFIER = FaceVerifier(MockConfidenceStrategy(), detector=detector)
    return _VERIFIER
