import logging
import uuid

import cv2  # type: ignore

from backend.config import FACES_DIR
from backend.verifier import FaceVerifier
from database.db import get_student_by_id, set_face_template

logger = logging.getLogger(__name__)


class AlreadyEnrolled(Exception):
    pass


class UnknownStudent(Exception):
    pass


def enroll_face(student_id: str, image_base64: str, verifier: FaceVerifier) -> dict:
    """
    Store the student's face template once.

    The captured face is saved to assets/faces/<student_id>/ and its path is
    recorded as the student's template reference. Re-enrollment is refused.
    """
    student = get_student_by_id(student_id)
    if not student:
        raise UnknownStudent(student_id)
    if student["face_enrolled"]:
        raise AlreadyEnrolled(student_id)

    # Raises ImageTooLarge / InvalidImage / NoFaceDetected
    face = verifier.extract_face(image_base64)

    save_dir = FACES_DIR / student_id
    save_dir.mkdir(parents=True, exist_ok=True)
    out_path = save_dir / f"template-{uuid.uuid4().hex[:12]}.jpg"
    if not cv2.imwrite(str(out_path), face):
        raise OSError(f"Could not write face template to {out_path}")

    template_ref = f"{student_id}/{out_path.name}"
    if not set_face_template(student_id, template_ref):
        out_path.unlink(missing_ok=True)
        raise AlreadyEnrolled(student_id)

    logger.info("Face template enrolled student=%s", student_id)
    return {"student_id": student_id, "face_template_ref": template_ref, "face_enrolled": True}
