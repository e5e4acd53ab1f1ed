"""
Selfie validation

A reference selfie must contain exactly one clear, real, live face before
its embedding is registered. Checks run in a fixed order and the first
failure is the one reported.
"""
import logging
from typing import List, Optional

from facematch.face_service import FaceService
from facematch.schemas import Face, SelfieOptions, SelfieValidationResult

logger = logging.getLogger(__name__)

NO_FACE = "No face detected in the image"
MULTIPLE_FACES = "Multiple faces detected. Please upload a photo with only your face"
LOW_CONFIDENCE = "Face not clearly visible. Please upload a clearer photo"
NO_FEATURES = "Could not extract face features. Please try another photo"
SPOOFED = "Photo appears to be fake or computer-generated"
NOT_LIVE = "Photo appears to be a recording or printout"


def evaluate_selfie_faces(
    faces: List[Face],
    embedding_dim: int,
    options: Optional[SelfieOptions] = None,
) -> SelfieValidationResult:
    """Apply the gate to already-detected faces."""
    options = options or SelfieOptions()

    if len(faces) == 0:
        return SelfieValidationResult(is_valid=False, error=NO_FACE)

    if len(faces) > 1:
        return SelfieValidationResult(is_valid=False, error=MULTIPLE_FACES)

    face = faces[0]

    if face.confidence < options.min_confidence:
        return SelfieValidationResult(is_valid=False, error=LOW_CONFIDENCE)

    if not face.embedding or len(face.embedding) != embedding_dim:
        return SelfieValidationResult(is_valid=False, error=NO_FEATURES)

    real_score = face.real_score if face.real_score is not None else 0.0
    if real_score < options.min_real_score:
        return SelfieValidationResult(is_valid=False, error=SPOOFED, real_score=real_score)

    live_score = face.live_score if face.live_score is not None else 0.0
    if live_score < options.min_live_score:
        return SelfieValidationResult(is_valid=False, error=NOT_LIVE, live_score=live_score)

    return SelfieValidationResult(
        is_valid=True,
        embedding=list(face.embedding),
        real_score=real_score,
        live_score=live_score,
    )


async def validate_selfie(
    face_service: FaceService,
    image_bytes: bytes,
    options: Optional[SelfieOptions] = None,
) -> SelfieValidationResult:
    """
    Validate a user-submitted reference photo.

    Rejections are returned, not raised. Decode and backend errors still
    propagate to the caller.
    """
    faces = await face_service.detect_for_selfie(image_bytes)
    result = evaluate_selfie_faces(faces, face_service.embedding_dim, options)

    if result.is_valid:
        logger.info(f"Selfie accepted (real={result.real_score:.2f}, live={result.live_score:.2f})")
    else:
        logger.info(f"Selfie rejected: {result.error}")
    return result
