"""
Face embedding backends

A backend decodes image bytes, runs detection + embedding, and converts
the model library's native results into typed Face records. The rest of
the package only talks to the FaceBackend protocol, so the DeepFace
adapter can be swapped for another model (or a scripted one in tests).

Backends own the decoded buffers they hand out and must account for them
until release() is called; memory() reports what is still outstanding.
"""
import logging
import threading
from io import BytesIO
from typing import Any, Dict, List, Optional, Protocol

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from facematch.config import (
    ANALYZE_DEMOGRAPHICS,
    FACE_DETECTOR_BACKEND,
    FACE_RECOGNITION_MODEL,
    LIVENESS_SHARPNESS_REFERENCE,
    MAX_FACES_DETECTED,
    MIN_DETECTION_CONFIDENCE,
    MODEL_DIMENSIONS,
)
from facematch.errors import ModelNotInitializedError, UnreadableImageError
from facematch.schemas import Face, Gender

logger = logging.getLogger(__name__)


class FaceBackend(Protocol):
    embedding_dim: Optional[int]

    def load(self) -> None:
        ...

    def decode(self, image_bytes: bytes) -> np.ndarray:
        ...

    def detect(self, image: np.ndarray, liveness: bool = False) -> List[Face]:
        ...

    def release(self, image: np.ndarray) -> None:
        ...

    def memory(self) -> Dict[str, int]:
        ...


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class DeepFaceBackend:
    """
    DeepFace adapter.

    Detection and embedding go through DeepFace.represent. Anti-spoofing
    (FasNet via DeepFace.extract_faces) and the sharpness-based liveness
    score only run when detect() is called with liveness=True, which is
    reserved for selfie validation.
    """

    def __init__(
        self,
        model_name: str = FACE_RECOGNITION_MODEL,
        detector_backend: str = FACE_DETECTOR_BACKEND,
        min_detection_confidence: float = MIN_DETECTION_CONFIDENCE,
        max_faces: int = MAX_FACES_DETECTED,
        analyze_demographics: bool = ANALYZE_DEMOGRAPHICS,
        sharpness_reference: float = LIVENESS_SHARPNESS_REFERENCE,
    ):
        self.model_name = model_name
        self.detector_backend = detector_backend
        self.min_detection_confidence = float(min_detection_confidence)
        self.max_faces = int(max_faces)
        self.analyze_demographics = bool(analyze_demographics)
        self.sharpness_reference = float(sharpness_reference)
        self.embedding_dim = MODEL_DIMENSIONS.get(model_name)

        self._deepface: Any = None
        self._load_lock = threading.Lock()
        self._ledger_lock = threading.Lock()
        self._outstanding: Dict[int, int] = {}

    def load(self) -> None:
        """Import DeepFace and warm up the recognition model once."""
        with self._load_lock:
            if self._deepface is not None:
                return

            try:
                from deepface import DeepFace
            except Exception as e:
                raise RuntimeError("deepface is required for face embedding extraction") from e

            logger.info(f"Loading {self.model_name} model (detector: {self.detector_backend})...")
            # Warm up the model by running a dummy inference
            dummy_img = np.zeros((224, 224, 3), dtype=np.uint8)
            DeepFace.represent(
                img_path=dummy_img,
                model_name=self.model_name,
                detector_backend="skip",
                enforce_detection=False
            )
            self._deepface = DeepFace
            logger.info(f"{self.model_name} model loaded successfully")

    def decode(self, image_bytes: bytes) -> np.ndarray:
        """Decode bytes into a BGR array, honoring EXIF orientation."""
        try:
            with Image.open(BytesIO(image_bytes)) as image:
                image.load()
                rgb = ImageOps.exif_transpose(image).convert("RGB")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise UnreadableImageError(f"Failed to decode image: {e}") from e

        if rgb.width == 0 or rgb.height == 0:
            raise UnreadableImageError("Image has zero dimensions")

        # OpenCV / DeepFace expect BGR channel order
        bgr = np.ascontiguousarray(np.asarray(rgb)[:, :, ::-1])
        with self._ledger_lock:
            self._outstanding[id(bgr)] = bgr.nbytes
        return bgr

    def release(self, image: np.ndarray) -> None:
        with self._ledger_lock:
            self._outstanding.pop(id(image), None)

    def memory(self) -> Dict[str, int]:
        with self._ledger_lock:
            return {
                "num_buffers": len(self._outstanding),
                "num_bytes": sum(self._outstanding.values()),
            }

    def detect(self, image: np.ndarray, liveness: bool = False) -> List[Face]:
        if self._deepface is None:
            raise ModelNotInitializedError("DeepFace backend used before load()")

        height, width = image.shape[:2]
        results = self._deepface.represent(
            img_path=image,
            model_name=self.model_name,
            detector_backend=self.detector_backend,
            enforce_detection=False,
            align=True
        )

        # Same detector on the same image, so results line up by index
        spoof = self._anti_spoof(image) if liveness else []
        demographics = self._demographics(image) if self.analyze_demographics else []

        faces: List[Face] = []
        for index, item in enumerate(results):
            confidence = float(item.get("face_confidence") or 0.0)
            if confidence < self.min_detection_confidence:
                continue

            area = item.get("facial_area") or {}
            attributes: Dict[str, Any] = {}
            if index < len(demographics):
                attributes.update(demographics[index])
            if liveness:
                if index < len(spoof):
                    attributes["real_score"] = spoof[index]
                attributes["live_score"] = self._sharpness_score(image, area)

            faces.append(Face(
                embedding=[float(v) for v in item.get("embedding") or []],
                box=self._normalize_box(area, width, height),
                confidence=_clamp01(confidence),
                **attributes
            ))

            if len(faces) >= self.max_faces:
                logger.debug(f"Face cap of {self.max_faces} reached, ignoring the rest")
                break

        return faces

    @staticmethod
    def _normalize_box(area: Dict[str, Any], width: int, height: int):
        x = _clamp01(float(area.get("x", 0)) / width)
        y = _clamp01(float(area.get("y", 0)) / height)
        w = _clamp01(float(area.get("w", 0)) / width)
        h = _clamp01(float(area.get("h", 0)) / height)
        return x, y, min(w, 1.0 - x), min(h, 1.0 - y)

    def _anti_spoof(self, image: np.ndarray) -> List[float]:
        extracted = self._deepface.extract_faces(
            img_path=image,
            detector_backend=self.detector_backend,
            enforce_detection=False,
            align=True,
            anti_spoofing=True
        )
        scores = []
        for item in extracted:
            score = _clamp01(item.get("antispoof_score") or 0.0)
            scores.append(score if item.get("is_real") else 1.0 - score)
        return scores

    def _demographics(self, image: np.ndarray) -> List[Dict[str, Any]]:
        analyzed = self._deepface.analyze(
            img_path=image,
            actions=("age", "gender"),
            detector_backend=self.detector_backend,
            enforce_detection=False,
            silent=True
        )
        out = []
        for item in analyzed:
            label = item.get("dominant_gender")
            gender = {"Man": Gender.MALE, "Woman": Gender.FEMALE}.get(label)
            percentages = item.get("gender") or {}
            out.append({
                "age": float(item["age"]) if item.get("age") is not None else None,
                "gender": gender,
                "gender_confidence": _clamp01(percentages.get(label, 0.0) / 100.0) if gender else None,
            })
        return out

    def _sharpness_score(self, image: np.ndarray, area: Dict[str, Any]) -> float:
        """Laplacian variance of the face crop, scaled to [0, 1]."""
        x, y = int(area.get("x", 0)), int(area.get("y", 0))
        w, h = int(area.get("w", 0)), int(area.get("h", 0))
        crop = image[max(0, y):y + h, max(0, x):x + w]
        if crop.size == 0:
            return 0.0

        gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY)
        variance = float(cv2.Laplacian(gray, cv2.CV_64F).var())
        return _clamp01(variance / self.sharpness_reference)
