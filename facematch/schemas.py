"""
Pydantic models shared across the pipeline

Face records are produced by the backend adapter so nothing outside
backends.py sees the model library's native result shape.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field, field_validator

from facematch.config import (
    DISPLAY_HEIGHT,
    JPEG_QUALITY,
    SELFIE_MIN_CONFIDENCE,
    SELFIE_MIN_LIVE_SCORE,
    SELFIE_MIN_REAL_SCORE,
)


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class Face(BaseModel):
    """One detected face with its descriptor and optional attributes."""
    embedding: List[float] = Field(..., description="Face descriptor")
    box: Tuple[float, float, float, float] = Field(
        ..., description="[x, y, width, height] normalized to the image size"
    )
    confidence: float = Field(..., ge=0, le=1, description="Detection confidence")
    age: Optional[float] = Field(default=None, description="Estimated age")
    gender: Optional[Gender] = Field(default=None, description="Estimated gender")
    gender_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    real_score: Optional[float] = Field(
        default=None, ge=0, le=1, description="Anti-spoof score (higher = more real)"
    )
    live_score: Optional[float] = Field(
        default=None, ge=0, le=1, description="Liveness score (higher = more live)"
    )

    @field_validator("box")
    @classmethod
    def _box_is_normalized(cls, value):
        if any(v < 0 or v > 1 for v in value):
            raise ValueError("box coordinates must lie in [0, 1]")
        return value


class TransformOptions(BaseModel):
    """Options for building the display derivative"""
    target_height: int = Field(default=DISPLAY_HEIGHT, gt=0, description="Target height, never upscaled")
    quality: int = Field(default=JPEG_QUALITY, ge=0, le=100, description="JPEG quality")
    skip_watermark: bool = Field(default=False, description="Skip the watermark overlay")


class ProcessedImage(BaseModel):
    """Display derivative produced by the transform stage"""
    buffer: bytes = Field(..., description="JPEG bytes")
    width: int
    height: int
    original_width: int
    original_height: int
    taken_at: Optional[datetime] = Field(default=None, description="EXIF capture time")


class SelfieOptions(BaseModel):
    """Thresholds applied by the selfie gate"""
    min_confidence: float = Field(default=SELFIE_MIN_CONFIDENCE, ge=0, le=1)
    min_real_score: float = Field(default=SELFIE_MIN_REAL_SCORE, ge=0, le=1)
    min_live_score: float = Field(default=SELFIE_MIN_LIVE_SCORE, ge=0, le=1)


class SelfieValidationResult(BaseModel):
    """Outcome of validating a reference selfie"""
    is_valid: bool
    error: Optional[str] = None
    embedding: Optional[List[float]] = None
    real_score: Optional[float] = None
    live_score: Optional[float] = None


class Candidate(NamedTuple):
    """One photo embedding in a query's candidate pool"""
    photo_id: uuid.UUID
    embedding: np.ndarray


class MatchResult(BaseModel):
    """A candidate photo that cleared the match threshold"""
    photo_id: uuid.UUID
    score: float = Field(..., ge=0, le=1, description="Similarity score (1.0 = identical)")


class FindMeResult(BaseModel):
    """Answer to a "find photos of me" query"""
    has_reference_face: bool = Field(..., description="Whether the user has an active reference face")
    matches: List[MatchResult] = Field(default_factory=list)
    threshold: float


class IngestionOutcome(BaseModel):
    """State of a photo after one processing attempt"""
    photo_id: uuid.UUID
    status: str
    faces_count: int = 0
    retry_count: int = 0
    error: Optional[str] = None
