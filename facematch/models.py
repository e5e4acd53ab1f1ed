"""
SQLAlchemy ORM Models for the Face Match database

Tables:
- photos            one uploaded event image and its processing state
- photo_embeddings  one detected face per row, many per photo
- user_embeddings   registered reference faces, at most one active per user
- claims            a user's ownership claim on a matched photo

Event and user rows live in the surrounding application; only their ids
are stored here.
"""
import enum
import uuid
from datetime import datetime, timezone

import numpy as np
from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, LargeBinary, String, Text, Uuid, text
)

from facematch.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_vector(vector) -> bytes:
    """Serialize an embedding as little-endian float32 bytes."""
    return np.asarray(vector, dtype="<f4").reshape(-1).tobytes()


def decode_vector(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype="<f4")


class PhotoStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    HIDDEN = "hidden"
    DELETED = "deleted"


class ClaimStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class PhotoDB(Base):
    __tablename__ = "photos"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, nullable=True, index=True)
    uploader_id = Column(String(255), nullable=False)
    original_name = Column(Text, nullable=True)
    storage_path_raw = Column(Text, nullable=False)
    storage_path_display = Column(Text, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    taken_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        Enum(PhotoStatus, name="photo_status", values_callable=_enum_values),
        nullable=False,
        default=PhotoStatus.PENDING,
        index=True,
    )
    retry_count = Column(Integer, nullable=False, default=0)
    processing_error = Column(Text, nullable=True)
    faces_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<PhotoDB(id={self.id}, status={self.status}, faces_count={self.faces_count})>"


class PhotoEmbeddingDB(Base):
    __tablename__ = "photo_embeddings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    photo_id = Column(Uuid, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False, index=True)
    dim = Column(Integer, nullable=False)
    embedding = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def vector(self) -> np.ndarray:
        return decode_vector(self.embedding)


class UserEmbeddingDB(Base):
    __tablename__ = "user_embeddings"
    __table_args__ = (
        # at most one active reference face per user
        Index(
            "uq_user_embeddings_active",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    dim = Column(Integer, nullable=False)
    embedding = Column(LargeBinary, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def vector(self) -> np.ndarray:
        return decode_vector(self.embedding)


class ClaimDB(Base):
    __tablename__ = "claims"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    photo_id = Column(Uuid, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False, index=True)
    claimant_id = Column(String(255), nullable=False, index=True)
    status = Column(
        Enum(ClaimStatus, name="claim_status", values_callable=_enum_values),
        nullable=False,
        default=ClaimStatus.APPROVED,
    )
    match_score = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "photo_id": str(self.photo_id),
            "claimant_id": self.claimant_id,
            "status": self.status.value if self.status else None,
            "match_score": self.match_score,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
