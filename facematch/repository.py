"""
Face Match Repositories

Database operations using SQLAlchemy async:
- PhotoRepository   photo lifecycle writes (atomic claim, ready, failed)
- EmbeddingStore    photo and user embeddings, candidate pools
- ClaimRepository   ownership claims on matched photos

All methods are static coroutines taking an AsyncSession first.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
import logging

import numpy as np
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from facematch.config import EMBEDDING_DIM, MAX_RETRY_COUNT, PROCESSING_LEASE_SECONDS
from facematch.errors import DimensionMismatchError
from facematch.models import (
    ClaimDB, ClaimStatus, PhotoDB, PhotoEmbeddingDB, PhotoStatus, UserEmbeddingDB, encode_vector, utcnow
)
from facematch.schemas import Candidate

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def _check_dim(vector, dim: int) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    if array.size == 0 or array.size != dim:
        raise DimensionMismatchError(dim, array.size)
    return array


def _claimable(max_retries: int):
    return or_(
        PhotoDB.status == PhotoStatus.PENDING,
        (PhotoDB.status == PhotoStatus.FAILED) & (PhotoDB.retry_count < max_retries),
    )


class EmbeddingStore:
    """
    Persistence for photo embeddings (detected faces) and user embeddings
    (registered reference faces).
    """

    @staticmethod
    async def put_photo_embeddings(
        session: AsyncSession,
        photo_id: uuid.UUID,
        embeddings: Sequence,
        dim: int = EMBEDDING_DIM,
        commit: bool = True
    ) -> int:
        """
        Append embeddings for a photo. Existing rows are left untouched.

        Raises:
            DimensionMismatchError: If any vector is empty or not `dim` long
        """
        vectors = [_check_dim(v, dim) for v in embeddings]
        session.add_all([
            PhotoEmbeddingDB(photo_id=photo_id, dim=dim, embedding=encode_vector(v))
            for v in vectors
        ])
        if commit:
            await session.commit()
        return len(vectors)

    @staticmethod
    async def count_photo_embeddings(session: AsyncSession, photo_id: uuid.UUID) -> int:
        result = await session.execute(
            select(func.count(PhotoEmbeddingDB.id)).where(PhotoEmbeddingDB.photo_id == photo_id)
        )
        return result.scalar() or 0

    @staticmethod
    async def get_candidate_photo_embeddings(
        session: AsyncSession,
        event_id: Optional[uuid.UUID] = None
    ) -> List[Candidate]:
        """
        Embeddings of every ready photo, optionally limited to one event.

        Order is deterministic so equal scores rank the same way each time.
        """
        query = (
            select(PhotoEmbeddingDB.photo_id, PhotoEmbeddingDB.embedding)
            .join(PhotoDB, PhotoDB.id == PhotoEmbeddingDB.photo_id)
            .where(PhotoDB.status == PhotoStatus.READY)
        )
        if event_id is not None:
            query = query.where(PhotoDB.event_id == event_id)

        query = query.order_by(PhotoEmbeddingDB.created_at, PhotoEmbeddingDB.id)

        result = await session.execute(query)
        return [
            Candidate(photo_id=photo_id, embedding=np.frombuffer(data, dtype="<f4"))
            for photo_id, data in result.all()
        ]

    @staticmethod
    async def get_active_user_embeddings(session: AsyncSession, user_id: str) -> List[np.ndarray]:
        """Active reference embeddings for a user: zero, one or (legacy data) many."""
        result = await session.execute(
            select(UserEmbeddingDB)
            .where(UserEmbeddingDB.user_id == user_id)
            .where(UserEmbeddingDB.is_active == True)
            .order_by(UserEmbeddingDB.created_at.desc())
        )
        return [row.vector for row in result.scalars().all()]

    @staticmethod
    async def deactivate_user_embeddings(session: AsyncSession, user_id: str, commit: bool = True) -> int:
        result = await session.execute(
            update(UserEmbeddingDB)
            .where(UserEmbeddingDB.user_id == user_id)
            .where(UserEmbeddingDB.is_active == True)
            .values(is_active=False, updated_at=utcnow())
        )
        if commit:
            await session.commit()
        return result.rowcount

    @staticmethod
    async def put_user_embedding(
        session: AsyncSession,
        user_id: str,
        vector,
        is_active: bool = True,
        dim: int = EMBEDDING_DIM,
        commit: bool = True
    ) -> UserEmbeddingDB:
        row = UserEmbeddingDB(
            user_id=user_id,
            dim=dim,
            embedding=encode_vector(_check_dim(vector, dim)),
            is_active=is_active,
        )
        session.add(row)
        if commit:
            await session.commit()
            await session.refresh(row)
        return row

    @staticmethod
    async def supersede_user_embedding(
        session: AsyncSession,
        user_id: str,
        vector,
        dim: int = EMBEDDING_DIM,
        max_attempts: int = 3
    ) -> UserEmbeddingDB:
        """
        Deactivate the user's current reference face and register a new one
        in a single transaction.

        The partial unique index on active rows rejects a concurrent
        supersession for the same user; that attempt is retried so the
        last writer ends up as the only active embedding.
        """
        _check_dim(vector, dim)

        for attempt in range(1, max_attempts + 1):
            try:
                deactivated = await EmbeddingStore.deactivate_user_embeddings(session, user_id, commit=False)
                row = await EmbeddingStore.put_user_embedding(
                    session, user_id, vector, is_active=True, dim=dim, commit=False
                )
                await session.commit()
                await session.refresh(row)
                logger.info(f"Registered reference face {row.id} for user {user_id} (superseded {deactivated})")
                return row
            except IntegrityError:
                await session.rollback()
                if attempt == max_attempts:
                    raise
                logger.warning(f"Concurrent reference face update for user {user_id}, retrying ({attempt})")

        raise RuntimeError("unreachable")


class PhotoRepository:
    """Photo rows and their processing state."""

    @staticmethod
    async def create(
        session: AsyncSession,
        uploader_id: str,
        storage_path_raw: str,
        event_id: Optional[uuid.UUID] = None,
        original_name: Optional[str] = None,
        photo_id: Optional[uuid.UUID] = None
    ) -> PhotoDB:
        """Register an upload in pending state."""
        photo = PhotoDB(
            id=photo_id or uuid.uuid4(),
            event_id=event_id,
            uploader_id=uploader_id,
            original_name=original_name,
            storage_path_raw=storage_path_raw,
            status=PhotoStatus.PENDING,
            retry_count=0,
            faces_count=0,
        )
        session.add(photo)
        await session.commit()
        await session.refresh(photo)

        logger.info(f"Created photo {photo.id} (event: {event_id})")
        return photo

    @staticmethod
    async def get_by_id(session: AsyncSession, photo_id: uuid.UUID) -> Optional[PhotoDB]:
        result = await session.execute(select(PhotoDB).where(PhotoDB.id == photo_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def list_claimable_ids(
        session: AsyncSession,
        max_retries: int = MAX_RETRY_COUNT,
        limit: int = 10
    ) -> List[uuid.UUID]:
        """Oldest photos waiting for (re)processing."""
        result = await session.execute(
            select(PhotoDB.id)
            .where(_claimable(max_retries))
            .order_by(PhotoDB.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def claim_for_processing(
        session: AsyncSession,
        photo_id: uuid.UUID,
        max_retries: int = MAX_RETRY_COUNT
    ) -> bool:
        """
        Move a photo to processing if it is pending or a retryable failure.

        Conditional single-statement update: of several workers racing for
        the same photo, exactly one sees a changed row.
        """
        result = await session.execute(
            update(PhotoDB)
            .where(PhotoDB.id == photo_id)
            .where(_claimable(max_retries))
            .values(status=PhotoStatus.PROCESSING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    @staticmethod
    async def expire_stale_claims(
        session: AsyncSession,
        lease_seconds: float = PROCESSING_LEASE_SECONDS
    ) -> int:
        """
        Fail photos stuck in processing for longer than the lease.

        The abandoned attempt counts against the retry budget, so the photo
        is either claimable again or terminally failed. Returns the number
        of photos released.
        """
        cutoff = utcnow() - timedelta(seconds=lease_seconds)
        result = await session.execute(
            update(PhotoDB)
            .where(PhotoDB.status == PhotoStatus.PROCESSING)
            .where(PhotoDB.updated_at < cutoff)
            .values(
                status=PhotoStatus.FAILED,
                retry_count=PhotoDB.retry_count + 1,
                processing_error=f"Processing lease of {lease_seconds:g}s expired",
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount:
            logger.warning(f"Released {result.rowcount} photo(s) abandoned in processing")
        return result.rowcount

    @staticmethod
    async def mark_ready(
        session: AsyncSession,
        photo_id: uuid.UUID,
        embeddings: Sequence,
        display_path: str,
        width: int,
        height: int,
        taken_at: Optional[datetime] = None,
        dim: int = EMBEDDING_DIM
    ) -> bool:
        """
        Store a photo's embeddings and flip it to ready in one transaction.

        Returns False (and writes nothing) if the photo is no longer in
        processing, e.g. it was hidden while the worker ran.
        """
        faces_count = await EmbeddingStore.put_photo_embeddings(
            session, photo_id, embeddings, dim=dim, commit=False
        )

        values = dict(
            status=PhotoStatus.READY,
            faces_count=faces_count,
            storage_path_display=display_path,
            width=width,
            height=height,
            processing_error=None,
            updated_at=utcnow(),
        )
        result = await session.execute(
            update(PhotoDB)
            .where(PhotoDB.id == photo_id)
            .where(PhotoDB.status == PhotoStatus.PROCESSING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.warning(f"Photo {photo_id} left processing before it could be marked ready")
            return False

        if taken_at is not None:
            await session.execute(
                update(PhotoDB)
                .where(PhotoDB.id == photo_id)
                .where(PhotoDB.taken_at.is_(None))
                .values(taken_at=taken_at)
                .execution_options(synchronize_session=False)
            )

        await session.commit()
        return True

    @staticmethod
    async def mark_failed(
        session: AsyncSession,
        photo_id: uuid.UUID,
        error: str,
        max_retries: int = MAX_RETRY_COUNT,
        permanent: bool = False
    ) -> int:
        """
        Record a failed attempt and return the new retry count.

        A permanent failure uses up the whole retry budget at once.
        """
        next_count = PhotoDB.retry_count + 1
        if permanent:
            next_count = case((next_count < max_retries, max_retries), else_=next_count)

        await session.execute(
            update(PhotoDB)
            .where(PhotoDB.id == photo_id)
            .where(PhotoDB.status == PhotoStatus.PROCESSING)
            .values(
                status=PhotoStatus.FAILED,
                retry_count=next_count,
                processing_error=(error or "unknown error")[:MAX_ERROR_LENGTH],
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(select(PhotoDB.retry_count).where(PhotoDB.id == photo_id))
        retry_count = result.scalar() or 0
        await session.commit()
        return retry_count

    @staticmethod
    async def remove_from_matching(
        session: AsyncSession,
        photo_id: uuid.UUID,
        status: PhotoStatus = PhotoStatus.HIDDEN
    ) -> bool:
        """Hide or delete a photo and drop its embeddings with it."""
        if status not in (PhotoStatus.HIDDEN, PhotoStatus.DELETED):
            raise ValueError(f"Cannot remove photo with status {status}")

        await session.execute(delete(PhotoEmbeddingDB).where(PhotoEmbeddingDB.photo_id == photo_id))
        result = await session.execute(
            update(PhotoDB)
            .where(PhotoDB.id == photo_id)
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount > 0:
            logger.info(f"Photo {photo_id} moved to {status.value}, embeddings removed")
            return True
        return False


class ClaimRepository:
    """Ownership claims on photos."""

    @staticmethod
    async def create(
        session: AsyncSession,
        photo_id: uuid.UUID,
        claimant_id: str,
        match_score: Optional[float] = None,
        status: ClaimStatus = ClaimStatus.APPROVED
    ) -> ClaimDB:
        if match_score is not None and not 0.0 <= match_score <= 1.0:
            raise ValueError(f"match_score must lie in [0, 1], got {match_score}")

        claim = ClaimDB(
            photo_id=photo_id,
            claimant_id=claimant_id,
            status=status,
            match_score=match_score,
        )
        session.add(claim)
        await session.commit()
        await session.refresh(claim)
        return claim

    @staticmethod
    async def get_for_user(session: AsyncSession, claimant_id: str) -> List[ClaimDB]:
        result = await session.execute(
            select(ClaimDB)
            .where(ClaimDB.claimant_id == claimant_id)
            .order_by(ClaimDB.created_at.desc())
        )
        return list(result.scalars().all())
