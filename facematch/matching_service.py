"""
Selfie registration and "find me" queries.

Ties the selfie gate, the embedding store and the match engine together
for the user-facing side of the system.
"""
import logging
import time
import uuid
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facematch import match_engine
from facematch.config import MATCH_THRESHOLD
from facematch.face_service import FaceService
from facematch.models import ClaimDB, ClaimStatus
from facematch.repository import ClaimRepository, EmbeddingStore
from facematch.schemas import FindMeResult, MatchResult, SelfieOptions, SelfieValidationResult
from facematch.selfie_gate import validate_selfie

logger = logging.getLogger(__name__)


def collapse_by_photo(matches: Sequence[MatchResult]) -> List[MatchResult]:
    """Keep the first (best) match for each photo, preserving order."""
    seen = set()
    collapsed = []
    for result in matches:
        if result.photo_id in seen:
            continue
        seen.add(result.photo_id)
        collapsed.append(result)
    return collapsed


class MatchingService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        face_service: FaceService,
        threshold: float = MATCH_THRESHOLD,
    ):
        self.session_maker = session_maker
        self.face_service = face_service
        self.threshold = threshold

    async def register_selfie(
        self,
        user_id: str,
        image_bytes: bytes,
        options: Optional[SelfieOptions] = None
    ) -> SelfieValidationResult:
        """
        Validate a selfie and, if it passes, make it the user's only active
        reference face.
        """
        result = await validate_selfie(self.face_service, image_bytes, options)
        if not result.is_valid:
            return result

        async with self.session_maker() as session:
            await EmbeddingStore.supersede_user_embedding(
                session, user_id, result.embedding, dim=self.face_service.embedding_dim
            )
        return result

    async def find_me(
        self,
        user_id: str,
        event_id: Optional[uuid.UUID] = None,
        threshold: Optional[float] = None
    ) -> FindMeResult:
        """
        Ready photos that contain the user, best match first.

        A user without an active reference face gets has_reference_face=False
        and no matches.
        """
        threshold = self.threshold if threshold is None else threshold
        start_time = time.time()

        async with self.session_maker() as session:
            queries = await EmbeddingStore.get_active_user_embeddings(session, user_id)
            if not queries:
                return FindMeResult(has_reference_face=False, matches=[], threshold=threshold)
            candidates = await EmbeddingStore.get_candidate_photo_embeddings(session, event_id=event_id)

        matches = collapse_by_photo(match_engine.match_best(queries, candidates, threshold))

        search_time = (time.time() - start_time) * 1000
        logger.info(
            f"Find-me for user {user_id}: {len(matches)} photo(s) from "
            f"{len(candidates)} face(s) in {search_time:.1f}ms"
        )
        return FindMeResult(has_reference_face=True, matches=matches, threshold=threshold)

    async def claim_photos(
        self,
        user_id: str,
        matches: Sequence[MatchResult],
        status: ClaimStatus = ClaimStatus.APPROVED
    ) -> List[ClaimDB]:
        """Record ownership claims for matched photos."""
        claims = []
        async with self.session_maker() as session:
            for result in collapse_by_photo(matches):
                claims.append(await ClaimRepository.create(
                    session, result.photo_id, user_id, match_score=result.score, status=status
                ))
        logger.info(f"User {user_id} claimed {len(claims)} photo(s)")
        return claims
