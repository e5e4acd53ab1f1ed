"""
Photo ingestion pipeline

Takes a pending photo through pending -> processing -> ready | failed:
1. Atomically claim the photo
2. Load the raw upload from storage
3. Build the display derivative and extract face embeddings concurrently
4. Store the derivative
5. Persist embeddings and mark the photo ready in one transaction

Any error from steps 2-5 becomes a failed attempt. Transient failures are
retried until the photo's retry budget is spent; permanent ones spend it
at once. A photo abandoned in processing (worker crash, lost DB
connection) is failed once its lease expires, spending one retry.
This module is the only writer of photo status.
"""
import asyncio
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facematch.config import (
    DISPLAY_KEY_PREFIX,
    MAX_RETRY_COUNT,
    PROCESSING_LEASE_SECONDS,
    TRANSFORM_TIMEOUT_SECONDS,
    WORKER_CONCURRENCY,
    WORKER_POLL_INTERVAL_SECONDS,
)
from facematch.errors import ExtractionTimeoutError, PermanentError, StorageError
from facematch.face_service import FaceService
from facematch.image_processor import transform_for_display
from facematch.models import PhotoDB, PhotoStatus
from facematch.repository import PhotoRepository
from facematch.schemas import IngestionOutcome, ProcessedImage, TransformOptions
from facematch.storage import ObjectStorage

logger = logging.getLogger(__name__)


def display_key_for(photo: PhotoDB) -> str:
    scope = str(photo.event_id) if photo.event_id else "unassigned"
    return f"{DISPLAY_KEY_PREFIX}/{scope}/{photo.id}.jpg"


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class IngestionPipeline:
    """
    Worker-side driver for photo processing.

    Safe to run in several processes at once: a photo is only processed by
    the worker whose claim succeeded.
    """

    def __init__(
        self,
        face_service: FaceService,
        storage: ObjectStorage,
        session_maker: async_sessionmaker[AsyncSession],
        max_retries: int = MAX_RETRY_COUNT,
        transform_options: Optional[TransformOptions] = None,
        transform_timeout: float = TRANSFORM_TIMEOUT_SECONDS,
        extraction_timeout: Optional[float] = None,
        concurrency: int = WORKER_CONCURRENCY,
        poll_interval: float = WORKER_POLL_INTERVAL_SECONDS,
        retry_delay: float = 0.0,
        processing_lease: float = PROCESSING_LEASE_SECONDS,
    ):
        self.face_service = face_service
        self.storage = storage
        self.session_maker = session_maker
        self.max_retries = max_retries
        self.transform_options = transform_options or TransformOptions()
        self.transform_timeout = transform_timeout
        self.extraction_timeout = extraction_timeout
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self.processing_lease = processing_lease
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="transform")

    async def _transform(self, raw: bytes) -> ProcessedImage:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, transform_for_display, raw, self.transform_options)
        try:
            return await asyncio.wait_for(future, timeout=self.transform_timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionTimeoutError(f"Display transform timed out after {self.transform_timeout:.1f}s") from e

    async def _outcome(self, photo_id: uuid.UUID, error: Optional[str] = None) -> Optional[IngestionOutcome]:
        async with self.session_maker() as session:
            photo = await PhotoRepository.get_by_id(session, photo_id)
        if photo is None:
            return None
        return IngestionOutcome(
            photo_id=photo.id,
            status=photo.status.value,
            faces_count=photo.faces_count,
            retry_count=photo.retry_count,
            error=error or photo.processing_error,
        )

    async def process_photo(self, photo_id: uuid.UUID) -> Optional[IngestionOutcome]:
        """
        Make one processing attempt.

        Returns None when the photo could not be claimed (already processed,
        out of retries, or taken by another worker).
        """
        async with self.session_maker() as session:
            claimed = await PhotoRepository.claim_for_processing(session, photo_id, self.max_retries)
        if not claimed:
            logger.debug(f"Photo {photo_id} not claimable, skipping")
            return None

        start_time = time.time()
        logger.info(f"Processing photo {photo_id}")

        try:
            async with self.session_maker() as session:
                photo = await PhotoRepository.get_by_id(session, photo_id)

            raw = await self.storage.get_object(photo.storage_path_raw)

            results = await asyncio.gather(
                self._transform(raw),
                self.face_service.extract(raw, timeout=self.extraction_timeout),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            processed, faces = results

            display_path = await self.storage.put_object(display_key_for(photo), processed.buffer)

            async with self.session_maker() as session:
                marked = await PhotoRepository.mark_ready(
                    session,
                    photo_id,
                    [face.embedding for face in faces],
                    display_path=display_path,
                    width=processed.original_width,
                    height=processed.original_height,
                    taken_at=processed.taken_at,
                    dim=self.face_service.embedding_dim,
                )
        except Exception as e:
            return await self._record_failure(photo_id, e)

        if not marked:
            logger.warning(f"Photo {photo_id} changed state during processing, discarding results")
            await self._discard_display(display_path)
            return await self._outcome(photo_id)

        processing_time = (time.time() - start_time) * 1000
        logger.info(f"Photo {photo_id} ready with {len(faces)} face(s) in {processing_time:.1f}ms")
        return await self._outcome(photo_id)

    async def _discard_display(self, display_path: str):
        try:
            await self.storage.delete_object(display_path)
        except StorageError as e:
            logger.warning(f"Could not remove orphaned display image {display_path}: {e}")

    async def _record_failure(self, photo_id: uuid.UUID, error: Exception) -> Optional[IngestionOutcome]:
        permanent = isinstance(error, PermanentError)
        message = _describe(error)

        async with self.session_maker() as session:
            retry_count = await PhotoRepository.mark_failed(
                session, photo_id, message, max_retries=self.max_retries, permanent=permanent
            )

        if permanent or retry_count >= self.max_retries:
            logger.error(
                f"Photo {photo_id} failed permanently after {retry_count} attempt(s): {message}",
                exc_info=error
            )
        else:
            logger.warning(
                f"Photo {photo_id} attempt {retry_count}/{self.max_retries} failed, will retry: {message}"
            )
        return await self._outcome(photo_id, error=message)

    async def expire_stale_claims(self) -> int:
        """Release photos whose processing lease ran out."""
        async with self.session_maker() as session:
            return await PhotoRepository.expire_stale_claims(session, lease_seconds=self.processing_lease)

    async def ingest(self, photo_id: uuid.UUID) -> Optional[IngestionOutcome]:
        """Attempt a photo until it is ready or its retries are exhausted."""
        await self.expire_stale_claims()
        outcome = None
        while True:
            attempt = await self.process_photo(photo_id)
            if attempt is None:
                break
            outcome = attempt
            if attempt.status != PhotoStatus.FAILED.value:
                break
            if self.retry_delay:
                await asyncio.sleep(self.retry_delay * attempt.retry_count)

        return outcome or await self._outcome(photo_id)

    async def process_batch(self, photo_ids: Iterable[uuid.UUID]) -> List[Optional[IngestionOutcome]]:
        """One attempt per photo, at most `concurrency` in flight."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(photo_id):
            async with semaphore:
                try:
                    return await self.process_photo(photo_id)
                except Exception:
                    # photo stays in processing until its lease expires
                    logger.exception(f"Unhandled error processing photo {photo_id}")
                    return None

        return list(await asyncio.gather(*(_one(pid) for pid in photo_ids)))

    async def _poll(self) -> List[uuid.UUID]:
        await self.expire_stale_claims()
        async with self.session_maker() as session:
            return await PhotoRepository.list_claimable_ids(
                session, max_retries=self.max_retries, limit=self.concurrency
            )

    async def run_worker(self, stop_event: asyncio.Event):
        """Poll for claimable photos until stop_event is set."""
        logger.info(f"Ingestion worker started (concurrency={self.concurrency})")
        while not stop_event.is_set():
            try:
                photo_ids = await self._poll()
            except Exception:
                logger.exception("Failed to poll for claimable photos")
                photo_ids = []

            if photo_ids:
                await self.process_batch(photo_ids)
                continue

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Ingestion worker stopped")

    def close(self):
        self._executor.shutdown(wait=True)
