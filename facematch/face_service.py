"""
Face Embedding Extraction Service

This module wraps a FaceBackend for use from async code:
- One-time, idempotent model initialization
- Bounded, timed extraction running on a worker thread pool
- Per-call release of decoded buffers on every exit path
- Dimensionality filtering of backend output
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from facematch.backends import FaceBackend
from facematch.config import EMBEDDING_DIM, EXTRACTION_TIMEOUT_SECONDS, MAX_CONCURRENT_EXTRACTIONS
from facematch.errors import DimensionMismatchError, ExtractionTimeoutError
from facematch.schemas import Face

logger = logging.getLogger(__name__)


class FaceService:
    """
    Process-wide handle on the embedding backend.

    Construct one at startup and pass it to the pipeline and the selfie
    gate. The backend's model state is shared read-only by every call
    once initialize() has completed.
    """

    def __init__(
        self,
        backend: FaceBackend,
        embedding_dim: int = EMBEDDING_DIM,
        max_concurrent: int = MAX_CONCURRENT_EXTRACTIONS,
        timeout: float = EXTRACTION_TIMEOUT_SECONDS,
    ):
        self.backend = backend
        self.embedding_dim = int(embedding_dim)
        self.timeout = float(timeout)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_concurrent)), thread_name_prefix="face-extract"
        )
        self._semaphore = asyncio.Semaphore(max(1, int(max_concurrent)))
        self._init_lock = asyncio.Lock()
        self._model_loaded = False

    @property
    def is_initialized(self) -> bool:
        return self._model_loaded

    async def initialize(self):
        """Load the model once; later calls return immediately."""
        if self._model_loaded:
            return

        async with self._init_lock:
            if self._model_loaded:
                return

            backend_dim = getattr(self.backend, "embedding_dim", None)
            if backend_dim is not None and backend_dim != self.embedding_dim:
                raise DimensionMismatchError(self.embedding_dim, backend_dim)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, self.backend.load)
            self._model_loaded = True
            logger.info(f"Face backend ready (embedding_dim={self.embedding_dim})")

    async def extract(self, image_bytes: bytes, timeout: Optional[float] = None) -> List[Face]:
        """
        Detect every face in an image and return those with a usable embedding.

        Returns an empty list when no face is found. Decode and backend
        errors propagate; a timeout raises ExtractionTimeoutError.
        """
        await self.initialize()
        faces = await self._run(image_bytes, liveness=False, timeout=timeout)

        kept = [face for face in faces if len(face.embedding) == self.embedding_dim]
        if len(kept) != len(faces):
            logger.debug(f"Dropped {len(faces) - len(kept)} face(s) with unexpected embedding length")
        return kept

    async def detect_for_selfie(self, image_bytes: bytes, timeout: Optional[float] = None) -> List[Face]:
        """Detection with anti-spoof and liveness scoring. Output is not filtered."""
        await self.initialize()
        return await self._run(image_bytes, liveness=True, timeout=timeout)

    async def _run(self, image_bytes: bytes, liveness: bool, timeout: Optional[float]) -> List[Face]:
        timeout = self.timeout if timeout is None else timeout
        async with self._semaphore:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._executor, self._detect_sync, image_bytes, liveness)
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError as e:
                raise ExtractionTimeoutError(f"Face extraction timed out after {timeout:.1f}s") from e

    def _detect_sync(self, image_bytes: bytes, liveness: bool) -> List[Face]:
        image = self.backend.decode(image_bytes)
        try:
            return self.backend.detect(image, liveness=liveness)
        finally:
            self.backend.release(image)

    def memory_stats(self) -> Dict[str, int]:
        """Outstanding decoded buffers held by the backend."""
        return self.backend.memory()

    def close(self):
        self._executor.shutdown(wait=True)
