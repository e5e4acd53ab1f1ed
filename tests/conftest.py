import threading
import time
from io import BytesIO
from typing import Dict, List, Optional, Tuple

import numpy as np
import pytest
import pytest_asyncio
from PIL import Image, UnidentifiedImageError

from facematch.database import build_engine, build_session_maker, create_tables
from facematch.errors import StorageError, UnreadableImageError
from facematch.face_service import FaceService
from facematch.schemas import Face

DIM = 8


def make_jpeg(width: int, height: int, color=(128, 128, 128), exif=None) -> bytes:
    image = Image.new("RGB", (width, height), color)
    buffer = BytesIO()
    if exif is not None:
        image.save(buffer, format="JPEG", quality=95, exif=exif)
    else:
        image.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


def make_face(
    embedding,
    confidence: float = 0.99,
    real_score: Optional[float] = None,
    live_score: Optional[float] = None,
) -> Face:
    return Face(
        embedding=[float(v) for v in embedding],
        box=(0.1, 0.1, 0.3, 0.3),
        confidence=confidence,
        real_score=real_score,
        live_score=live_score,
    )


def unit(index: int, dim: int = DIM) -> List[float]:
    vector = [0.0] * dim
    vector[index] = 1.0
    return vector


class FakeBackend:
    """Scripted backend: faces are looked up by decoded image size."""

    def __init__(self, embedding_dim: int = DIM):
        self.embedding_dim = embedding_dim
        self.load_calls = 0
        self.faces_by_size: Dict[Tuple[int, int], List[Face]] = {}
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self._lock = threading.Lock()
        self._outstanding: Dict[int, int] = {}

    def load(self):
        self.load_calls += 1

    def decode(self, image_bytes: bytes) -> np.ndarray:
        try:
            with Image.open(BytesIO(image_bytes)) as image:
                array = np.asarray(image.convert("RGB")).copy()
        except (UnidentifiedImageError, OSError) as e:
            raise UnreadableImageError(f"Failed to decode image: {e}") from e
        with self._lock:
            self._outstanding[id(array)] = array.nbytes
        return array

    def detect(self, image: np.ndarray, liveness: bool = False) -> List[Face]:
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        height, width = image.shape[:2]
        return list(self.faces_by_size.get((width, height), []))

    def release(self, image: np.ndarray):
        with self._lock:
            self._outstanding.pop(id(image), None)

    def memory(self) -> Dict[str, int]:
        with self._lock:
            return {"num_buffers": len(self._outstanding), "num_bytes": sum(self._outstanding.values())}


class InMemoryStorage:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail_puts = False
        self.on_put = None

    async def put_object(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        if self.fail_puts:
            raise StorageError(f"Failed to upload {key}")
        self.objects[key] = data
        if self.on_put is not None:
            await self.on_put(key)
        return f"mem://{key}"

    async def get_object(self, path: str) -> bytes:
        key = path[len("mem://"):] if path.startswith("mem://") else path
        if key not in self.objects:
            raise StorageError(f"Object not found: {path}")
        return self.objects[key]

    async def delete_object(self, path: str) -> None:
        key = path[len("mem://"):] if path.startswith("mem://") else path
        self.objects.pop(key, None)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def face_service(backend):
    service = FaceService(backend, embedding_dim=DIM, max_concurrent=2, timeout=5.0)
    yield service
    service.close()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'facematch.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)
