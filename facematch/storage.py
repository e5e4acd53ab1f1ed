"""
Object storage for raw uploads and display derivatives

The pipeline only depends on the ObjectStorage protocol. GCSStorage is the
Google Cloud Storage implementation used in deployment.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol

from google.cloud import storage
from google.cloud.exceptions import GoogleCloudError, NotFound

from facematch.config import STORAGE_BUCKET
from facematch.errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    async def put_object(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        """Store bytes under key and return the storage path."""
        ...

    async def get_object(self, path: str) -> bytes:
        ...

    async def delete_object(self, path: str) -> None:
        """Remove an object; a missing object is not an error."""
        ...


class GCSStorage:
    """
    Google Cloud Storage client for photo bytes.

    Blocking client calls run on a small thread pool. Any client failure
    is raised as StorageError.
    """

    def __init__(self, bucket_name: str = STORAGE_BUCKET, client: Optional[storage.Client] = None):
        self.client = client or storage.Client()
        self.bucket = self.client.bucket(bucket_name)
        self.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="gcs")
        logger.info(f"Cloud Storage client initialized with bucket: {bucket_name}")

    def _blob_path(self, path: str) -> str:
        prefix = f"gs://{self.bucket.name}/"
        if path.startswith(prefix):
            return path[len(prefix):]
        return path.lstrip("/")

    async def put_object(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        if not data:
            raise StorageError(f"Cannot upload empty data to {key}")

        def _upload():
            blob = self.bucket.blob(key)
            blob.cache_control = "no-cache, must-revalidate"
            blob.upload_from_string(data, content_type=content_type)

        try:
            await asyncio.get_running_loop().run_in_executor(self.executor, _upload)
        except GoogleCloudError as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

        logger.debug(f"Uploaded {len(data)} bytes to {key}")
        return f"gs://{self.bucket.name}/{key}"

    async def get_object(self, path: str) -> bytes:
        blob = self.bucket.blob(self._blob_path(path))
        try:
            return await asyncio.get_running_loop().run_in_executor(self.executor, blob.download_as_bytes)
        except NotFound as e:
            raise StorageError(f"Object not found: {path}") from e
        except GoogleCloudError as e:
            raise StorageError(f"Failed to download {path}: {e}") from e

    async def delete_object(self, path: str) -> None:
        blob = self.bucket.blob(self._blob_path(path))
        try:
            await asyncio.get_running_loop().run_in_executor(self.executor, blob.delete)
        except NotFound:
            logger.debug(f"Object already gone: {path}")
        except GoogleCloudError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e

    async def cleanup(self):
        self.executor.shutdown(wait=True)
        logger.info("Storage client cleaned up")
