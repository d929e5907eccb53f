"""Object store adapter for uploaded media and generated results."""

import asyncio
import logging
import re
import time
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple, runtime_checkable

from studyguide.utils.errors import InvalidObjectNameError

logger = logging.getLogger(__name__)

MAX_OBJECT_NAME_LENGTH = 512
_OBJECT_NAME_CHARS = re.compile(r"^[A-Za-z0-9._/-]+$")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@runtime_checkable
class ObjectStore(Protocol):
    """Named byte blobs with time-limited signed URLs."""

    async def read_bytes(self, name: str) -> bytes:
        ...

    async def write_bytes(self, name: str, data: bytes, content_type: str) -> None:
        ...

    async def delete(self, name: str) -> None:
        ...

    async def signed_read_url(self, name: str, ttl_seconds: int) -> str:
        ...

    async def signed_upload_url(self, name: str, content_type: str, ttl_seconds: int) -> str:
        ...


def validate_object_name(name: str, prefix: str = "uploads/") -> str:
    """
    Check that an object name lives under the upload namespace.

    Args:
        name: Object name supplied by a client
        prefix: Namespace every client-supplied object must live under

    Returns:
        The validated name

    Raises:
        InvalidObjectNameError: If the name escapes the namespace or is malformed
    """
    if not name or len(name) > MAX_OBJECT_NAME_LENGTH:
        raise InvalidObjectNameError("Invalid object name.")
    if not name.startswith(prefix) or name == prefix:
        raise InvalidObjectNameError("Object name is outside the upload namespace.")
    if not _OBJECT_NAME_CHARS.match(name):
        raise InvalidObjectNameError("Object name contains invalid characters.")

    segments = name.split("/")
    if any(segment in ("", ".", "..") for segment in segments):
        raise InvalidObjectNameError("Object name contains path traversal.")

    return name


def sanitize_filename(filename: str) -> str:
    safe = _UNSAFE_FILENAME_CHARS.sub("_", filename.strip()) or "upload"
    return safe[:120]


def build_upload_object_name(
    key: str,
    filename: str,
    prefix: str = "uploads/",
    now_ms: Optional[int] = None,
) -> str:
    """Object name for a client upload: ``uploads/<key>/<epoch-ms>-<safe-name>``."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{prefix}{sanitize_filename(key)}/{stamp}-{sanitize_filename(filename)}"


def build_result_object_name(job_id: str) -> str:
    return f"results/{job_id}/study-guide.md"


def build_transcript_object_name(job_id: str) -> str:
    return f"results/{job_id}/transcript.txt"


async def cleanup_objects(store: ObjectStore, names: Iterable[str]) -> None:
    """Delete objects one by one; failures are logged, never raised."""
    for name in names:
        try:
            await store.delete(name)
        except Exception as e:
            logger.error(f"Object cleanup failed for {name}: {e}")


class GcsObjectStore:
    """Object store on a Google Cloud Storage bucket."""

    def __init__(self, bucket_name: str, client: Optional[Any] = None) -> None:
        """
        Initialize the GcsObjectStore.

        Args:
            bucket_name: Bucket holding uploads and results
            client: google.cloud.storage Client (created lazily if omitted)
        """
        self.bucket_name = bucket_name
        self._client = client

    def _bucket(self) -> Any:
        if self._client is None:
            from google.cloud import storage

            self._client = storage.Client()
        return self._client.bucket(self.bucket_name)

    async def read_bytes(self, name: str) -> bytes:
        blob = self._bucket().blob(name)
        return await asyncio.to_thread(blob.download_as_bytes)

    async def write_bytes(self, name: str, data: bytes, content_type: str) -> None:
        blob = self._bucket().blob(name)
        await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        logger.info(f"Stored {len(data)} bytes at {name}")

    async def delete(self, name: str) -> None:
        blob = self._bucket().blob(name)
        await asyncio.to_thread(blob.delete)

    async def signed_read_url(self, name: str, ttl_seconds: int) -> str:
        blob = self._bucket().blob(name)
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="GET",
        )

    async def signed_upload_url(self, name: str, content_type: str, ttl_seconds: int) -> str:
        blob = self._bucket().blob(name)
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="PUT",
            content_type=content_type,
        )


class InMemoryObjectStore:
    """Process-local object store for development and tests."""

    def __init__(self, bucket_name: str = "local") -> None:
        self.bucket_name = bucket_name
        self.objects: Dict[str, Tuple[bytes, str]] = {}

    async def read_bytes(self, name: str) -> bytes:
        if name not in self.objects:
            raise FileNotFoundError(name)
        return self.objects[name][0]

    async def write_bytes(self, name: str, data: bytes, content_type: str) -> None:
        self.objects[name] = (data, content_type)

    async def delete(self, name: str) -> None:
        if name not in self.objects:
            raise FileNotFoundError(name)
        del self.objects[name]

    async def signed_read_url(self, name: str, ttl_seconds: int) -> str:
        return f"memory://{self.bucket_name}/{name}?method=GET&expires={ttl_seconds}"

    async def signed_upload_url(self, name: str, content_type: str, ttl_seconds: int) -> str:
        return f"memory://{self.bucket_name}/{name}?method=PUT&expires={ttl_seconds}"


def create_object_store() -> ObjectStore:
    """
    Create an ObjectStore using application settings.

    Returns:
        GCS-backed store, or an in-memory store when no bucket is configured
    """
    from studyguide.config import get_settings

    settings = get_settings()
    if not settings.gcs_bucket:
        logger.warning("GCS_BUCKET is not set; using in-memory object store")
        return InMemoryObjectStore()
    return GcsObjectStore(bucket_name=settings.gcs_bucket)
