import threading
import uuid
from typing import Dict

from .base import BlobStore, StoredBlob


class MemoryBlobStore(BlobStore):
    """Keeps blobs in process memory; used by tests and throwaway deployments."""

    def __init__(self, url_prefix: str = "memory://"):
        self.url_prefix = url_prefix
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, *, filename: str, content_type: str, folder: str = "uploads") -> StoredBlob:
        key = f"{folder}/{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[key] = bytes(data)
        return StoredBlob(url=f"{self.url_prefix}{key}", key=key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._blobs.pop(key, None) is not None

    def open(self, key: str) -> bytes:
        with self._lock:
            if key not in self._blobs:
                raise FileNotFoundError(key)
            return self._blobs[key]

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs
