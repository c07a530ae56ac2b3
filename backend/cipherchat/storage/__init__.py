from functools import lru_cache

from ..core.config import Settings, get_settings
from .base import BlobStore, StoredBlob
from .disk import DiskBlobStore
from .memory import MemoryBlobStore

__all__ = ["BlobStore", "StoredBlob", "DiskBlobStore", "MemoryBlobStore", "build_blob_store", "get_blob_store"]


def build_blob_store(settings: Settings) -> BlobStore:
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "disk":
        return DiskBlobStore(settings.FILES_DIR)
    if backend == "memory":
        return MemoryBlobStore()
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")


@lru_cache()
def get_blob_store() -> BlobStore:
    return build_blob_store(get_settings())
