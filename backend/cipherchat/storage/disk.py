import logging
import os
import re
import uuid

from .base import BlobStore, StoredBlob

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[a-z0-9-]+/[0-9a-f]{32}(\.[A-Za-z0-9]{1,10})?$")


class DiskBlobStore(BlobStore):
    def __init__(self, base_dir: str, url_prefix: str = "/files"):
        self.base_dir = os.path.abspath(base_dir)
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(self.base_dir, exist_ok=True)

    def put(self, data: bytes, *, filename: str, content_type: str, folder: str = "uploads") -> StoredBlob:
        ext = os.path.splitext(filename or "")[1].lower()
        if not re.fullmatch(r"\.[a-z0-9]{1,10}", ext):
            ext = ""
        key = f"{folder}/{uuid.uuid4().hex}{ext}"
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        logger.info(f"Stored blob key={key} size={len(data)} content_type={content_type}")
        return StoredBlob(url=f"{self.url_prefix}/{key}", key=key)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not os.path.exists(path):
            return False
        os.remove(path)
        logger.info(f"Deleted blob key={key}")
        return True

    def open(self, key: str) -> bytes:
        with open(self._path(key), "rb") as f:
            return f.read()

    def _path(self, key: str) -> str:
        if not _KEY_RE.match(key):
            raise FileNotFoundError(key)
        return os.path.join(self.base_dir, *key.split("/"))
