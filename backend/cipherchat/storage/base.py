from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class StoredBlob:
    url: str
    key: str


class BlobStore(ABC):
    """Where uploaded attachments and avatars live."""

    @abstractmethod
    def put(self, data: bytes, *, filename: str, content_type: str, folder: str = "uploads") -> StoredBlob:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a blob; returns False when nothing was stored under ``key``."""

    @abstractmethod
    def open(self, key: str) -> bytes:
        ...
