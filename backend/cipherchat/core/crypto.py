import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoError

KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedData:
    iv: str
    ciphertext: str
    auth_tag: str

    def to_dict(self) -> dict:
        return {"iv": self.iv, "ciphertext": self.ciphertext, "auth_tag": self.auth_tag}

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedData":
        return cls(iv=data["iv"], ciphertext=data["ciphertext"], auth_tag=data["auth_tag"])


def _key_bytes(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex)
    except (TypeError, ValueError):
        raise CryptoError() from None
    if len(key) != KEY_BYTES:
        raise CryptoError()
    return key


def generate_key() -> str:
    """Return a fresh random 256-bit key, hex encoded."""
    return os.urandom(KEY_BYTES).hex()


def generate_iv() -> str:
    return os.urandom(IV_BYTES).hex()


def encrypt(plaintext: str, key_hex: str, *, iv_hex: str | None = None) -> EncryptedData:
    """AES-256-GCM encrypt ``plaintext`` under ``key_hex``.

    A fresh 16-byte IV is drawn for every call. ``iv_hex`` is only passed by
    group fan-out, where one IV is shared across entries that are each under a
    different member key.
    """
    key = _key_bytes(key_hex)
    iv = bytes.fromhex(iv_hex) if iv_hex else os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return EncryptedData(iv=iv.hex(), ciphertext=ciphertext.hex(), auth_tag=tag.hex())


def decrypt(data: EncryptedData, key_hex: str) -> str:
    """Verify and decrypt ``data``; raises ``CryptoError`` on any failure."""
    key = _key_bytes(key_hex)
    try:
        iv = bytes.fromhex(data.iv)
        ciphertext = bytes.fromhex(data.ciphertext)
        tag = bytes.fromhex(data.auth_tag)
    except (TypeError, ValueError):
        raise CryptoError() from None
    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise CryptoError()
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except (InvalidTag, ValueError):
        raise CryptoError() from None
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise CryptoError() from None
