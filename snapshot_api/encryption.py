"""
Encryption and integrity utilities for backup artifacts.

Snapshots are encrypted with AES-256-GCM. The key is a 32-byte value
supplied base64-encoded through configuration; a key id derived from the
key (or configured explicitly) is stored alongside every artifact so a
restore can pick the right key after rotation.

Checksums are SHA-256 hex digests computed over the base64 ciphertext as
it is written into the envelope.
"""
import base64
import binascii
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .logger import get_logger

logger = get_logger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 12  # 96 bits for GCM
TAG_LENGTH = 16  # 128 bits for GCM authentication tag


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""


class ChecksumMismatch(Exception):
    """Raised when a stored checksum does not match the data."""


@dataclass
class EncryptedData:
    ciphertext: str
    iv: str
    auth_tag: str
    key_id: str
    algorithm: str = ALGORITHM


def calculate_checksum(data) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def verify_checksum(data, expected: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(calculate_checksum(data), expected)


def _decode_key(encoded_key) -> bytes:
    if isinstance(encoded_key, str):
        encoded_key = encoded_key.encode("utf-8")
    try:
        key = base64.b64decode(encoded_key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError("Backup encryption key is not valid base64") from e
    if len(key) != KEY_LENGTH:
        raise EncryptionError(f"Backup encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


def generate_key() -> str:
    """Returns a fresh base64-encoded AES-256 key."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


class KeyManager:
    """AES-256-GCM encryption with a single configured key."""

    def __init__(self, encoded_key: Optional[str] = None, key_id: Optional[str] = None):
        self._encoded_key = encoded_key
        self._key_id = key_id

    @classmethod
    def from_config(cls, config: dict) -> "KeyManager":
        encryption = config.get("encryption", {})
        return cls(encryption.get("key"), encryption.get("key_id"))

    def _key(self) -> bytes:
        if not self._encoded_key:
            raise EncryptionError(
                "Backup encryption key is not configured. "
                "Set the BACKUP_ENCRYPTION_KEY environment variable to a base64-encoded 32-byte key."
            )
        return _decode_key(self._encoded_key)

    @property
    def key_id(self) -> str:
        if self._key_id:
            return self._key_id
        return "key-" + hashlib.sha256(self._key()).hexdigest()[:16]

    def encrypt(self, plaintext: bytes) -> EncryptedData:
        key = self._key()
        iv = os.urandom(IV_LENGTH)
        try:
            sealed = AESGCM(key).encrypt(iv, plaintext, None)
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return EncryptedData(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=iv.hex(),
            auth_tag=tag.hex(),
            key_id=self.key_id,
        )

    def decrypt(self, ciphertext: str, iv: str, auth_tag: str, key_id: Optional[str] = None) -> bytes:
        if key_id and key_id != self.key_id:
            raise EncryptionError(f"Backup was encrypted with key '{key_id}', configured key is '{self.key_id}'")
        key = self._key()
        try:
            sealed = base64.b64decode(ciphertext, validate=True) + bytes.fromhex(auth_tag)
            return AESGCM(key).decrypt(bytes.fromhex(iv), sealed, None)
        except InvalidTag as e:
            raise EncryptionError("Decryption failed: authentication tag mismatch") from e
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Decryption failed: malformed encrypted data ({e})") from e
