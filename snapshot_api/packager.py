import json
from dataclasses import dataclass
from typing import Optional

from pydantic_core import to_json

from .collector import SnapshotPayload
from .encryption import ChecksumMismatch, EncryptedData, KeyManager, calculate_checksum, verify_checksum
from .logger import get_logger

logger = get_logger(__name__)

CONTENT_TYPE = "application/json"


@dataclass
class PackagedSnapshot:
    body: bytes
    checksum: str
    encryption: Optional[EncryptedData] = None

    @property
    def size(self) -> int:
        return len(self.body)


def serialize_snapshot(payload: SnapshotPayload) -> bytes:
    return to_json(payload.to_document(), bytes_mode="base64")


def package_snapshot(payload: SnapshotPayload, encrypt: bool, key_manager: Optional[KeyManager] = None) -> PackagedSnapshot:
    """
    Serializes a snapshot and, when requested, seals it into an encrypted
    envelope. Encryption problems propagate; the snapshot is never stored
    in clear text when encryption was asked for.
    """
    payload.encrypted = encrypt
    plaintext = serialize_snapshot(payload)

    if not encrypt:
        return PackagedSnapshot(body=plaintext, checksum=calculate_checksum(plaintext))

    if key_manager is None:
        key_manager = KeyManager()
    encrypted = key_manager.encrypt(plaintext)
    checksum = calculate_checksum(encrypted.ciphertext)
    envelope = {
        "encrypted": True,
        "algorithm": encrypted.algorithm,
        "iv": encrypted.iv,
        "authTag": encrypted.auth_tag,
        "keyId": encrypted.key_id,
        "data": encrypted.ciphertext,
        "checksum": checksum,
    }
    logger.debug(f"Encrypted snapshot with key '{encrypted.key_id}', {len(plaintext)} plaintext bytes.")
    return PackagedSnapshot(body=to_json(envelope), checksum=checksum, encryption=encrypted)


def is_envelope(document) -> bool:
    return (
        isinstance(document, dict)
        and document.get("encrypted") is True
        and isinstance(document.get("data"), str)
        and "iv" in document
    )


def open_envelope(body: bytes, key_manager: Optional[KeyManager] = None) -> dict:
    """
    Reads a stored artifact back into the snapshot document, verifying the
    ciphertext checksum and decrypting when the artifact is an envelope.
    """
    document = json.loads(body)
    if not is_envelope(document):
        return document

    if not verify_checksum(document["data"], document.get("checksum")):
        raise ChecksumMismatch("Backup checksum verification failed, the artifact may be corrupted")

    if key_manager is None:
        key_manager = KeyManager()
    plaintext = key_manager.decrypt(
        document["data"], document["iv"], document["authTag"], document.get("keyId")
    )
    return json.loads(plaintext)
