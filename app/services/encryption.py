"""Credential vault: authenticated encryption for OAuth tokens at rest.

AES-256-GCM with a fresh 96-bit nonce per call. The authentication tag is
stored explicitly next to the ciphertext so tampering is detected on decrypt.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


class VaultError(Exception):
    """Base class for credential vault failures."""


class EncryptionKeyError(VaultError):
    """The configured key is missing, not hex, or the wrong length."""


class DecryptionError(VaultError):
    """Stored ciphertext could not be authenticated or is malformed."""


@dataclass(frozen=True)
class EncryptedValue:
    """Hex-encoded ``{iv, ciphertext, authTag}`` triple."""

    iv: str
    ciphertext: str
    auth_tag: str

    def serialize(self) -> str:
        """Single-column storage form: ``iv:ciphertext:authTag``."""
        return f"{self.iv}:{self.ciphertext}:{self.auth_tag}"

    @classmethod
    def parse(cls, stored: str) -> "EncryptedValue":
        if not stored:
            raise DecryptionError("Encrypted value is empty")
        parts = stored.split(":")
        if len(parts) != 3:
            raise DecryptionError("Encrypted value must have iv, ciphertext and authTag")
        return cls(iv=parts[0], ciphertext=parts[1], auth_tag=parts[2])

    def to_dict(self) -> dict:
        return {"iv": self.iv, "ciphertext": self.ciphertext, "authTag": self.auth_tag}


class CredentialVault:
    """Encrypts and decrypts credential strings with an injected key."""

    def __init__(self, key_hex: Optional[str]):
        if not key_hex:
            raise EncryptionKeyError("Encryption key is not configured")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise EncryptionKeyError("Encryption key must be hex-encoded")
        if len(key) != KEY_BYTES:
            raise EncryptionKeyError(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedValue:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedValue(iv=nonce.hex(), ciphertext=ciphertext.hex(), auth_tag=tag.hex())

    def decrypt(self, value: EncryptedValue) -> str:
        try:
            nonce = bytes.fromhex(value.iv)
            ciphertext = bytes.fromhex(value.ciphertext)
            tag = bytes.fromhex(value.auth_tag)
        except (TypeError, ValueError):
            raise DecryptionError("Encrypted value is not valid hex")

        if len(nonce) != NONCE_BYTES:
            raise DecryptionError(f"IV must be {NONCE_BYTES} bytes")
        if len(tag) != TAG_BYTES:
            raise DecryptionError(f"Auth tag must be {TAG_BYTES} bytes")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            logger.warning("Credential decryption failed: authentication tag mismatch")
            raise DecryptionError("Authentication tag mismatch")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted value is not valid UTF-8")

    def encrypt_to_str(self, plaintext: str) -> str:
        return self.encrypt(plaintext).serialize()

    def decrypt_from_str(self, stored: str) -> str:
        return self.decrypt(EncryptedValue.parse(stored))


def get_credential_vault() -> CredentialVault:
    """Build a vault from the process-wide POS_ENCRYPTION_KEY setting."""
    return CredentialVault(settings.POS_ENCRYPTION_KEY)
