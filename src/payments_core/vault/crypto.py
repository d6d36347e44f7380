"""Authenticated encryption for provider secrets at rest.

Ciphertext layout (base64 encoded)::

    salt (64 bytes) | nonce (16 bytes) | ciphertext | GCM tag (16 bytes)

The AES-256 key for each value is derived from the master key with
PBKDF2-HMAC-SHA256 over the per-value salt, so two encryptions of the same
secret never produce the same output.
"""

import base64
import binascii
import logging
import os
import re
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import CryptoError

logger = logging.getLogger(__name__)

SALT_LENGTH = 64
NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
MASTER_KEY_LENGTH = 32
DEFAULT_KDF_ITERATIONS = 100_000

# Smallest decoded payload that can hold at least one byte of ciphertext
MIN_PAYLOAD_LENGTH = SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH + 1

REDACTION_MARKER = "****"
MASK_VISIBLE_CHARS = 4
SHORT_SECRET_MASK = "*" * 12

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def mask(secret: Optional[str]) -> str:
    """Irreversibly mask a secret for display.

    Secrets longer than eight characters keep their last four characters
    behind the redaction marker; shorter ones collapse to a fixed mask so
    that nothing of them leaks. The result is stable for a given input.

    Example:
        >>> mask("sk_live_1234567890abcdef")
        '****cdef'
    """
    if not secret:
        return ""
    if len(secret) <= 2 * MASK_VISIBLE_CHARS:
        return SHORT_SECRET_MASK
    return REDACTION_MARKER + secret[-MASK_VISIBLE_CHARS:]


def is_masked(value: Optional[str]) -> bool:
    """Whether ``value`` is a masked placeholder rather than a real secret."""
    return bool(value) and value.startswith(REDACTION_MARKER)


class CredentialCipher:
    """
    AES-256-GCM cipher over a current and an optional previous master key.

    New values are always written under the current key. Reads try the
    current key first and fall back to the previous one, which keeps
    credentials readable while a key rotation is in progress.

    Example:
        cipher = CredentialCipher(current_key=settings.encryption_key)
        token = cipher.encrypt("sk_test_123")
        assert cipher.decrypt(token) == "sk_test_123"
    """

    def __init__(
        self,
        current_key: Optional[str],
        previous_key: Optional[str] = None,
        iterations: int = DEFAULT_KDF_ITERATIONS,
    ):
        """
        Args:
            current_key: Master key for new ciphertext, at least 32 characters.
            previous_key: Master key of the prior generation, if rotating.
            iterations: PBKDF2 iteration count.

        Raises:
            CryptoError: If the current key is missing or too short.
        """
        if not current_key or len(current_key) < MASTER_KEY_LENGTH:
            raise CryptoError(
                f"Encryption key must be at least {MASTER_KEY_LENGTH} characters long"
            )
        self._current_key = current_key[:MASTER_KEY_LENGTH].encode("utf-8")
        self._previous_key: Optional[bytes] = None
        if previous_key and len(previous_key) >= MASTER_KEY_LENGTH:
            self._previous_key = previous_key[:MASTER_KEY_LENGTH].encode("utf-8")
        self.iterations = iterations

    @property
    def has_previous_key(self) -> bool:
        return self._previous_key is not None

    def _derive_key(self, master_key: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(master_key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret under the current key.

        Args:
            plaintext: Secret to protect. Empty strings stay empty.

        Returns:
            Base64 encoded ciphertext.

        Raises:
            CryptoError: If encryption fails.
        """
        if not plaintext:
            return ""

        try:
            salt = os.urandom(SALT_LENGTH)
            nonce = os.urandom(NONCE_LENGTH)
            key = self._derive_key(self._current_key, salt)
            sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error(f"Credential encryption failed: {type(e).__name__}")
            raise CryptoError("Failed to encrypt credential") from e

        return base64.b64encode(salt + nonce + sealed).decode("ascii")

    def _decrypt_with(self, master_key: bytes, payload: bytes) -> str:
        salt = payload[:SALT_LENGTH]
        nonce = payload[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
        sealed = payload[SALT_LENGTH + NONCE_LENGTH:]
        key = self._derive_key(master_key, salt)
        return AESGCM(key).decrypt(nonce, sealed, None).decode("utf-8")

    def _decode(self, value: str) -> Optional[bytes]:
        try:
            payload = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            return None
        if len(payload) < MIN_PAYLOAD_LENGTH:
            return None
        return payload

    def is_encrypted(self, value: Optional[str]) -> bool:
        """Structural check: does ``value`` look like ciphertext produced here?"""
        if not value or len(value) % 4 != 0:
            return False
        if not _BASE64_RE.match(value):
            return False
        return self._decode(value) is not None

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt under the current key, then the previous key.

        Raises:
            CryptoError: If neither key authenticates the value.
        """
        if not ciphertext:
            return ""

        payload = self._decode(ciphertext)
        if payload is None:
            raise CryptoError("Value is not a valid credential ciphertext")

        try:
            return self._decrypt_with(self._current_key, payload)
        except (InvalidTag, UnicodeDecodeError):
            pass

        if self._previous_key is not None:
            try:
                return self._decrypt_with(self._previous_key, payload)
            except (InvalidTag, UnicodeDecodeError):
                pass

        raise CryptoError("Failed to decrypt credential, it may be corrupted or use an unknown key")

    def decrypt_if_needed(self, value: Optional[str]) -> str:
        """Return plaintext for a stored value that may predate encryption.

        Values that are not structurally ciphertext are legacy plaintext and
        are returned unchanged. Values that look like ciphertext but fail
        authentication under every known key raise ``CryptoError``.
        """
        if not value:
            return ""
        if not self.is_encrypted(value):
            return value
        return self.decrypt(value)

    def needs_rotation(self, value: Optional[str]) -> bool:
        """Whether a stored value is not yet ciphertext under the current key."""
        if not value:
            return False
        if not self.is_encrypted(value):
            return True
        payload = self._decode(value)
        try:
            self._decrypt_with(self._current_key, payload)
        except (InvalidTag, UnicodeDecodeError):
            return True
        return False

    def reencrypt(self, value: Optional[str]) -> str:
        """Re-encrypt a stored value under the current key.

        Values already readable with the current key are returned unchanged,
        so calling this twice is a no-op the second time.
        """
        if not value or not self.needs_rotation(value):
            return value or ""
        return self.encrypt(self.decrypt_if_needed(value))
