"""Cryptographic building blocks shared by every identity flow.

The HMAC key is owned by a CryptoPrimitives instance built at startup from the
Vault secret. Nothing here keeps module-level key state, so tests construct
their own instance with a fixed key.
"""

import base64
import binascii
import hashlib
import hmac
import re
import secrets

MIN_HMAC_SECRET_LENGTH = 32

_BASE64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]*$")


class CryptoPrimitives:
    """Random bytes, HMAC-SHA256, constant-time comparison and base64url.

    Usage:
        crypto = CryptoPrimitives(get_hmac_secret())
        token = crypto.generate_random_bytes(32)
        token_hash = crypto.compute_hmac_sha256(token)
    """

    def __init__(self, hmac_secret: str):
        """
        Args:
            hmac_secret: Application secret used as the HMAC key

        Raises:
            ValueError: If the secret is missing or shorter than 32 characters
        """
        if not hmac_secret or not hmac_secret.strip():
            raise ValueError("hmac_secret is required")
        if len(hmac_secret) < MIN_HMAC_SECRET_LENGTH:
            raise ValueError(
                f"hmac_secret must be at least {MIN_HMAC_SECRET_LENGTH} characters"
            )
        self._key = hmac_secret.encode("utf-8")

    def generate_random_bytes(self, length: int) -> bytes:
        """Return `length` cryptographically secure random bytes."""
        if length <= 0:
            raise ValueError("length must be positive")
        return secrets.token_bytes(length)

    def compute_hmac_sha256(self, payload: str | bytes) -> bytes:
        """HMAC-SHA256 of payload with the application key. Strings are UTF-8 encoded."""
        return self.compute_hmac_sha256_with_key(self._key, payload)

    @staticmethod
    def compute_hmac_sha256_with_key(key: bytes, payload: str | bytes) -> bytes:
        """HMAC-SHA256 with an explicit key; returns the 32-byte digest."""
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hmac.new(key, payload, hashlib.sha256).digest()

    @staticmethod
    def fixed_time_equals(left: bytes, right: bytes) -> bool:
        """Compare two byte strings in time independent of the first mismatch."""
        return hmac.compare_digest(left, right)

    @staticmethod
    def base64url_encode(data: bytes) -> str:
        """URL-safe base64 without padding."""
        return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")

    @staticmethod
    def try_base64url_decode(text: str | None) -> tuple[bool, bytes]:
        """
        Decode unpadded URL-safe base64.

        Returns:
            (True, decoded) on success, (False, b"") for empty or malformed input.
        """
        if not text or not text.strip():
            return False, b""

        value = text.strip()
        if len(value) % 4 == 1 or not _BASE64URL_PATTERN.match(value):
            return False, b""

        padded = value + "=" * (-len(value) % 4)
        try:
            return True, base64.urlsafe_b64decode(padded)
        except (binascii.Error, ValueError):
            return False, b""
