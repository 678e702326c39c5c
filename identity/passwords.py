"""Password hashing (bcrypt with SHA-256 pre-hash) and password policy checks.

Bcrypt truncates inputs at 72 bytes; pre-hashing with SHA-256 yields a fixed
length input so long passphrases are not silently truncated. Every stored hash
is tagged with PASSWORD_HASH_VERSION so a future algorithm change can detect
legacy rows and rehash on the next successful sign-in.
"""

import base64
import hashlib
import logging
import re
from dataclasses import dataclass, field

import bcrypt

from identity.config import PasswordPolicy

logger = logging.getLogger(__name__)

PASSWORD_HASH_VERSION = 1

PASSWORD_REQUIRED = "Password is required."
PASSWORD_MISMATCH = "Password and confirmation do not match."

_BCRYPT_COST_PATTERN = re.compile(rb"^\$2[abxy]?\$(\d{2})\$")


def _prehash(password: str) -> bytes:
    """SHA-256 pre-hash to avoid bcrypt's 72-byte truncation."""
    return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest())


@dataclass(frozen=True)
class PasswordVerification:
    """Outcome of checking a candidate password against a stored hash."""

    matches: bool
    needs_rehash: bool


class PasswordHasher:
    """Salted, versioned password hashing."""

    def __init__(self, rounds: int = 12):
        self._rounds = rounds

    @property
    def version(self) -> int:
        return PASSWORD_HASH_VERSION

    def hash_password(self, password: str) -> bytes:
        """
        Hash a password with a fresh salt.

        Raises:
            ValueError: If password is empty or whitespace
        """
        if not password or not password.strip():
            raise ValueError("password is required")
        return bcrypt.hashpw(_prehash(password), bcrypt.gensalt(rounds=self._rounds))

    def verify_password(
        self,
        stored_hash: bytes | None,
        candidate: str,
        hash_version: int | None = PASSWORD_HASH_VERSION,
    ) -> PasswordVerification:
        """
        Check candidate against stored_hash using the salt embedded in it.

        needs_rehash is advisory: the hash is from an older version tag or
        was created with a lower cost than currently configured.
        """
        if not stored_hash or not candidate:
            return PasswordVerification(matches=False, needs_rehash=False)

        try:
            matches = bcrypt.checkpw(_prehash(candidate), bytes(stored_hash))
        except (ValueError, TypeError):
            logger.warning("Stored password hash is malformed")
            return PasswordVerification(matches=False, needs_rehash=False)

        if not matches:
            return PasswordVerification(matches=False, needs_rehash=False)

        return PasswordVerification(
            matches=True,
            needs_rehash=self._needs_rehash(bytes(stored_hash), hash_version),
        )

    def _needs_rehash(self, stored_hash: bytes, hash_version: int | None) -> bool:
        if hash_version != PASSWORD_HASH_VERSION:
            return True
        match = _BCRYPT_COST_PATTERN.match(stored_hash)
        if match is None:
            return True
        return int(match.group(1)) < self._rounds


@dataclass(frozen=True)
class PasswordPolicyResult:
    """Which policy requirements a candidate password misses."""

    is_valid: bool
    missing_requirements: list[str] = field(default_factory=list)

    def guidance_message(self) -> str:
        if self.is_valid or not self.missing_requirements:
            return "Password does not meet security requirements."
        return f"Password must include {', '.join(self.missing_requirements)}."


def validate_password(password: str | None, policy: PasswordPolicy) -> PasswordPolicyResult:
    """Evaluate password against policy. Minimum length never drops below 8."""
    value = password or ""
    minimum = max(8, policy.minimum_length)
    missing = []

    if len(value) < minimum:
        missing.append(f"at least {minimum} characters")
    if policy.requires_number and not any(ch.isdigit() for ch in value):
        missing.append("at least one number")
    if policy.requires_capital_letter and not any(ch.isupper() for ch in value):
        missing.append("at least one capital letter")
    if policy.requires_special_character and not any(not ch.isalnum() for ch in value):
        missing.append("at least one special character")

    return PasswordPolicyResult(is_valid=not missing, missing_requirements=missing)


def check_new_password(
    new_password: str | None, confirm_password: str | None, policy: PasswordPolicy
) -> str | None:
    """User-facing reason a new password is unacceptable, or None if it is fine."""
    if not new_password or not new_password.strip():
        return PASSWORD_REQUIRED
    if new_password != confirm_password:
        return PASSWORD_MISMATCH
    result = validate_password(new_password, policy)
    if not result.is_valid:
        return result.guidance_message()
    return None
