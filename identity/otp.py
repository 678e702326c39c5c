"""Generic one-time code engine shared by every OTP flow.

One engine serves login 2FA, forgot password, invite verification and change
password. Purpose, owner key and correlation id select the challenge;
attempt limits and lock durations arrive as an OtpPolicy.

Challenge states:
    issued -> consumed (used_at set)
           -> expired (now > expires_at, never stored)
           -> locked (failed_attempts reached max; a fresh issue is required)
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from identity.config import OtpPolicy
from identity.crypto import CryptoPrimitives
from identity.interfaces import OtpChallengeRepository
from identity.types import OtpChallenge, OtpPurpose
from utils.timezone import Clock

logger = logging.getLogger(__name__)

CODE_DIGITS = 6
CORRELATION_ID_BYTES = 24

_CODE_PATTERN = re.compile(r"^\d{6}$")


class OtpFailure(str, Enum):
    """Internal reason a consume failed. Flows show users a generic message."""

    NOT_FOUND = "not_found"
    USED = "used"
    EXPIRED = "expired"
    LOCKED = "locked"
    MALFORMED = "malformed"
    MISMATCH = "mismatch"
    ALREADY_CONSUMED = "already_consumed"


@dataclass(frozen=True)
class IssuedOtp:
    """The raw code goes to the email sender and nowhere else."""

    code: str
    correlation_id: str
    expires_at: datetime


@dataclass(frozen=True)
class OtpConsumeResult:
    success: bool
    failure: OtpFailure | None = None


class OtpChallengeEngine:
    """Issue and consume 6-digit codes, storing only their HMAC."""

    def __init__(
        self,
        challenges: OtpChallengeRepository,
        crypto: CryptoPrimitives,
        clock: Clock,
    ):
        self._challenges = challenges
        self._crypto = crypto
        self._clock = clock

    def compute_code_hash(
        self, owner_key: str, purpose: OtpPurpose, correlation_id: str, code: str
    ) -> bytes:
        return self._crypto.compute_hmac_sha256(
            f"{owner_key}|{purpose.value}|{correlation_id}|{code}"
        )

    def new_correlation_id(self) -> str:
        return self._crypto.base64url_encode(
            self._crypto.generate_random_bytes(CORRELATION_ID_BYTES)
        )

    async def issue(
        self,
        purpose: OtpPurpose,
        owner_key: str,
        policy: OtpPolicy,
        requested_from_ip: str | None = None,
        requested_user_agent: str | None = None,
        correlation_id: str | None = None,
    ) -> IssuedOtp:
        """
        Issue a new code, revoking the current one in the same store transaction.

        Without a correlation id every active challenge for owner+purpose is
        revoked and a fresh id is minted. With one, only challenges under that
        id are revoked and the id is reused (resend).
        """
        scope_to_correlation = correlation_id is not None
        if correlation_id is None:
            correlation_id = self.new_correlation_id()

        code = f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"
        now = self._clock.now()
        expires_at = now + timedelta(minutes=policy.expiry_minutes)

        challenge = OtpChallenge(
            id=uuid4(),
            owner_key=owner_key,
            purpose=purpose,
            correlation_id=correlation_id,
            code_hash=self.compute_code_hash(owner_key, purpose, correlation_id, code),
            expires_at=expires_at,
            created_at=now,
            requested_from_ip=_clean(requested_from_ip, 45),
            requested_user_agent=_clean(requested_user_agent, 512),
        )
        await self._challenges.revoke_and_create(challenge, scope_to_correlation)

        logger.info(f"Issued {purpose.value} challenge {challenge.id}")
        return IssuedOtp(code=code, correlation_id=correlation_id, expires_at=expires_at)

    async def consume(
        self,
        owner_key: str,
        purpose: OtpPurpose,
        correlation_id: str | None,
        candidate_code: str | None,
        policy: OtpPolicy,
    ) -> OtpConsumeResult:
        """
        Check a candidate code and, on match, mark the challenge used.

        Mismatches increment the attempt counter (locking at policy.max_attempts)
        in one store update. A lost mark-used race counts as failure.
        """
        challenge = await self._challenges.get_latest(owner_key, purpose, correlation_id)
        now = self._clock.now()

        if challenge is None:
            return self._fail(OtpFailure.NOT_FOUND, purpose)
        if challenge.used_at is not None:
            return self._fail(OtpFailure.USED, purpose)
        if now > challenge.expires_at:
            return self._fail(OtpFailure.EXPIRED, purpose)
        if self._is_locked(challenge, policy, now):
            return self._fail(OtpFailure.LOCKED, purpose)

        candidate = (candidate_code or "").strip()
        if not _CODE_PATTERN.match(candidate):
            return self._fail(OtpFailure.MALFORMED, purpose)

        expected = self.compute_code_hash(
            owner_key, purpose, challenge.correlation_id, candidate
        )
        if not self._crypto.fixed_time_equals(expected, challenge.code_hash):
            await self._challenges.record_failed_attempt(
                challenge.id, now, policy.max_attempts, policy.lock_minutes
            )
            return self._fail(OtpFailure.MISMATCH, purpose)

        if not await self._challenges.try_mark_used(challenge.id, now):
            return self._fail(OtpFailure.ALREADY_CONSUMED, purpose)

        logger.info(f"Consumed {purpose.value} challenge {challenge.id}")
        return OtpConsumeResult(success=True)

    async def get_active(
        self, owner_key: str, purpose: OtpPurpose, correlation_id: str | None
    ) -> OtpChallenge | None:
        """Current challenge if it is unused and unexpired."""
        challenge = await self._challenges.get_latest(owner_key, purpose, correlation_id)
        if challenge is None or challenge.used_at is not None:
            return None
        if self._clock.now() > challenge.expires_at:
            return None
        return challenge

    async def revoke(
        self, owner_key: str, purpose: OtpPurpose, correlation_id: str | None = None
    ) -> int:
        return await self._challenges.revoke_active(
            owner_key, purpose, self._clock.now(), correlation_id
        )

    @staticmethod
    def _is_locked(challenge: OtpChallenge, policy: OtpPolicy, now: datetime) -> bool:
        if challenge.locked_until is not None and challenge.locked_until > now:
            return True
        return challenge.failed_attempts >= policy.max_attempts

    @staticmethod
    def _fail(reason: OtpFailure, purpose: OtpPurpose) -> OtpConsumeResult:
        logger.info(f"{purpose.value} challenge rejected: {reason.value}")
        return OtpConsumeResult(success=False, failure=reason)


def _clean(value: str | None, max_length: int) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()[:max_length]
