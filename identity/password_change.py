"""Authenticated change-password flow with an emailed confirmation code.

The caller holds an opaque correlation id between start and verify. A
successful change bumps the user's session_version, which signs out every
other session the user has open.
"""

import asyncio
import logging
from dataclasses import dataclass
from uuid import UUID

from identity.interfaces import EmailSender, SecuritySettingsProvider, UserRepository
from identity.otp import OtpChallengeEngine, OtpFailure
from identity.passwords import PasswordHasher, check_new_password
from identity.rate_limiter import RateLimiter, is_locked_out
from identity.types import FailureKind, OtpChallenge, OtpPurpose
from utils.timezone import Clock

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials."
INVALID_CHALLENGE = "This challenge is invalid or expired."
VERIFICATION_FAILED = "Verification failed. Please try again."
START_UNAVAILABLE = "Verification is temporarily unavailable. Please try again shortly."
WAIT_BEFORE_RESEND = "Please wait before requesting another verification code."
CODE_SENT = "A verification code has been sent to your email."
CODE_RESENT = "A new verification code has been sent."
CHANGE_FAILED = "Password change failed. Please try again."
PASSWORD_CHANGED = "Password changed successfully."


@dataclass
class ChangePasswordStartResult:
    success: bool
    message: str
    correlation_id: str | None = None
    failure: FailureKind | None = None
    locked_out: bool = False
    reason_code: str | None = None


@dataclass
class ChangePasswordChallengeResult:
    success: bool
    message: str
    challenge: OtpChallenge | None = None


@dataclass
class ChangePasswordVerifyResult:
    success: bool
    message: str
    failure: FailureKind | None = None
    otp_failure: OtpFailure | None = None


class PasswordChangeService:
    """Start, resend and verify change-password challenges for signed-in users."""

    def __init__(
        self,
        users: UserRepository,
        otp_engine: OtpChallengeEngine,
        rate_limiter: RateLimiter,
        hasher: PasswordHasher,
        email_sender: EmailSender,
        settings_provider: SecuritySettingsProvider,
        clock: Clock,
    ):
        self._users = users
        self._otp = otp_engine
        self._rate_limiter = rate_limiter
        self._hasher = hasher
        self._email_sender = email_sender
        self._settings_provider = settings_provider
        self._clock = clock

    async def start(
        self,
        user_id: UUID,
        current_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ChangePasswordStartResult:
        """Re-check the current password, then email a code under a new correlation id.

        A wrong current password counts toward the same lockout as sign-in.

        Raises:
            EmailDeliveryError: If the code email cannot be sent.
        """
        user = await self._users.get_by_id(user_id)
        now = self._clock.now()
        if user is None or not user.can_sign_in or is_locked_out(user.lockout_until, now):
            return self._invalid_credentials()

        settings = await self._settings_provider.get()
        verification = None
        if current_password and current_password.strip():
            verification = await asyncio.to_thread(
                self._hasher.verify_password,
                user.password_hash,
                current_password,
                user.password_hash_version,
            )
        if verification is None or not verification.matches:
            locked_out = await self._users.record_failed_password_attempt(
                user.id,
                now,
                settings.login_lockout_threshold,
                settings.login_lockout_minutes,
            )
            return self._invalid_credentials(locked_out)

        await self._users.clear_failed_password_attempts(user.id)

        policy = settings.change_password_otp_policy()
        decision = await self._rate_limiter.evaluate(
            (OtpPurpose.CHANGE_PASSWORD,), str(user.id), ip_address, policy
        )
        if not decision.allowed:
            return ChangePasswordStartResult(
                False,
                START_UNAVAILABLE,
                failure=FailureKind.RATE_LIMITED,
                reason_code=decision.reason_code,
            )

        issued = await self._otp.issue(
            OtpPurpose.CHANGE_PASSWORD, str(user.id), policy, ip_address, user_agent
        )
        await self._email_sender.send_change_password_otp(
            user.email_address, issued.code, issued.expires_at
        )

        logger.info(f"Password change started for user {user.id}")
        return ChangePasswordStartResult(True, CODE_SENT, correlation_id=issued.correlation_id)

    async def resend(
        self,
        user_id: UUID,
        correlation_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ChangePasswordStartResult:
        """Replace the code under the same correlation id."""
        challenge_result = await self.get_challenge(user_id, correlation_id)
        if not challenge_result.success:
            return ChangePasswordStartResult(
                False, INVALID_CHALLENGE, failure=FailureKind.AUTHENTICATION
            )

        user = await self._users.get_by_id(user_id)
        if user is None or not user.can_sign_in:
            return ChangePasswordStartResult(
                False, INVALID_CHALLENGE, failure=FailureKind.AUTHENTICATION
            )

        correlation_id = challenge_result.challenge.correlation_id
        settings = await self._settings_provider.get()
        policy = settings.change_password_otp_policy()
        decision = await self._rate_limiter.evaluate(
            (OtpPurpose.CHANGE_PASSWORD,), str(user.id), ip_address, policy
        )
        if not decision.allowed:
            return ChangePasswordStartResult(
                False,
                WAIT_BEFORE_RESEND,
                correlation_id=correlation_id,
                failure=FailureKind.RATE_LIMITED,
                reason_code=decision.reason_code,
            )

        issued = await self._otp.issue(
            OtpPurpose.CHANGE_PASSWORD,
            str(user.id),
            policy,
            ip_address,
            user_agent,
            correlation_id=correlation_id,
        )
        await self._email_sender.send_change_password_otp(
            user.email_address, issued.code, issued.expires_at
        )
        return ChangePasswordStartResult(True, CODE_RESENT, correlation_id=correlation_id)

    async def get_challenge(
        self, user_id: UUID, correlation_id: str | None
    ) -> ChangePasswordChallengeResult:
        if not correlation_id or not correlation_id.strip():
            return ChangePasswordChallengeResult(False, INVALID_CHALLENGE)

        challenge = await self._otp.get_active(
            str(user_id), OtpPurpose.CHANGE_PASSWORD, correlation_id.strip()
        )
        if challenge is None:
            return ChangePasswordChallengeResult(False, INVALID_CHALLENGE)
        return ChangePasswordChallengeResult(True, "", challenge=challenge)

    async def verify_and_change_password(
        self,
        user_id: UUID,
        correlation_id: str,
        code: str,
        new_password: str,
        confirm_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ChangePasswordVerifyResult:
        """Consume the code, store the new password and bump session_version.

        New-password problems are reported before the code is consumed.
        """
        challenge_result = await self.get_challenge(user_id, correlation_id)
        if not challenge_result.success:
            return ChangePasswordVerifyResult(
                False, INVALID_CHALLENGE, failure=FailureKind.AUTHENTICATION
            )

        user = await self._users.get_by_id(user_id)
        if user is None or not user.can_sign_in:
            return ChangePasswordVerifyResult(
                False, VERIFICATION_FAILED, failure=FailureKind.AUTHENTICATION
            )

        settings = await self._settings_provider.get()
        problem = check_new_password(new_password, confirm_password, settings.password_policy)
        if problem:
            return ChangePasswordVerifyResult(False, problem, failure=FailureKind.VALIDATION)

        result = await self._otp.consume(
            str(user.id),
            OtpPurpose.CHANGE_PASSWORD,
            challenge_result.challenge.correlation_id,
            code,
            settings.change_password_otp_policy(),
        )
        if not result.success:
            return ChangePasswordVerifyResult(
                False,
                VERIFICATION_FAILED,
                failure=FailureKind.AUTHENTICATION,
                otp_failure=result.failure,
            )

        password_hash = await asyncio.to_thread(self._hasher.hash_password, new_password)
        updated = await self._users.update_password(
            user.id,
            password_hash,
            self._hasher.version,
            self._clock.now(),
            bump_session_version=True,
        )
        if not updated:
            return ChangePasswordVerifyResult(
                False, CHANGE_FAILED, failure=FailureKind.INFRASTRUCTURE
            )

        await self._otp.revoke(str(user.id), OtpPurpose.CHANGE_PASSWORD)
        logger.info(f"User {user.id} changed their password")
        return ChangePasswordVerifyResult(True, PASSWORD_CHANGED)

    @staticmethod
    def _invalid_credentials(locked_out: bool = False) -> ChangePasswordStartResult:
        return ChangePasswordStartResult(
            False,
            INVALID_CREDENTIALS,
            failure=FailureKind.AUTHENTICATION,
            locked_out=locked_out,
        )
