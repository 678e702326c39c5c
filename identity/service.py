"""Authentication service - password sign-in with emailed 2FA codes.

Also owns forgot/reset password. Every failure a visitor could use to probe
for accounts returns the same message; the result's other fields are for the
caller's audit log and never reach the response body.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from urllib.parse import quote
from uuid import UUID

from identity.config import IdentityConfig
from identity.emails import normalize_email
from identity.interfaces import EmailSender, SecuritySettingsProvider, UserRepository
from identity.otp import OtpChallengeEngine, OtpFailure
from identity.passwords import PasswordHasher, check_new_password
from identity.rate_limiter import RateLimiter, is_locked_out
from identity.types import FailureKind, OtpPurpose, UserRecord
from utils.timezone import Clock

logger = logging.getLogger(__name__)

# Login and forgot-password codes share one per-email issuance budget.
EMAIL_CODE_PURPOSES = (OtpPurpose.LOGIN_2FA, OtpPurpose.FORGOT_PASSWORD)

INVALID_CREDENTIALS = "Invalid credentials."
SIGN_IN_UNAVAILABLE = "Sign-in temporarily unavailable. Please try again shortly."
CODE_SENT = "A verification code was sent to your email address."
VERIFICATION_FAILED = "Verification failed."
LOGIN_SUCCESSFUL = "Login successful."
FORGOT_PASSWORD_MESSAGE = "If that email exists, we've sent a code to continue."
RESET_FAILED = "Unable to reset password with the details provided."
RESET_SUCCESSFUL = "Password reset successful."


@dataclass
class BeginLoginResult:
    """Result of the password step. rid is the handle for the 2FA step."""

    success: bool
    message: str
    rid: str | None = None
    email_address: str | None = None
    user_id: UUID | None = None
    failure: FailureKind | None = None
    locked_out: bool = False
    reason_code: str | None = None


@dataclass
class TwoFactorLoginResult:
    success: bool
    message: str
    user: UserRecord | None = None
    failure: FailureKind | None = None
    otp_failure: OtpFailure | None = None


@dataclass
class ResetPasswordResult:
    success: bool
    message: str
    user: UserRecord | None = None
    failure: FailureKind | None = None
    otp_failure: OtpFailure | None = None


class AuthService:
    """Orchestrates password login, login lockout, 2FA and password reset.

    Handles:
    - Password verification with per-user lockout
    - Login 2FA code issuance and completion
    - Forgot password (enumeration-safe) and reset
    """

    def __init__(
        self,
        config: IdentityConfig,
        users: UserRepository,
        otp_engine: OtpChallengeEngine,
        rate_limiter: RateLimiter,
        hasher: PasswordHasher,
        email_sender: EmailSender,
        settings_provider: SecuritySettingsProvider,
        clock: Clock,
    ):
        self._config = config
        self._users = users
        self._otp = otp_engine
        self._rate_limiter = rate_limiter
        self._hasher = hasher
        self._email_sender = email_sender
        self._settings_provider = settings_provider
        self._clock = clock

    async def begin_login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> BeginLoginResult:
        """Verify email and password, then email a login code.

        Flow:
        1. Load user by normalized email
        2. Reject unknown, inactive, non-active or locked-out users
        3. Verify password (failures count toward lockout)
        4. Upgrade the hash if needed, clear failed attempts
        5. Check the per-email / per-IP issuance limits
        6. Issue and email the login code

        Raises:
            EmailDeliveryError: If the code email cannot be sent.
        """
        email_normalized = normalize_email(email)
        if not email_normalized or not password:
            return self._invalid_credentials()

        settings = await self._settings_provider.get()
        user = await self._users.get_by_normalized_email(email_normalized)
        now = self._clock.now()

        if user is None:
            logger.info("Login failed: unknown email")
            return self._invalid_credentials()

        if not user.can_sign_in:
            logger.info(f"Login failed: user {user.id} is not active")
            return self._invalid_credentials(user.id)

        if is_locked_out(user.lockout_until, now):
            logger.warning(f"Login failed: user {user.id} is locked out")
            return self._invalid_credentials(user.id, locked_out=True)

        verification = await asyncio.to_thread(
            self._hasher.verify_password,
            user.password_hash,
            password,
            user.password_hash_version,
        )
        if not verification.matches:
            locked_out = await self._users.record_failed_password_attempt(
                user.id,
                now,
                settings.login_lockout_threshold,
                settings.login_lockout_minutes,
            )
            if locked_out:
                logger.warning(f"User {user.id} locked out after failed password attempts")
            return self._invalid_credentials(user.id, locked_out=locked_out)

        if verification.needs_rehash:
            upgraded = await asyncio.to_thread(self._hasher.hash_password, password)
            await self._users.update_password(user.id, upgraded, self._hasher.version, now)

        await self._users.clear_failed_password_attempts(user.id)

        policy = settings.login_code_policy()
        decision = await self._rate_limiter.evaluate(
            EMAIL_CODE_PURPOSES, email_normalized, ip_address, policy
        )
        if not decision.allowed:
            return BeginLoginResult(
                success=False,
                message=SIGN_IN_UNAVAILABLE,
                user_id=user.id,
                failure=FailureKind.RATE_LIMITED,
                reason_code=decision.reason_code,
            )

        issued = await self._otp.issue(
            OtpPurpose.LOGIN_2FA, email_normalized, policy, ip_address, user_agent
        )
        await self._email_sender.send_login_two_factor_code(
            user.email_address, issued.code, issued.expires_at
        )

        return BeginLoginResult(
            success=True,
            message=CODE_SENT,
            rid=issued.correlation_id,
            email_address=user.email_address,
            user_id=user.id,
        )

    async def complete_two_factor_login(
        self,
        rid: str,
        email: str,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TwoFactorLoginResult:
        """Consume the login code and return the user for session creation."""
        email_normalized = normalize_email(email)
        if not rid or not rid.strip() or not email_normalized:
            return TwoFactorLoginResult(
                success=False, message=VERIFICATION_FAILED, failure=FailureKind.AUTHENTICATION
            )

        settings = await self._settings_provider.get()
        result = await self._otp.consume(
            email_normalized,
            OtpPurpose.LOGIN_2FA,
            rid.strip(),
            code,
            settings.login_code_policy(),
        )
        if not result.success:
            return TwoFactorLoginResult(
                success=False,
                message=VERIFICATION_FAILED,
                failure=FailureKind.AUTHENTICATION,
                otp_failure=result.failure,
            )

        now = self._clock.now()
        user = await self._users.get_by_normalized_email(email_normalized)
        if user is None or not user.can_sign_in or is_locked_out(user.lockout_until, now):
            return TwoFactorLoginResult(
                success=False, message=VERIFICATION_FAILED, failure=FailureKind.AUTHENTICATION
            )

        await self._users.update_last_login(user.id, now)
        user = await self._users.get_by_id(user.id)
        logger.info(f"User {user.id} completed two-factor login")

        return TwoFactorLoginResult(success=True, message=LOGIN_SUCCESSFUL, user=user)

    async def request_forgot_password(
        self,
        email: str,
        app_base_url: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Send a reset code if the account exists. Always returns the same message.

        Faults are logged, not raised, and the response is padded to a minimum
        duration so neither the body nor the timing reveals whether the
        address is registered.
        """
        started = time.monotonic()
        try:
            await self._send_forgot_password_code(email, app_base_url, ip_address, user_agent)
        except Exception:
            logger.exception("Forgot password request failed")

        remaining = self._config.forgot_password_min_response_ms / 1000 - (
            time.monotonic() - started
        )
        if remaining > 0:
            await asyncio.sleep(remaining)

        return FORGOT_PASSWORD_MESSAGE

    async def _send_forgot_password_code(
        self,
        email: str,
        app_base_url: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        email_normalized = normalize_email(email)
        if not email_normalized:
            return

        user = await self._users.get_by_normalized_email(email_normalized)
        if user is None or not user.can_sign_in:
            logger.info("Forgot password: no eligible account")
            return

        settings = await self._settings_provider.get()
        policy = settings.login_code_policy()
        decision = await self._rate_limiter.evaluate(
            EMAIL_CODE_PURPOSES, email_normalized, ip_address, policy
        )
        if not decision.allowed:
            return

        issued = await self._otp.issue(
            OtpPurpose.FORGOT_PASSWORD, email_normalized, policy, ip_address, user_agent
        )
        base_url = (app_base_url or self._config.app_base_url).rstrip("/")
        reset_url = f"{base_url}/reset-password?rid={quote(issued.correlation_id)}"
        await self._email_sender.send_forgot_password_code(
            user.email_address, issued.code, reset_url, issued.expires_at
        )

    async def reset_password(
        self,
        rid: str,
        email: str,
        code: str,
        new_password: str,
        confirm_password: str,
    ) -> ResetPasswordResult:
        """Consume a forgot-password code and set the new password.

        Input and policy problems are reported before the code is consumed,
        so a typo in the new password does not burn the code.
        """
        email_normalized = normalize_email(email)
        if not rid or not rid.strip() or not email_normalized:
            return ResetPasswordResult(
                success=False, message=RESET_FAILED, failure=FailureKind.AUTHENTICATION
            )

        settings = await self._settings_provider.get()
        validation_error = check_new_password(
            new_password, confirm_password, settings.password_policy
        )
        if validation_error:
            return ResetPasswordResult(
                success=False, message=validation_error, failure=FailureKind.VALIDATION
            )

        result = await self._otp.consume(
            email_normalized,
            OtpPurpose.FORGOT_PASSWORD,
            rid.strip(),
            code,
            settings.login_code_policy(),
        )
        if not result.success:
            return ResetPasswordResult(
                success=False,
                message=RESET_FAILED,
                failure=FailureKind.AUTHENTICATION,
                otp_failure=result.failure,
            )

        user = await self._users.get_by_normalized_email(email_normalized)
        if user is None or not user.can_sign_in:
            return ResetPasswordResult(
                success=False, message=RESET_FAILED, failure=FailureKind.AUTHENTICATION
            )

        password_hash = await asyncio.to_thread(self._hasher.hash_password, new_password)
        updated = await self._users.update_password(
            user.id, password_hash, self._hasher.version, self._clock.now()
        )
        if not updated:
            return ResetPasswordResult(
                success=False, message=RESET_FAILED, failure=FailureKind.AUTHENTICATION
            )

        logger.info(f"User {user.id} reset their password")
        user = await self._users.get_by_id(user.id)
        return ResetPasswordResult(success=True, message=RESET_SUCCESSFUL, user=user)

    @staticmethod
    def _invalid_credentials(
        user_id: UUID | None = None, locked_out: bool = False
    ) -> BeginLoginResult:
        return BeginLoginResult(
            success=False,
            message=INVALID_CREDENTIALS,
            user_id=user_id,
            failure=FailureKind.AUTHENTICATION,
            locked_out=locked_out,
        )
