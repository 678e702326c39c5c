"""Invite service - onboarding a staff user by emailed link, OTP and password.

Invite lifecycle:
    active -> used      (password set, user activated)
           -> expired   (validated after expires_at)
           -> revoked   (superseded by a resend)

The raw token only ever exists in the emailed link; the store keeps its HMAC.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import quote
from uuid import UUID, uuid4

from identity.config import IdentityConfig, SecuritySettings
from identity.crypto import CryptoPrimitives
from identity.emails import mask_email_address, normalize_email
from identity.exceptions import EmailDeliveryError
from identity.interfaces import (
    EmailSender,
    SecuritySettingsProvider,
    UserInviteRepository,
    UserRepository,
)
from identity.otp import OtpChallengeEngine, OtpFailure
from identity.passwords import PasswordHasher, check_new_password
from identity.rate_limiter import RateLimiter, is_locked_out
from identity.types import (
    FailureKind,
    InviteStatus,
    OtpPurpose,
    UserInvite,
    UserRecord,
    UserStatus,
)
from utils.timezone import Clock

logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 100

INVALID_LINK = "This link is invalid or expired."
OTP_FAILED = "Verification failed. Please try again."
TOO_MANY_ATTEMPTS = "Too many attempts. Please wait and try again."
VERIFY_EMAIL_FIRST = "Please verify your email first."
WAIT_BEFORE_NEW_CODE = "Please wait before requesting another code."
VERIFICATION_UNAVAILABLE = (
    "Verification is temporarily unavailable. Please contact an administrator."
)
OTP_SENT = "A verification code has been emailed to you."
ALREADY_VERIFIED = "Email already verified. You can continue to set your password."
VERIFICATION_SUCCESSFUL = "Verification successful."
DETAILS_REQUIRED = "First name, last name, and a valid email are required."
USER_EXISTS = "A user with that email already exists."
USER_CREATED = "User created and invite sent."
INVITE_EMAIL_FAILED = "User created but the invite email could not be sent. Use resend invite."
USER_NOT_FOUND = "User was not found."
ONLY_PENDING = "Only pending users can be resent an invite."
RESEND_EMAIL_FAILED = "Invite email could not be sent. Please try again."
INVITE_RESENT = "Invite resent."
PASSWORD_SET = "Password set successfully. You can now sign in."


@dataclass
class InviteResult:
    """Outcome of an admin invite action."""

    success: bool
    message: str
    user_id: UUID | None = None
    failure: FailureKind | None = None


@dataclass
class InviteTokenResult:
    success: bool
    message: str
    invite: UserInvite | None = None
    failure: FailureKind | None = None


@dataclass
class InviteOtpResult:
    success: bool
    message: str
    otp_sent: bool = False
    otp_verified: bool = False
    invite: UserInvite | None = None
    failure: FailureKind | None = None
    reason_code: str | None = None
    otp_failure: OtpFailure | None = None


@dataclass
class InviteSetPasswordResult:
    success: bool
    message: str
    user_id: UUID | None = None
    failure: FailureKind | None = None


class InviteService:
    """Creates invites and walks the invitee through OTP and password setup."""

    def __init__(
        self,
        config: IdentityConfig,
        users: UserRepository,
        invites: UserInviteRepository,
        otp_engine: OtpChallengeEngine,
        rate_limiter: RateLimiter,
        hasher: PasswordHasher,
        crypto: CryptoPrimitives,
        email_sender: EmailSender,
        settings_provider: SecuritySettingsProvider,
        clock: Clock,
    ):
        self._config = config
        self._users = users
        self._invites = invites
        self._otp = otp_engine
        self._rate_limiter = rate_limiter
        self._hasher = hasher
        self._crypto = crypto
        self._email_sender = email_sender
        self._settings_provider = settings_provider
        self._clock = clock

    async def create_user_and_invite(
        self,
        first_name: str,
        last_name: str,
        email: str,
        created_by_user_id: UUID | None,
        app_base_url: str | None = None,
        ip_address: str | None = None,
    ) -> InviteResult:
        """Create a pending user and email them an invite link.

        An email failure still leaves the pending user in place; the result
        carries the new user id so the admin can resend.
        """
        first = _normalize_name(first_name)
        last = _normalize_name(last_name)
        email_normalized = normalize_email(email)
        if first is None or last is None or "@" not in email_normalized:
            return InviteResult(False, DETAILS_REQUIRED, failure=FailureKind.VALIDATION)

        existing = await self._users.get_by_normalized_email(email_normalized)
        if existing is not None:
            return InviteResult(False, USER_EXISTS, failure=FailureKind.VALIDATION)

        user = await self._users.create_pending(
            first, last, email.strip(), email_normalized, self._clock.now()
        )
        if user is None:
            return InviteResult(False, USER_EXISTS, failure=FailureKind.VALIDATION)

        try:
            await self._issue_invite(user, created_by_user_id, app_base_url, ip_address)
        except EmailDeliveryError:
            logger.exception(f"Invite email for new user {user.id} failed")
            return InviteResult(
                False, INVITE_EMAIL_FAILED, user_id=user.id, failure=FailureKind.INFRASTRUCTURE
            )

        logger.info(f"User {user.id} created and invited by {created_by_user_id}")
        return InviteResult(True, USER_CREATED, user_id=user.id)

    async def resend_invite(
        self,
        user_id: UUID,
        created_by_user_id: UUID | None,
        app_base_url: str | None = None,
        ip_address: str | None = None,
    ) -> InviteResult:
        """Revoke the user's open invites and send a fresh link."""
        user = await self._users.get_by_id(user_id)
        if user is None:
            return InviteResult(False, USER_NOT_FOUND, failure=FailureKind.VALIDATION)
        if user.status != UserStatus.PENDING:
            return InviteResult(False, ONLY_PENDING, user_id=user.id, failure=FailureKind.VALIDATION)

        try:
            await self._issue_invite(user, created_by_user_id, app_base_url, ip_address)
        except EmailDeliveryError:
            logger.exception(f"Invite resend for user {user.id} failed")
            return InviteResult(
                False, RESEND_EMAIL_FAILED, user_id=user.id, failure=FailureKind.INFRASTRUCTURE
            )

        logger.info(f"Invite resent to user {user.id} by {created_by_user_id}")
        return InviteResult(True, INVITE_RESENT, user_id=user.id)

    async def validate_invite_token(self, token: str | None) -> InviteTokenResult:
        """Resolve a token to a usable invite. Every rejection looks the same."""
        ok, token_bytes = self._crypto.try_base64url_decode(token)
        if not ok or len(token_bytes) != self._config.invite_token_bytes:
            return self._invalid_link()

        token_hash = self._crypto.compute_hmac_sha256(token_bytes)
        invite = await self._invites.get_by_token_hash(token_hash)
        if invite is None or not self._crypto.fixed_time_equals(invite.token_hash, token_hash):
            return self._invalid_link()

        now = self._clock.now()
        if is_locked_out(invite.locked_until, now):
            return self._invalid_link()
        if invite.status != InviteStatus.ACTIVE or invite.used_at is not None:
            return self._invalid_link()
        if now > invite.expires_at:
            await self._invites.mark_expired(invite.id)
            return self._invalid_link()

        return InviteTokenResult(True, "", invite=invite)

    async def send_otp(self, token: str | None, ip_address: str | None = None) -> InviteOtpResult:
        """Email a verification code for the invite, subject to rate limits.

        Raises:
            EmailDeliveryError: If the code email cannot be sent.
        """
        validation = await self.validate_invite_token(token)
        if not validation.success:
            return InviteOtpResult(False, INVALID_LINK, failure=FailureKind.AUTHENTICATION)

        invite = validation.invite
        if invite.otp_verified_at is not None:
            return InviteOtpResult(True, ALREADY_VERIFIED, otp_verified=True, invite=invite)

        settings = await self._settings_provider.get()
        policy = settings.invite_otp_policy()
        owner_key = str(invite.id)
        decision = await self._rate_limiter.evaluate(
            (OtpPurpose.INVITE_OTP,), owner_key, ip_address, policy
        )
        if not decision.allowed:
            message = (
                WAIT_BEFORE_NEW_CODE if decision.reason_code == "cooldown" else VERIFICATION_UNAVAILABLE
            )
            return InviteOtpResult(
                False,
                message,
                invite=invite,
                failure=FailureKind.RATE_LIMITED,
                reason_code=decision.reason_code,
            )

        issued = await self._otp.issue(OtpPurpose.INVITE_OTP, owner_key, policy, ip_address)
        await self._invites.mark_otp_sent(invite.id, self._clock.now())
        await self._email_sender.send_invite_otp(
            invite.email_address, issued.code, issued.expires_at
        )

        refreshed = await self._invites.get_by_token_hash(invite.token_hash)
        return InviteOtpResult(True, OTP_SENT, otp_sent=True, invite=refreshed or invite)

    async def verify_otp(
        self, token: str | None, code: str | None, ip_address: str | None = None
    ) -> InviteOtpResult:
        """Check the invite code; a wrong code also counts against the whole invite."""
        validation = await self.validate_invite_token(token)
        if not validation.success:
            return InviteOtpResult(False, INVALID_LINK, failure=FailureKind.AUTHENTICATION)

        invite = validation.invite
        if invite.otp_verified_at is not None:
            return InviteOtpResult(True, VERIFICATION_SUCCESSFUL, otp_verified=True, invite=invite)

        if not code or not code.strip():
            return InviteOtpResult(False, OTP_FAILED, invite=invite, failure=FailureKind.VALIDATION)

        settings = await self._settings_provider.get()
        result = await self._otp.consume(
            str(invite.id), OtpPurpose.INVITE_OTP, None, code, settings.invite_otp_policy()
        )
        if not result.success:
            return await self._otp_failure(invite, result.failure, settings, ip_address)

        await self._invites.mark_otp_verified(invite.id, self._clock.now())
        logger.info(f"Invite {invite.id} email verified")

        refreshed = await self._invites.get_by_token_hash(invite.token_hash)
        return InviteOtpResult(
            True, VERIFICATION_SUCCESSFUL, otp_verified=True, invite=refreshed or invite
        )

    async def set_password(
        self,
        token: str | None,
        new_password: str | None,
        confirm_password: str | None,
        use_gravatar: bool = False,
    ) -> InviteSetPasswordResult:
        """Set the invitee's password and activate the account in one store transaction."""
        validation = await self.validate_invite_token(token)
        if not validation.success:
            return InviteSetPasswordResult(False, INVALID_LINK, failure=FailureKind.AUTHENTICATION)

        invite = validation.invite
        if invite.otp_verified_at is None:
            return InviteSetPasswordResult(
                False, VERIFY_EMAIL_FIRST, user_id=invite.user_id, failure=FailureKind.VALIDATION
            )

        settings = await self._settings_provider.get()
        problem = check_new_password(new_password, confirm_password, settings.password_policy)
        if problem:
            return InviteSetPasswordResult(
                False, problem, user_id=invite.user_id, failure=FailureKind.VALIDATION
            )

        password_hash = await asyncio.to_thread(self._hasher.hash_password, new_password)
        completed = await self._invites.complete(
            invite.id,
            invite.user_id,
            password_hash,
            self._hasher.version,
            use_gravatar,
            self._clock.now(),
        )
        if not completed:
            return InviteSetPasswordResult(False, INVALID_LINK, failure=FailureKind.AUTHENTICATION)

        logger.info(f"Invite {invite.id} completed, user {invite.user_id} activated")
        return InviteSetPasswordResult(True, PASSWORD_SET, user_id=invite.user_id)

    def mask_email_address(self, email: str | None) -> str:
        return mask_email_address(email)

    async def _issue_invite(
        self,
        user: UserRecord,
        created_by_user_id: UUID | None,
        app_base_url: str | None,
        ip_address: str | None,
    ) -> UserInvite:
        settings = await self._settings_provider.get()
        now = self._clock.now()
        token_bytes = self._crypto.generate_random_bytes(self._config.invite_token_bytes)

        invite = UserInvite(
            id=uuid4(),
            user_id=user.id,
            email_address=user.email_address,
            email_normalized=user.email_normalized,
            token_hash=self._crypto.compute_hmac_sha256(token_bytes),
            expires_at=now + timedelta(hours=settings.invite_expiry_hours),
            created_at=now,
            created_by_user_id=created_by_user_id,
            requested_from_ip=ip_address,
        )
        invite = await self._invites.revoke_and_create(invite)

        token = self._crypto.base64url_encode(token_bytes)
        base_url = (app_base_url or self._config.app_base_url).rstrip("/")
        recipient_name = f"{user.first_name or ''} {user.last_name or ''}".strip()
        await self._email_sender.send_user_invite(
            user.email_address,
            recipient_name,
            f"{base_url}/invite/accept?token={quote(token)}",
            invite.expires_at,
        )
        return invite

    async def _otp_failure(
        self,
        invite: UserInvite,
        failure: OtpFailure | None,
        settings: SecuritySettings,
        ip_address: str | None,
    ) -> InviteOtpResult:
        if failure == OtpFailure.LOCKED:
            return InviteOtpResult(
                False,
                TOO_MANY_ATTEMPTS,
                invite=invite,
                failure=FailureKind.AUTHENTICATION,
                otp_failure=failure,
            )

        if failure == OtpFailure.MISMATCH:
            # Code-level lock resets with every new code; this one spans the invite.
            await self._invites.record_failed_attempt(
                invite.id,
                self._clock.now(),
                settings.invite_max_attempts,
                settings.invite_lock_minutes,
            )
            logger.warning(f"Invite {invite.id} OTP mismatch from {ip_address}")

        return InviteOtpResult(
            False, OTP_FAILED, invite=invite, failure=FailureKind.AUTHENTICATION, otp_failure=failure
        )

    @staticmethod
    def _invalid_link() -> InviteTokenResult:
        return InviteTokenResult(False, INVALID_LINK, failure=FailureKind.AUTHENTICATION)


def _normalize_name(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()[:NAME_MAX_LENGTH]
