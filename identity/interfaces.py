"""Store, email and settings interfaces consumed by the identity services.

Implementations must make every mutating method a single atomic store
operation (one conditional statement or one transaction). Services rely on
that rather than read-then-write pairs to stay correct under concurrent
requests.
"""

from datetime import datetime
from typing import Iterable, Protocol
from uuid import UUID

from identity.config import SecuritySettings
from identity.types import OtpChallenge, OtpPurpose, UserInvite, UserRecord


class UserRepository(Protocol):

    async def get_by_id(self, user_id: UUID) -> UserRecord | None:
        ...

    async def get_by_normalized_email(self, email_normalized: str) -> UserRecord | None:
        ...

    async def create_pending(
        self,
        first_name: str,
        last_name: str,
        email_address: str,
        email_normalized: str,
        now: datetime,
    ) -> UserRecord | None:
        """Insert a pending user. Returns None if the normalized email is taken."""
        ...

    async def record_failed_password_attempt(
        self,
        user_id: UUID,
        now: datetime,
        lockout_threshold: int,
        lockout_minutes: int,
    ) -> bool:
        """
        Increment failed attempts; set lockout_until when the new count reaches
        the threshold. Returns True when the user is now locked out.
        """
        ...

    async def clear_failed_password_attempts(self, user_id: UUID) -> None:
        ...

    async def update_last_login(self, user_id: UUID, now: datetime) -> None:
        ...

    async def update_password(
        self,
        user_id: UUID,
        password_hash: bytes,
        hash_version: int,
        now: datetime,
        bump_session_version: bool = False,
    ) -> bool:
        """Store a new hash and clear lockout state. Returns False if the user is gone."""
        ...


class OtpChallengeRepository(Protocol):

    async def revoke_and_create(
        self, challenge: OtpChallenge, scope_to_correlation: bool
    ) -> OtpChallenge:
        """
        In one transaction: mark other unused challenges for the same owner and
        purpose (and correlation id when scope_to_correlation) as used, then
        insert challenge.
        """
        ...

    async def get_latest(
        self, owner_key: str, purpose: OtpPurpose, correlation_id: str | None
    ) -> OtpChallenge | None:
        """Newest challenge for owner+purpose (+correlation when given), used or not."""
        ...

    async def record_failed_attempt(
        self, challenge_id: UUID, now: datetime, max_attempts: int, lock_minutes: int
    ) -> None:
        ...

    async def try_mark_used(self, challenge_id: UUID, now: datetime) -> bool:
        """Set used_at only if still unused. False means someone else got there first."""
        ...

    async def revoke_active(
        self,
        owner_key: str,
        purpose: OtpPurpose,
        now: datetime,
        correlation_id: str | None = None,
    ) -> int:
        ...

    async def latest_created_at(
        self, owner_key: str, purposes: Iterable[OtpPurpose]
    ) -> datetime | None:
        ...

    async def count_created_since(
        self, owner_key: str, purposes: Iterable[OtpPurpose], since: datetime
    ) -> int:
        ...

    async def count_created_since_for_ip(
        self, ip_address: str, purposes: Iterable[OtpPurpose], since: datetime
    ) -> int:
        ...


class UserInviteRepository(Protocol):

    async def revoke_and_create(self, invite: UserInvite) -> UserInvite:
        """In one transaction: revoke the user's active invites, then insert invite."""
        ...

    async def get_by_token_hash(self, token_hash: bytes) -> UserInvite | None:
        ...

    async def mark_expired(self, invite_id: UUID) -> None:
        ...

    async def record_failed_attempt(
        self, invite_id: UUID, now: datetime, max_attempts: int, lock_minutes: int
    ) -> None:
        ...

    async def mark_otp_sent(self, invite_id: UUID, now: datetime) -> None:
        ...

    async def mark_otp_verified(self, invite_id: UUID, now: datetime) -> None:
        ...

    async def complete(
        self,
        invite_id: UUID,
        user_id: UUID,
        password_hash: bytes,
        hash_version: int,
        use_gravatar: bool,
        now: datetime,
    ) -> bool:
        """
        Atomically mark the invite used and activate the user with the new
        password. Applies only while the invite is active, unused, unexpired
        and OTP-verified; otherwise changes nothing and returns False.
        """
        ...


class EmailSender(Protocol):
    """Delivers already-rendered codes and links. Raises EmailDeliveryError."""

    async def send_login_two_factor_code(
        self, email: str, code: str, expires_at: datetime
    ) -> None:
        ...

    async def send_forgot_password_code(
        self, email: str, code: str, reset_url: str, expires_at: datetime
    ) -> None:
        ...

    async def send_user_invite(
        self, email: str, recipient_name: str, invite_url: str, expires_at: datetime
    ) -> None:
        ...

    async def send_invite_otp(self, email: str, code: str, expires_at: datetime) -> None:
        ...

    async def send_change_password_otp(
        self, email: str, code: str, expires_at: datetime
    ) -> None:
        ...


class SecuritySettingsProvider(Protocol):

    async def get(self) -> SecuritySettings:
        """Current snapshot. Called once per operation, never cached by callers."""
        ...
