"""Pydantic models and enums for the identity domain."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class UserStatus(str, Enum):
    """Lifecycle of a staff account."""

    PENDING = "pending"  # invited, no password yet
    ACTIVE = "active"
    DISABLED = "disabled"


class InviteStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OtpPurpose(str, Enum):
    """Which flow a one-time code belongs to. Codes never cross purposes."""

    LOGIN_2FA = "login_2fa"
    FORGOT_PASSWORD = "forgot_password"
    INVITE_OTP = "invite_otp"
    CHANGE_PASSWORD = "change_password"


class FailureKind(str, Enum):
    """Category of an unsuccessful flow result."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    INFRASTRUCTURE = "infrastructure"


class UserRecord(BaseModel):
    """A staff user and their credential state."""

    id: UUID
    first_name: str | None = None
    last_name: str | None = None
    email_address: str
    email_normalized: str
    password_hash: bytes | None = None
    password_hash_version: int | None = None
    is_active: bool = False
    is_admin: bool = False
    status: UserStatus = UserStatus.PENDING
    use_gravatar: bool = False
    failed_password_attempts: int = 0
    lockout_until: datetime | None = None
    session_version: int = 0
    last_login_at: datetime | None = None
    password_last_set_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @property
    def can_sign_in(self) -> bool:
        return self.is_active and self.status == UserStatus.ACTIVE


class OtpChallenge(BaseModel):
    """
    A one-time code challenge.

    Only the HMAC of the code is stored. used_at set means consumed or revoked.
    """

    id: UUID
    owner_key: str = Field(..., description="Normalized email, user id or invite id")
    purpose: OtpPurpose
    correlation_id: str = Field(..., description="Opaque handle held by the caller")
    code_hash: bytes
    expires_at: datetime
    created_at: datetime
    failed_attempts: int = 0
    used_at: datetime | None = None
    locked_until: datetime | None = None
    requested_from_ip: str | None = None
    requested_user_agent: str | None = None


class UserInvite(BaseModel):
    """An invite link issued to a pending user. Only the token HMAC is stored."""

    id: UUID
    user_id: UUID
    email_address: str
    email_normalized: str
    token_hash: bytes
    expires_at: datetime
    used_at: datetime | None = None
    created_at: datetime
    created_by_user_id: UUID | None = None
    status: InviteStatus = InviteStatus.ACTIVE
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    locked_until: datetime | None = None
    otp_verified_at: datetime | None = None
    last_otp_sent_at: datetime | None = None
    requested_from_ip: str | None = None


class Session(BaseModel):
    """An active staff session stored in Valkey."""

    token: str = Field(..., description="Session token (opaque string)")
    user_id: UUID
    session_version: int
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime


# Request payloads accepted by the HTTP router


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TwoFactorRequest(BaseModel):
    rid: str
    email: EmailStr
    code: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    rid: str
    email: EmailStr
    code: str
    new_password: str
    confirm_password: str


class InviteTokenRequest(BaseModel):
    token: str


class InviteVerifyOtpRequest(BaseModel):
    token: str
    code: str


class InviteSetPasswordRequest(BaseModel):
    token: str
    new_password: str
    confirm_password: str
    use_gravatar: bool = False


class CreateUserRequest(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr


class ChangePasswordStartRequest(BaseModel):
    current_password: str


class ChangePasswordResendRequest(BaseModel):
    correlation_id: str


class ChangePasswordVerifyRequest(BaseModel):
    correlation_id: str
    code: str
    new_password: str
    confirm_password: str
