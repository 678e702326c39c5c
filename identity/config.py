"""Identity configuration and the security-settings snapshot.

SecuritySettings holds every policy number the flows use (lockout, OTP
expiry, cooldowns, hourly caps, attempt limits, password policy). A provider
hands out one immutable snapshot per operation; services never hardcode these
values.
"""

from pydantic import BaseModel, ConfigDict, Field


class PasswordPolicy(BaseModel):
    """Password strength rules applied when a password is set or changed."""

    model_config = ConfigDict(frozen=True)

    minimum_length: int = Field(default=12, ge=8, le=128)
    requires_number: bool = True
    requires_capital_letter: bool = True
    requires_special_character: bool = True


class OtpPolicy(BaseModel):
    """Per-purpose OTP policy handed to the challenge engine and rate limiter."""

    model_config = ConfigDict(frozen=True)

    expiry_minutes: int = Field(ge=1)
    max_attempts: int = Field(ge=1)
    lock_minutes: int = Field(ge=1)
    cooldown_seconds: int = Field(ge=0)
    max_per_hour_owner: int = Field(ge=1)
    max_per_hour_ip: int = Field(ge=1)
    owner_limit_reason: str = Field(
        default="max_per_hour_email",
        description="Reason code reported when the per-owner hourly cap is hit",
    )


class SecuritySettings(BaseModel):
    """
    Immutable snapshot of admin-managed security settings.

    Bounds mirror what the settings screen accepts. Values read from storage
    go through clamped() so a bad row can never disable a control.
    """

    model_config = ConfigDict(frozen=True)

    # Login lockout
    login_lockout_threshold: int = Field(default=5, ge=1, le=50)
    login_lockout_minutes: int = Field(default=15, ge=1, le=1440)

    # Login 2FA and forgot-password email codes
    email_code_cooldown_seconds: int = Field(default=60, ge=10, le=3600)
    email_code_max_per_hour_per_email: int = Field(default=10, ge=1, le=200)
    email_code_max_per_hour_per_ip: int = Field(default=50, ge=1, le=1000)
    email_code_expiry_minutes: int = Field(default=10, ge=1, le=60)
    email_code_max_failed_attempts: int = Field(default=5, ge=1, le=20)
    email_code_lock_minutes: int = Field(default=15, ge=1, le=1440)

    # Invites
    invite_expiry_hours: int = Field(default=24, ge=1, le=720)
    invite_max_attempts: int = Field(default=10, ge=1, le=50)
    invite_lock_minutes: int = Field(default=15, ge=1, le=1440)
    invite_otp_expiry_minutes: int = Field(default=10, ge=1, le=60)
    invite_otp_cooldown_seconds: int = Field(default=60, ge=10, le=3600)
    invite_otp_max_per_hour_per_invite: int = Field(default=3, ge=1, le=50)
    invite_otp_max_per_hour_per_ip: int = Field(default=25, ge=1, le=1000)
    invite_otp_max_attempts: int = Field(default=5, ge=1, le=20)
    invite_otp_lock_minutes: int = Field(default=15, ge=1, le=1440)

    # Authenticated change password
    change_password_otp_expiry_minutes: int = Field(default=10, ge=1, le=60)
    change_password_otp_cooldown_seconds: int = Field(default=60, ge=10, le=3600)
    change_password_otp_max_per_hour_per_user: int = Field(default=3, ge=1, le=50)
    change_password_otp_max_per_hour_per_ip: int = Field(default=25, ge=1, le=1000)
    change_password_otp_max_attempts: int = Field(default=5, ge=1, le=20)
    change_password_otp_lock_minutes: int = Field(default=15, ge=1, le=1440)

    password_policy: PasswordPolicy = Field(default_factory=PasswordPolicy)

    @classmethod
    def clamped(cls, **values) -> "SecuritySettings":
        """
        Build a snapshot, pulling out-of-range integers back into bounds.

        Unknown keys are ignored and None falls back to the field default.
        """
        cleaned = {}
        for name, field in cls.model_fields.items():
            value = values.get(name)
            if value is None:
                continue
            if name == "password_policy":
                cleaned[name] = value
                continue
            lower, upper = _field_bounds(field)
            value = int(value)
            if lower is not None:
                value = max(lower, value)
            if upper is not None:
                value = min(upper, value)
            cleaned[name] = value
        return cls(**cleaned)

    def login_code_policy(self) -> OtpPolicy:
        """Policy shared by login 2FA and forgot-password codes."""
        return OtpPolicy(
            expiry_minutes=self.email_code_expiry_minutes,
            max_attempts=self.email_code_max_failed_attempts,
            lock_minutes=self.email_code_lock_minutes,
            cooldown_seconds=self.email_code_cooldown_seconds,
            max_per_hour_owner=self.email_code_max_per_hour_per_email,
            max_per_hour_ip=self.email_code_max_per_hour_per_ip,
            owner_limit_reason="max_per_hour_email",
        )

    def invite_otp_policy(self) -> OtpPolicy:
        return OtpPolicy(
            expiry_minutes=self.invite_otp_expiry_minutes,
            max_attempts=self.invite_otp_max_attempts,
            lock_minutes=self.invite_otp_lock_minutes,
            cooldown_seconds=self.invite_otp_cooldown_seconds,
            max_per_hour_owner=self.invite_otp_max_per_hour_per_invite,
            max_per_hour_ip=self.invite_otp_max_per_hour_per_ip,
            owner_limit_reason="max_per_hour_invite",
        )

    def change_password_otp_policy(self) -> OtpPolicy:
        return OtpPolicy(
            expiry_minutes=self.change_password_otp_expiry_minutes,
            max_attempts=self.change_password_otp_max_attempts,
            lock_minutes=self.change_password_otp_lock_minutes,
            cooldown_seconds=self.change_password_otp_cooldown_seconds,
            max_per_hour_owner=self.change_password_otp_max_per_hour_per_user,
            max_per_hour_ip=self.change_password_otp_max_per_hour_per_ip,
            owner_limit_reason="max_per_hour_user",
        )


def _field_bounds(field) -> tuple[int | None, int | None]:
    """Read ge/le constraints from a pydantic FieldInfo."""
    lower = upper = None
    for constraint in field.metadata:
        if getattr(constraint, "ge", None) is not None:
            lower = constraint.ge
        if getattr(constraint, "le", None) is not None:
            upper = constraint.le
    return lower, upper


class StaticSecuritySettingsProvider:
    """Provider returning a fixed snapshot (startup config, tests)."""

    def __init__(self, settings: SecuritySettings | None = None):
        self._settings = settings or SecuritySettings()

    async def get(self) -> SecuritySettings:
        return self._settings


class IdentityConfig(BaseModel):
    """
    Identity application configuration.

    Policy numbers live in SecuritySettings; this covers deployment concerns.
    Secrets (HMAC key, gateway credentials) come from Vault, not from here.
    """

    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL used to build invite and reset links",
    )
    app_name: str = Field(
        default="LocalSEO",
        description="Application name for emails",
    )

    session_expiry_hours: int = Field(
        default=12,
        description="Session lifetime in hours, extended on activity",
        ge=1,
        le=720,
    )

    password_hash_rounds: int = Field(
        default=12,
        description="bcrypt cost factor for new password hashes",
        ge=4,
        le=16,
    )

    forgot_password_min_response_ms: int = Field(
        default=400,
        description="Minimum forgot-password response time, flattens timing differences",
        ge=0,
        le=5000,
    )

    invite_token_bytes: int = Field(
        default=32,
        description="Random bytes in an invite token",
        ge=16,
        le=64,
    )
