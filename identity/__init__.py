"""Identity and credential verification for LocalSEO staff."""

from identity.exceptions import (
    IdentityError,
    EmailDeliveryError,
    SessionExpiredError,
    SessionRevokedError,
)
from identity.types import (
    UserStatus,
    InviteStatus,
    OtpPurpose,
    FailureKind,
    UserRecord,
    OtpChallenge,
    UserInvite,
    Session,
)
from identity.config import (
    PasswordPolicy,
    OtpPolicy,
    SecuritySettings,
    StaticSecuritySettingsProvider,
    IdentityConfig,
)
from identity.crypto import CryptoPrimitives
from identity.emails import normalize_email, mask_email_address
from identity.passwords import PasswordHasher, validate_password
from identity.rate_limiter import RateLimiter, RateLimitDecision
from identity.otp import OtpChallengeEngine, OtpFailure
from identity.service import AuthService
from identity.invites import InviteService
from identity.password_change import PasswordChangeService
from identity.session import SessionManager
from identity.security_logger import SecurityLogger, SecurityEvent
from identity.security_middleware import AuthMiddleware
from identity.api import create_identity_router
