"""Shared test fixtures for the identity test suite."""

import os

import pytest
from pathlib import Path

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from fakes import (
    FakeValkey,
    FrozenClock,
    InMemoryOtpChallengeRepository,
    InMemoryUserInviteRepository,
    InMemoryUserRepository,
    RecordingEmailSender,
)
from identity.config import IdentityConfig, SecuritySettings, StaticSecuritySettingsProvider
from identity.crypto import CryptoPrimitives
from identity.invites import InviteService
from identity.otp import OtpChallengeEngine
from identity.password_change import PasswordChangeService
from identity.passwords import PasswordHasher
from identity.rate_limiter import RateLimiter
from identity.service import AuthService
from identity.session import SessionManager
from utils.user_context import clear_current_user_id

TEST_HMAC_SECRET = "test-hmac-secret-0123456789abcdef-0123456789"
TEST_PASSWORD = "Correct-Horse-42"


@pytest.fixture(autouse=True)
def reset_user_context():
    """Ensure clean user context before and after each test."""
    clear_current_user_id()
    yield
    clear_current_user_id()


# =============================================================================
# CORE FIXTURES (in-memory stores, frozen clock)
# =============================================================================


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    """Fast hashing and no forgot-password padding for tests."""
    return IdentityConfig(
        app_base_url="https://app.test.local",
        password_hash_rounds=4,
        forgot_password_min_response_ms=0,
        session_expiry_hours=1,
    )


@pytest.fixture
def settings():
    return SecuritySettings()


@pytest.fixture
def settings_provider(settings):
    return StaticSecuritySettingsProvider(settings)


@pytest.fixture
def crypto():
    return CryptoPrimitives(TEST_HMAC_SECRET)


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def users():
    return InMemoryUserRepository()


@pytest.fixture
def challenges():
    return InMemoryOtpChallengeRepository()


@pytest.fixture
def invites(users):
    return InMemoryUserInviteRepository(users)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def otp_engine(challenges, crypto, clock):
    return OtpChallengeEngine(challenges, crypto, clock)


@pytest.fixture
def rate_limiter(challenges, clock):
    return RateLimiter(challenges, clock)


@pytest.fixture
def auth_service(config, users, otp_engine, rate_limiter, hasher, email_sender, settings_provider, clock):
    return AuthService(
        config, users, otp_engine, rate_limiter, hasher, email_sender, settings_provider, clock
    )


@pytest.fixture
def invite_service(
    config, users, invites, otp_engine, rate_limiter, hasher, crypto, email_sender, settings_provider, clock
):
    return InviteService(
        config,
        users,
        invites,
        otp_engine,
        rate_limiter,
        hasher,
        crypto,
        email_sender,
        settings_provider,
        clock,
    )


@pytest.fixture
def password_change_service(
    users, otp_engine, rate_limiter, hasher, email_sender, settings_provider, clock
):
    return PasswordChangeService(
        users, otp_engine, rate_limiter, hasher, email_sender, settings_provider, clock
    )


@pytest.fixture
def fake_valkey():
    return FakeValkey()


@pytest.fixture
def session_manager(fake_valkey, config, users, clock):
    return SessionManager(fake_valkey, config, users, clock)


@pytest.fixture
def active_user(users, hasher):
    """An active user whose password is TEST_PASSWORD."""
    return users.add_user("Alex.Rivera@Example.com", TEST_PASSWORD, hasher)


# =============================================================================
# DATABASE AND VALKEY FIXTURES (integration, opt-in)
# =============================================================================


@pytest.fixture(scope="session")
def db():
    """PostgresClient against IDENTITY_TEST_DATABASE_URL; skips when unset."""
    database_url = os.getenv("IDENTITY_TEST_DATABASE_URL")
    if not database_url:
        pytest.skip("IDENTITY_TEST_DATABASE_URL not set")

    from clients.postgres_client import PostgresClient

    client = PostgresClient(database_url)
    yield client
    client.close()


@pytest.fixture(scope="session")
def valkey():
    """ValkeyClient against IDENTITY_TEST_VALKEY_URL; skips when unset."""
    valkey_url = os.getenv("IDENTITY_TEST_VALKEY_URL")
    if not valkey_url:
        pytest.skip("IDENTITY_TEST_VALKEY_URL not set")

    from clients.valkey_client import ValkeyClient

    client = ValkeyClient(valkey_url)
    yield client
    client.close()
