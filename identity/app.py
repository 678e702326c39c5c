"""Composition root: wire stores, services and the HTTP app together."""

import logging
from dataclasses import dataclass

from fastapi import FastAPI

from api.errors import register_error_handlers
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import (
    get_database_url,
    get_email_config,
    get_hmac_secret,
    get_valkey_url,
)
from identity.api import create_identity_router
from identity.config import IdentityConfig
from identity.crypto import CryptoPrimitives
from identity.database import (
    PostgresOtpChallengeRepository,
    PostgresSecuritySettingsProvider,
    PostgresUserInviteRepository,
    PostgresUserRepository,
)
from identity.interfaces import (
    EmailSender,
    OtpChallengeRepository,
    SecuritySettingsProvider,
    UserInviteRepository,
    UserRepository,
)
from identity.invites import InviteService
from identity.notifications import GatewayEmailSender
from identity.otp import OtpChallengeEngine
from identity.password_change import PasswordChangeService
from identity.passwords import PasswordHasher
from identity.rate_limiter import RateLimiter
from identity.security_logger import SecurityLogger
from identity.security_middleware import AuthMiddleware
from identity.service import AuthService
from identity.session import SessionManager
from utils.timezone import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class IdentityServices:
    auth: AuthService
    invites: InviteService
    password_change: PasswordChangeService
    sessions: SessionManager
    security_logger: SecurityLogger
    users: UserRepository


def build_services(
    config: IdentityConfig,
    crypto: CryptoPrimitives,
    users: UserRepository,
    challenges: OtpChallengeRepository,
    invites: UserInviteRepository,
    email_sender: EmailSender,
    settings_provider: SecuritySettingsProvider,
    valkey: ValkeyClient,
    security_logger: SecurityLogger,
    clock: Clock | None = None,
) -> IdentityServices:
    """Build the services over the given stores. Each collaborator is shared."""
    clock = clock or SystemClock()
    hasher = PasswordHasher(rounds=config.password_hash_rounds)
    otp_engine = OtpChallengeEngine(challenges, crypto, clock)
    rate_limiter = RateLimiter(challenges, clock)

    return IdentityServices(
        auth=AuthService(
            config, users, otp_engine, rate_limiter, hasher, email_sender, settings_provider, clock
        ),
        invites=InviteService(
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
        ),
        password_change=PasswordChangeService(
            users, otp_engine, rate_limiter, hasher, email_sender, settings_provider, clock
        ),
        sessions=SessionManager(valkey, config, users, clock),
        security_logger=security_logger,
        users=users,
    )


def create_app(services: IdentityServices) -> FastAPI:
    app = FastAPI(title="LocalSEO Identity")
    register_error_handlers(app)
    app.add_middleware(AuthMiddleware, session_manager=services.sessions)
    app.include_router(
        create_identity_router(
            services.auth,
            services.invites,
            services.password_change,
            services.sessions,
            services.security_logger,
            services.users,
        ),
        prefix="/auth",
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def create_app_from_vault(config: IdentityConfig | None = None) -> FastAPI:
    """Production wiring: secrets from Vault, Postgres stores, gateway email."""
    config = config or IdentityConfig()
    postgres = PostgresClient(get_database_url())
    valkey = ValkeyClient(get_valkey_url())
    email = get_email_config()
    gateway = EmailGatewayClient(email["gateway_url"], email["api_key"], email["hmac_secret"])

    services = build_services(
        config=config,
        crypto=CryptoPrimitives(get_hmac_secret()),
        users=PostgresUserRepository(postgres),
        challenges=PostgresOtpChallengeRepository(postgres),
        invites=PostgresUserInviteRepository(postgres),
        email_sender=GatewayEmailSender(gateway),
        settings_provider=PostgresSecuritySettingsProvider(postgres),
        valkey=valkey,
        security_logger=SecurityLogger(postgres),
    )
    logger.info("Identity app wired")
    return create_app(services)
