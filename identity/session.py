"""Session token lifecycle management.

Sessions are stored in Valkey with TTL matching session expiry.
Token format is cryptographically random (secrets.token_urlsafe).

Each session remembers the user's session_version at creation. A password
change bumps that counter, so every older session fails validation.
"""

import asyncio
import logging
import secrets
from datetime import timedelta
from uuid import UUID

from clients.valkey_client import ValkeyClient
from identity.config import IdentityConfig
from identity.exceptions import SessionExpiredError, SessionRevokedError
from identity.interfaces import UserRepository
from identity.types import Session, UserRecord
from utils.timezone import Clock, SystemClock, parse_iso

logger = logging.getLogger(__name__)


class SessionManager:
    """Session token lifecycle management.

    Supports automatic session extension on activity (sliding window).
    """

    KEY_PREFIX = "session:"

    def __init__(
        self,
        valkey: ValkeyClient,
        config: IdentityConfig,
        users: UserRepository,
        clock: Clock | None = None,
    ):
        self._valkey = valkey
        self._config = config
        self._users = users
        self._clock = clock or SystemClock()

    def _key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token}"

    @property
    def _ttl_seconds(self) -> int:
        return self._config.session_expiry_hours * 3600

    async def _store(self, session: Session) -> None:
        await asyncio.to_thread(
            self._valkey.set_json,
            self._key(session.token),
            {
                "user_id": str(session.user_id),
                "session_version": session.session_version,
                "created_at": session.created_at.isoformat(),
                "expires_at": session.expires_at.isoformat(),
                "last_activity_at": session.last_activity_at.isoformat(),
            },
            expire_seconds=self._ttl_seconds,
        )

    async def create_session(self, user: UserRecord) -> Session:
        """Create a session bound to the user's current session_version."""
        token = secrets.token_urlsafe(32)
        now = self._clock.now()

        session = Session(
            token=token,
            user_id=user.id,
            session_version=user.session_version,
            created_at=now,
            expires_at=now + timedelta(hours=self._config.session_expiry_hours),
            last_activity_at=now,
        )
        await self._store(session)
        return session

    async def validate_session(self, token: str) -> tuple[Session, UserRecord]:
        """Validate a token and return the session with its current user.

        Raises:
            SessionExpiredError: Token unknown or past expiry.
            SessionRevokedError: User gone, no longer able to sign in, or
                session_version moved on.
        """
        data = await asyncio.to_thread(self._valkey.get_json, self._key(token))
        if data is None:
            raise SessionExpiredError("Session not found or expired")

        session = Session(
            token=token,
            user_id=UUID(data["user_id"]),
            session_version=data.get("session_version", 0),
            created_at=parse_iso(data["created_at"]),
            expires_at=parse_iso(data["expires_at"]),
            last_activity_at=parse_iso(data["last_activity_at"]),
        )

        # Valkey TTL normally handles this
        if self._clock.now() > session.expires_at:
            await self.revoke_session(token)
            raise SessionExpiredError("Session expired")

        user = await self._users.get_by_id(session.user_id)
        if user is None or not user.can_sign_in or user.session_version != session.session_version:
            await self.revoke_session(token)
            logger.info(f"Session for user {session.user_id} revoked")
            raise SessionRevokedError("Session is no longer valid")

        return await self._extend_session(session), user

    async def _extend_session(self, session: Session) -> Session:
        now = self._clock.now()
        updated = session.model_copy(
            update={
                "expires_at": now + timedelta(hours=self._config.session_expiry_hours),
                "last_activity_at": now,
            }
        )
        await self._store(updated)
        return updated

    async def revoke_session(self, token: str) -> None:
        """Revoke session (logout). Safe to call with nonexistent token."""
        await asyncio.to_thread(self._valkey.delete, self._key(token))
