"""Security event logging for the identity audit trail.

Append-only log to the security_events table. Never holds codes, tokens or
passwords; details carry only outcome fields such as reason codes.
"""

import asyncio
import logging
from enum import Enum
from typing import Any
from uuid import UUID

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.timezone import Clock, SystemClock

logger = logging.getLogger(__name__)


class SecurityEvent(Enum):
    """Identity security event types."""

    LOGIN_STARTED = "login_started"
    LOGIN_FAILED = "login_failed"
    LOGIN_RATE_LIMITED = "login_rate_limited"
    TWO_FACTOR_SUCCEEDED = "two_factor_succeeded"
    TWO_FACTOR_FAILED = "two_factor_failed"
    FORGOT_PASSWORD_REQUESTED = "forgot_password_requested"
    PASSWORD_RESET = "password_reset"
    PASSWORD_RESET_FAILED = "password_reset_failed"
    INVITE_CREATED = "invite_created"
    INVITE_RESENT = "invite_resent"
    INVITE_OTP_SENT = "invite_otp_sent"
    INVITE_OTP_FAILED = "invite_otp_failed"
    INVITE_VERIFIED = "invite_verified"
    INVITE_COMPLETED = "invite_completed"
    PASSWORD_CHANGE_STARTED = "password_change_started"
    PASSWORD_CHANGE_FAILED = "password_change_failed"
    PASSWORD_CHANGED = "password_changed"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"


class SecurityLogger:
    """Append-only security event logger."""

    def __init__(self, postgres: PostgresClient, clock: Clock | None = None):
        self._db = postgres
        self._clock = clock or SystemClock()

    async def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log security event to database."""
        await asyncio.to_thread(
            self._db.execute_rowcount,
            """INSERT INTO security_events
               (event_type, email, user_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)""",
            (
                event.value,
                email,
                user_id,
                ip_address,
                user_agent[:512] if user_agent else None,
                Json(details) if details else None,
                self._clock.now(),
            ),
        )

    async def get_recent_events(
        self,
        email: str | None = None,
        user_id: UUID | None = None,
        event_type: SecurityEvent | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query recent security events with optional filters."""
        conditions = []
        params = []

        if email:
            conditions.append("email = %s")
            params.append(email)

        if user_id:
            conditions.append("user_id = %s")
            params.append(user_id)

        if event_type:
            conditions.append("event_type = %s")
            params.append(event_type.value)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        return await asyncio.to_thread(
            self._db.execute,
            f"""SELECT id, event_type, email, user_id, ip_address, user_agent, details, created_at
                FROM security_events
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT %s""",
            tuple(params),
        )
