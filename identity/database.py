"""Postgres-backed stores for the identity core.

Tables: users, otp_challenges, user_invites, security_settings.
These are read during sign-in before any user context exists.

psycopg2 is synchronous, so every method hands its statement to a worker
thread. Each mutation is one conditional statement or one transaction.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

from clients.postgres_client import PostgresClient, RollbackTransaction
from identity.config import PasswordPolicy, SecuritySettings
from identity.types import OtpChallenge, OtpPurpose, UserInvite, UserRecord

logger = logging.getLogger(__name__)

_USER_COLUMNS = """id, first_name, last_name, email_address, email_normalized,
       password_hash, password_hash_version, is_active, is_admin, status,
       use_gravatar, failed_password_attempts, lockout_until, session_version,
       last_login_at, password_last_set_at, created_at"""

_CHALLENGE_COLUMNS = """id, owner_key, purpose, correlation_id, code_hash, expires_at,
       created_at, failed_attempts, used_at, locked_until, requested_from_ip,
       requested_user_agent"""

_INVITE_COLUMNS = """id, user_id, email_address, email_normalized, token_hash, expires_at,
       used_at, created_at, created_by_user_id, status, attempt_count,
       last_attempt_at, locked_until, otp_verified_at, last_otp_sent_at,
       requested_from_ip"""


def _bytes_fields(row: dict[str, Any], *names: str) -> dict[str, Any]:
    """bytea comes back as memoryview."""
    for name in names:
        if row.get(name) is not None:
            row[name] = bytes(row[name])
    return row


def _user_from_row(row: dict[str, Any] | None) -> UserRecord | None:
    if row is None:
        return None
    return UserRecord.model_validate(_bytes_fields(row, "password_hash"))


def _challenge_from_row(row: dict[str, Any] | None) -> OtpChallenge | None:
    if row is None:
        return None
    return OtpChallenge.model_validate(_bytes_fields(row, "code_hash"))


def _invite_from_row(row: dict[str, Any] | None) -> UserInvite | None:
    if row is None:
        return None
    return UserInvite.model_validate(_bytes_fields(row, "token_hash"))


def _purpose_values(purposes: Iterable[OtpPurpose]) -> list[str]:
    return [purpose.value for purpose in purposes]


class PostgresUserRepository:
    """Staff users and their credential state."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    async def get_by_id(self, user_id: UUID) -> UserRecord | None:
        row = await asyncio.to_thread(
            self._db.execute_single,
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
            (user_id,),
        )
        return _user_from_row(row)

    async def get_by_normalized_email(self, email_normalized: str) -> UserRecord | None:
        row = await asyncio.to_thread(
            self._db.execute_single,
            f"SELECT {_USER_COLUMNS} FROM users WHERE email_normalized = %s",
            (email_normalized,),
        )
        return _user_from_row(row)

    async def create_pending(
        self,
        first_name: str,
        last_name: str,
        email_address: str,
        email_normalized: str,
        now: datetime,
    ) -> UserRecord | None:
        """Insert a pending user. None if the normalized email already exists."""
        row = await asyncio.to_thread(
            self._db.execute_single,
            f"""INSERT INTO users (first_name, last_name, email_address, email_normalized,
                                   is_active, is_admin, status, created_at)
                VALUES (%s, %s, %s, %s, false, false, 'pending', %s)
                ON CONFLICT (email_normalized) DO NOTHING
                RETURNING {_USER_COLUMNS}""",
            (first_name, last_name, email_address, email_normalized, now),
        )
        return _user_from_row(row)

    async def record_failed_password_attempt(
        self,
        user_id: UUID,
        now: datetime,
        lockout_threshold: int,
        lockout_minutes: int,
    ) -> bool:
        """Count a failure and lock at the threshold in a single UPDATE."""
        lockout_until = now + timedelta(minutes=lockout_minutes)
        row = await asyncio.to_thread(
            self._db.execute_single,
            """UPDATE users
               SET failed_password_attempts = failed_password_attempts + 1,
                   lockout_until = CASE
                       WHEN failed_password_attempts + 1 >= %s THEN %s
                       ELSE lockout_until
                   END
               WHERE id = %s
               RETURNING lockout_until""",
            (lockout_threshold, lockout_until, user_id),
        )
        if row is None:
            return False
        return row["lockout_until"] is not None and row["lockout_until"] > now

    async def clear_failed_password_attempts(self, user_id: UUID) -> None:
        await asyncio.to_thread(
            self._db.execute_rowcount,
            """UPDATE users
               SET failed_password_attempts = 0, lockout_until = NULL
               WHERE id = %s""",
            (user_id,),
        )

    async def update_last_login(self, user_id: UUID, now: datetime) -> None:
        await asyncio.to_thread(
            self._db.execute_rowcount,
            "UPDATE users SET last_login_at = %s WHERE id = %s",
            (now, user_id),
        )

    async def update_password(
        self,
        user_id: UUID,
        password_hash: bytes,
        hash_version: int,
        now: datetime,
        bump_session_version: bool = False,
    ) -> bool:
        count = await asyncio.to_thread(
            self._db.execute_rowcount,
            """UPDATE users
               SET password_hash = %s,
                   password_hash_version = %s,
                   password_last_set_at = %s,
                   failed_password_attempts = 0,
                   lockout_until = NULL,
                   session_version = session_version + %s
               WHERE id = %s""",
            (password_hash, hash_version, now, 1 if bump_session_version else 0, user_id),
        )
        return count == 1


class PostgresOtpChallengeRepository:
    """One table for every OTP purpose, keyed by owner, purpose and correlation id."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    async def revoke_and_create(
        self, challenge: OtpChallenge, scope_to_correlation: bool
    ) -> OtpChallenge:
        return await asyncio.to_thread(self._revoke_and_create, challenge, scope_to_correlation)

    def _revoke_and_create(self, challenge: OtpChallenge, scope_to_correlation: bool) -> OtpChallenge:
        revoke_sql = """UPDATE otp_challenges SET used_at = %s
                        WHERE owner_key = %s AND purpose = %s AND used_at IS NULL"""
        revoke_params = [challenge.created_at, challenge.owner_key, challenge.purpose.value]
        if scope_to_correlation:
            revoke_sql += " AND correlation_id = %s"
            revoke_params.append(challenge.correlation_id)

        with self._db.transaction() as cur:
            cur.execute(revoke_sql, tuple(revoke_params))
            cur.execute(
                f"""INSERT INTO otp_challenges
                    (id, owner_key, purpose, correlation_id, code_hash, expires_at, created_at,
                     failed_attempts, requested_from_ip, requested_user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s, %s)
                    RETURNING {_CHALLENGE_COLUMNS}""",
                (
                    challenge.id,
                    challenge.owner_key,
                    challenge.purpose.value,
                    challenge.correlation_id,
                    challenge.code_hash,
                    challenge.expires_at,
                    challenge.created_at,
                    challenge.requested_from_ip,
                    challenge.requested_user_agent,
                ),
            )
            row = cur.fetchone()
        return _challenge_from_row(row)

    async def get_latest(
        self, owner_key: str, purpose: OtpPurpose, correlation_id: str | None
    ) -> OtpChallenge | None:
        query = f"SELECT {_CHALLENGE_COLUMNS} FROM otp_challenges WHERE owner_key = %s AND purpose = %s"
        params = [owner_key, purpose.value]
        if correlation_id is not None:
            query += " AND correlation_id = %s"
            params.append(correlation_id)
        query += " ORDER BY created_at DESC LIMIT 1"

        row = await asyncio.to_thread(self._db.execute_single, query, tuple(params))
        return _challenge_from_row(row)

    async def record_failed_attempt(
        self, challenge_id: UUID, now: datetime, max_attempts: int, lock_minutes: int
    ) -> None:
        await asyncio.to_thread(
            self._db.execute_rowcount,
            """UPDATE otp_challenges
               SET failed_attempts = failed_attempts + 1,
                   locked_until = CASE
                       WHEN failed_attempts + 1 >= %s THEN %s
                       ELSE locked_until
                   END
               WHERE id = %s AND used_at IS NULL""",
            (max_attempts, now + timedelta(minutes=lock_minutes), challenge_id),
        )

    async def try_mark_used(self, challenge_id: UUID, now: datetime) -> bool:
        count = await asyncio.to_thread(
            self._db.execute_rowcount,
            "UPDATE otp_challenges SET used_at = %s WHERE id = %s AND used_at IS NULL",
            (now, challenge_id),
        )
        return count == 1

    async def revoke_active(
        self,
        owner_key: str,
        purpose: OtpPurpose,
        now: datetime,
        correlation_id: str | None = None,
    ) -> int:
        query = """UPDATE otp_challenges SET used_at = %s
                   WHERE owner_key = %s AND purpose = %s AND used_at IS NULL"""
        params = [now, owner_key, purpose.value]
        if correlation_id is not None:
            query += " AND correlation_id = %s"
            params.append(correlation_id)
        return await asyncio.to_thread(self._db.execute_rowcount, query, tuple(params))

    async def latest_created_at(
        self, owner_key: str, purposes: Iterable[OtpPurpose]
    ) -> datetime | None:
        return await asyncio.to_thread(
            self._db.execute_scalar,
            """SELECT max(created_at) FROM otp_challenges
               WHERE owner_key = %s AND purpose = ANY(%s)""",
            (owner_key, _purpose_values(purposes)),
        )

    async def count_created_since(
        self, owner_key: str, purposes: Iterable[OtpPurpose], since: datetime
    ) -> int:
        count = await asyncio.to_thread(
            self._db.execute_scalar,
            """SELECT count(*) FROM otp_challenges
               WHERE owner_key = %s AND purpose = ANY(%s) AND created_at >= %s""",
            (owner_key, _purpose_values(purposes), since),
        )
        return count or 0

    async def count_created_since_for_ip(
        self, ip_address: str, purposes: Iterable[OtpPurpose], since: datetime
    ) -> int:
        count = await asyncio.to_thread(
            self._db.execute_scalar,
            """SELECT count(*) FROM otp_challenges
               WHERE requested_from_ip = %s AND purpose = ANY(%s) AND created_at >= %s""",
            (ip_address, _purpose_values(purposes), since),
        )
        return count or 0


class PostgresUserInviteRepository:
    """Invite links. The token column holds an HMAC, never the token."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    async def revoke_and_create(self, invite: UserInvite) -> UserInvite:
        return await asyncio.to_thread(self._revoke_and_create, invite)

    def _revoke_and_create(self, invite: UserInvite) -> UserInvite:
        with self._db.transaction() as cur:
            cur.execute(
                """UPDATE user_invites SET status = 'revoked'
                   WHERE user_id = %s AND status = 'active' AND used_at IS NULL""",
                (invite.user_id,),
            )
            cur.execute(
                f"""INSERT INTO user_invites
                    (id, user_id, email_address, email_normalized, token_hash, expires_at,
                     created_at, created_by_user_id, status, attempt_count, requested_from_ip)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'active', 0, %s)
                    RETURNING {_INVITE_COLUMNS}""",
                (
                    invite.id,
                    invite.user_id,
                    invite.email_address,
                    invite.email_normalized,
                    invite.token_hash,
                    invite.expires_at,
                    invite.created_at,
                    invite.created_by_user_id,
                    invite.requested_from_ip,
                ),
            )
            row = cur.fetchone()
        return _invite_from_row(row)

    async def get_by_token_hash(self, token_hash: bytes) -> UserInvite | None:
        row = await asyncio.to_thread(
            self._db.execute_single,
            f"SELECT {_INVITE_COLUMNS} FROM user_invites WHERE token_hash = %s",
            (token_hash,),
        )
        return _invite_from_row(row)

    async def mark_expired(self, invite_id: UUID) -> None:
        await asyncio.to_thread(
            self._db.execute_rowcount,
            "UPDATE user_invites SET status = 'expired' WHERE id = %s AND status = 'active'",
            (invite_id,),
        )

    async def record_failed_attempt(
        self, invite_id: UUID, now: datetime, max_attempts: int, lock_minutes: int
    ) -> None:
        await asyncio.to_thread(
            self._db.execute_rowcount,
            """UPDATE user_invites
               SET attempt_count = attempt_count + 1,
                   last_attempt_at = %s,
                   locked_until = CASE
                       WHEN attempt_count + 1 >= %s THEN %s
                       ELSE locked_until
                   END
               WHERE id = %s""",
            (now, max_attempts, now + timedelta(minutes=lock_minutes), invite_id),
        )

    async def mark_otp_sent(self, invite_id: UUID, now: datetime) -> None:
        await asyncio.to_thread(
            self._db.execute_rowcount,
            "UPDATE user_invites SET last_otp_sent_at = %s WHERE id = %s",
            (now, invite_id),
        )

    async def mark_otp_verified(self, invite_id: UUID, now: datetime) -> None:
        await asyncio.to_thread(
            self._db.execute_rowcount,
            """UPDATE user_invites SET otp_verified_at = COALESCE(otp_verified_at, %s)
               WHERE id = %s""",
            (now, invite_id),
        )

    async def complete(
        self,
        invite_id: UUID,
        user_id: UUID,
        password_hash: bytes,
        hash_version: int,
        use_gravatar: bool,
        now: datetime,
    ) -> bool:
        return await asyncio.to_thread(
            self._complete, invite_id, user_id, password_hash, hash_version, use_gravatar, now
        )

    def _complete(
        self,
        invite_id: UUID,
        user_id: UUID,
        password_hash: bytes,
        hash_version: int,
        use_gravatar: bool,
        now: datetime,
    ) -> bool:
        completed = False
        with self._db.transaction() as cur:
            cur.execute(
                """UPDATE user_invites
                   SET status = 'used', used_at = %s
                   WHERE id = %s AND user_id = %s AND status = 'active'
                     AND used_at IS NULL AND expires_at >= %s
                     AND otp_verified_at IS NOT NULL""",
                (now, invite_id, user_id, now),
            )
            if cur.rowcount != 1:
                raise RollbackTransaction()

            cur.execute(
                """UPDATE users
                   SET password_hash = %s,
                       password_hash_version = %s,
                       password_last_set_at = %s,
                       status = 'active',
                       is_active = true,
                       use_gravatar = %s,
                       failed_password_attempts = 0,
                       lockout_until = NULL
                   WHERE id = %s""",
                (password_hash, hash_version, now, use_gravatar, user_id),
            )
            if cur.rowcount != 1:
                raise RollbackTransaction()

            cur.execute(
                """UPDATE user_invites SET status = 'revoked'
                   WHERE user_id = %s AND id <> %s AND status = 'active'""",
                (user_id, invite_id),
            )
            completed = True

        if not completed:
            logger.warning(f"Invite {invite_id} completion rolled back")
        return completed


class PostgresSecuritySettingsProvider:
    """Reads the admin-managed security_settings row on every call."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    async def get(self) -> SecuritySettings:
        row = await asyncio.to_thread(
            self._db.execute_single,
            "SELECT * FROM security_settings ORDER BY id LIMIT 1",
        )
        if row is None:
            logger.warning("No security_settings row found, using defaults")
            return SecuritySettings()

        policy_values = {
            "minimum_length": row.pop("password_minimum_length", None),
            "requires_number": row.pop("password_requires_number", None),
            "requires_capital_letter": row.pop("password_requires_capital_letter", None),
            "requires_special_character": row.pop("password_requires_special_character", None),
        }
        policy_values = {k: v for k, v in policy_values.items() if v is not None}
        if "minimum_length" in policy_values:
            policy_values["minimum_length"] = min(max(int(policy_values["minimum_length"]), 8), 128)

        return SecuritySettings.clamped(**row, password_policy=PasswordPolicy(**policy_values))
