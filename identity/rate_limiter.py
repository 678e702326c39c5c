"""Cooldown and hourly-cap decisions for OTP issuance, plus lockout checks.

The limiter holds no counters of its own. Counts are read fresh from the OTP
challenge store on every call; under heavy concurrency two requests can both
see a count just under the cap. That window is accepted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from identity.config import OtpPolicy
from identity.interfaces import OtpChallengeRepository
from identity.types import OtpPurpose
from utils.timezone import Clock

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class RateLimitDecision:
    """Whether a new code may be issued, and the first check that failed."""

    allowed: bool
    reason_code: str | None = None


def check_cooldown(last_sent_at: datetime | None, cooldown_seconds: int, now: datetime) -> bool:
    """True if enough time has passed since the last send (or nothing was sent)."""
    if last_sent_at is None:
        return True
    return now >= last_sent_at + timedelta(seconds=cooldown_seconds)


def check_window_count(count_in_window: int, max_allowed: int) -> bool:
    return count_in_window < max_allowed


def is_locked_out(locked_until: datetime | None, now: datetime) -> bool:
    return locked_until is not None and locked_until > now


class RateLimiter:
    """Composite issuance check: cooldown, then per-owner cap, then per-IP cap."""

    def __init__(self, challenges: OtpChallengeRepository, clock: Clock):
        self._challenges = challenges
        self._clock = clock

    async def evaluate(
        self,
        purposes: Iterable[OtpPurpose],
        owner_key: str,
        ip_address: str | None,
        policy: OtpPolicy,
    ) -> RateLimitDecision:
        """
        Decide whether another code may be issued for owner_key.

        Purposes are counted together, so login and forgot-password codes share
        one per-email budget. The IP cap is skipped when no IP is known.
        Advisory only: nothing is written.
        """
        purposes = tuple(purposes)
        now = self._clock.now()

        last_sent_at = await self._challenges.latest_created_at(owner_key, purposes)
        if not check_cooldown(last_sent_at, policy.cooldown_seconds, now):
            return self._deny("cooldown", purposes)

        since = now - WINDOW
        owner_count = await self._challenges.count_created_since(owner_key, purposes, since)
        if not check_window_count(owner_count, policy.max_per_hour_owner):
            return self._deny(policy.owner_limit_reason, purposes)

        if ip_address and ip_address.strip():
            ip_count = await self._challenges.count_created_since_for_ip(
                ip_address.strip(), purposes, since
            )
            if not check_window_count(ip_count, policy.max_per_hour_ip):
                return self._deny("max_per_hour_ip", purposes)

        return RateLimitDecision(allowed=True)

    @staticmethod
    def _deny(reason_code: str, purposes: tuple[OtpPurpose, ...]) -> RateLimitDecision:
        logger.warning(
            f"OTP issuance denied ({reason_code}) for {', '.join(p.value for p in purposes)}"
        )
        return RateLimitDecision(allowed=False, reason_code=reason_code)
