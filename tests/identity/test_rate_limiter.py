"""Tests for OTP issuance rate limiting and lockout checks."""

from datetime import timedelta

import pytest

from identity.config import SecuritySettings
from identity.rate_limiter import (
    RateLimiter,
    check_cooldown,
    check_window_count,
    is_locked_out,
)
from identity.service import EMAIL_CODE_PURPOSES
from identity.types import OtpPurpose
from fakes import T0

OWNER = "alex@example.com"
IP = "203.0.113.7"


class TestPureChecks:

    def test_cooldown_allows_when_nothing_sent(self):
        assert check_cooldown(None, 60, T0)

    def test_cooldown_blocks_inside_window(self):
        assert not check_cooldown(T0, 60, T0 + timedelta(seconds=59))

    def test_cooldown_allows_at_boundary(self):
        assert check_cooldown(T0, 60, T0 + timedelta(seconds=60))

    def test_window_count(self):
        assert check_window_count(2, 3)
        assert not check_window_count(3, 3)

    def test_lockout(self):
        assert is_locked_out(T0 + timedelta(minutes=1), T0)
        assert not is_locked_out(T0, T0)
        assert not is_locked_out(None, T0)


class TestRateLimiterEvaluate:

    @pytest.fixture
    def policy(self):
        return SecuritySettings(
            email_code_max_per_hour_per_email=3, email_code_max_per_hour_per_ip=4
        ).login_code_policy()

    async def _issue(self, otp_engine, policy, owner=OWNER, ip=IP, purpose=OtpPurpose.LOGIN_2FA):
        return await otp_engine.issue(purpose, owner, policy, ip)

    @pytest.mark.asyncio
    async def test_allows_first_request(self, rate_limiter, policy):
        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, IP, policy)
        assert decision.allowed
        assert decision.reason_code is None

    @pytest.mark.asyncio
    async def test_cooldown_checked_first(self, rate_limiter, otp_engine, clock, policy):
        await self._issue(otp_engine, policy)
        clock.advance(seconds=30)

        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, IP, policy)

        assert not decision.allowed
        assert decision.reason_code == "cooldown"

    @pytest.mark.asyncio
    async def test_owner_hourly_cap(self, rate_limiter, otp_engine, clock, policy):
        for _ in range(3):
            await self._issue(otp_engine, policy)
            clock.advance(seconds=61)

        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, IP, policy)
        assert decision.reason_code == "max_per_hour_email"

    @pytest.mark.asyncio
    async def test_login_and_forgot_password_share_budget(
        self, rate_limiter, otp_engine, clock, policy
    ):
        await self._issue(otp_engine, policy, purpose=OtpPurpose.LOGIN_2FA)
        clock.advance(seconds=61)
        await self._issue(otp_engine, policy, purpose=OtpPurpose.FORGOT_PASSWORD)
        clock.advance(seconds=61)
        await self._issue(otp_engine, policy, purpose=OtpPurpose.LOGIN_2FA)
        clock.advance(seconds=61)

        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, IP, policy)
        assert decision.reason_code == "max_per_hour_email"

    @pytest.mark.asyncio
    async def test_window_slides(self, rate_limiter, otp_engine, clock, policy):
        for _ in range(3):
            await self._issue(otp_engine, policy)
            clock.advance(seconds=61)
        clock.advance(hours=1)

        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, IP, policy)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_ip_hourly_cap(self, rate_limiter, otp_engine, clock, policy):
        for index in range(4):
            await self._issue(otp_engine, policy, owner=f"user{index}@example.com")

        clock.advance(seconds=61)
        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, IP, policy)
        assert decision.reason_code == "max_per_hour_ip"

    @pytest.mark.asyncio
    async def test_ip_cap_skipped_without_ip(self, rate_limiter, otp_engine, clock, policy):
        for index in range(4):
            await self._issue(otp_engine, policy, owner=f"user{index}@example.com")

        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, None, policy)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_owner_reason_comes_from_policy(self, rate_limiter, otp_engine, clock):
        policy = SecuritySettings().change_password_otp_policy()
        for _ in range(3):
            await otp_engine.issue(OtpPurpose.CHANGE_PASSWORD, "user-1", policy)
            clock.advance(seconds=61)

        decision = await rate_limiter.evaluate(
            (OtpPurpose.CHANGE_PASSWORD,), "user-1", None, policy
        )
        assert decision.reason_code == "max_per_hour_user"

    @pytest.mark.asyncio
    async def test_does_not_write(self, rate_limiter, challenges, policy):
        await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, IP, policy)
        assert challenges.challenges == []

    @pytest.mark.asyncio
    async def test_purposes_are_isolated(self, rate_limiter, otp_engine, policy):
        await otp_engine.issue(OtpPurpose.INVITE_OTP, OWNER, policy, IP)
        decision = await rate_limiter.evaluate(EMAIL_CODE_PURPOSES, OWNER, None, policy)
        assert decision.allowed
