"""Tests for InviteService - create, resend, validate, OTP and set password."""

from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import pytest

from identity.config import SecuritySettings, StaticSecuritySettingsProvider
from identity.invites import (
    ALREADY_VERIFIED,
    DETAILS_REQUIRED,
    INVALID_LINK,
    INVITE_EMAIL_FAILED,
    INVITE_RESENT,
    ONLY_PENDING,
    OTP_FAILED,
    OTP_SENT,
    PASSWORD_SET,
    TOO_MANY_ATTEMPTS,
    USER_CREATED,
    USER_EXISTS,
    USER_NOT_FOUND,
    VERIFICATION_SUCCESSFUL,
    VERIFICATION_UNAVAILABLE,
    VERIFY_EMAIL_FIRST,
    WAIT_BEFORE_NEW_CODE,
    InviteService,
)
from identity.types import FailureKind, InviteStatus, UserStatus

NEW_PASSWORD = "Brand-New-Secret-99"
INVITEE = "Jamie.Chen@Example.com"


def _token_from(email_sender) -> str:
    url = email_sender.last("invite").url
    return parse_qs(urlparse(url).query)["token"][0]


async def _create(invite_service, email_sender, email=INVITEE):
    result = await invite_service.create_user_and_invite("Jamie", "Chen", email, None)
    return result, _token_from(email_sender)


async def _verified(invite_service, email_sender):
    result, token = await _create(invite_service, email_sender)
    await invite_service.send_otp(token)
    await invite_service.verify_otp(token, email_sender.last("invite_otp").code)
    return result, token


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


class TestCreateUserAndInvite:

    @pytest.mark.asyncio
    async def test_creates_pending_user_and_sends_link(self, invite_service, users, invites, email_sender):
        admin_id = uuid4()
        result = await invite_service.create_user_and_invite(
            " Jamie ", "Chen", INVITEE, admin_id, "https://seo.example.com"
        )

        assert result.success
        assert result.message == USER_CREATED
        user = users.users[result.user_id]
        assert user.status == UserStatus.PENDING
        assert user.email_normalized == "jamie.chen@example.com"
        assert user.first_name == "Jamie"
        assert user.password_hash is None

        sent = email_sender.last("invite")
        assert sent.email == INVITEE
        assert sent.recipient_name == "Jamie Chen"
        assert sent.url.startswith("https://seo.example.com/invite/accept?token=")

        [invite] = invites.for_user(user.id)
        assert invite.created_by_user_id == admin_id
        assert invite.status == InviteStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_invite_expiry_from_settings(self, invite_service, invites, email_sender, clock):
        result, _ = await _create(invite_service, email_sender)
        [invite] = invites.for_user(result.user_id)
        assert (invite.expires_at - clock.now()).total_seconds() == 24 * 3600

    @pytest.mark.asyncio
    async def test_store_never_sees_raw_token(self, invite_service, invites, email_sender, crypto):
        result, token = await _create(invite_service, email_sender)
        [invite] = invites.for_user(result.user_id)

        _, token_bytes = crypto.try_base64url_decode(token)
        assert invite.token_hash == crypto.compute_hmac_sha256(token_bytes)
        assert invite.token_hash != token_bytes

    @pytest.mark.asyncio
    async def test_duplicate_email(self, invite_service, active_user):
        result = await invite_service.create_user_and_invite(
            "Alex", "Rivera", "alex.rivera@EXAMPLE.com", None
        )
        assert not result.success
        assert result.message == USER_EXISTS
        assert result.failure == FailureKind.VALIDATION

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "first,last,email",
        [("", "Chen", INVITEE), ("Jamie", "  ", INVITEE), ("Jamie", "Chen", "not-an-email")],
    )
    async def test_missing_details(self, invite_service, email_sender, first, last, email):
        result = await invite_service.create_user_and_invite(first, last, email, None)
        assert result.message == DETAILS_REQUIRED
        assert email_sender.sent == []

    @pytest.mark.asyncio
    async def test_email_failure_keeps_pending_user(self, invite_service, users, email_sender):
        email_sender.fail = True

        result = await invite_service.create_user_and_invite("Jamie", "Chen", INVITEE, None)

        assert not result.success
        assert result.message == INVITE_EMAIL_FAILED
        assert result.failure == FailureKind.INFRASTRUCTURE
        assert users.users[result.user_id].status == UserStatus.PENDING


class TestResendInvite:

    @pytest.mark.asyncio
    async def test_resend_revokes_previous_link(self, invite_service, invites, email_sender):
        created, old_token = await _create(invite_service, email_sender)

        result = await invite_service.resend_invite(created.user_id, None)
        new_token = _token_from(email_sender)

        assert result.success
        assert result.message == INVITE_RESENT
        old, new = invites.for_user(created.user_id)
        assert old.status == InviteStatus.REVOKED
        assert new.status == InviteStatus.ACTIVE
        assert not (await invite_service.validate_invite_token(old_token)).success
        assert (await invite_service.validate_invite_token(new_token)).success

    @pytest.mark.asyncio
    async def test_unknown_user(self, invite_service):
        result = await invite_service.resend_invite(uuid4(), None)
        assert result.message == USER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_only_pending_users(self, invite_service, active_user):
        result = await invite_service.resend_invite(active_user.id, None)
        assert result.message == ONLY_PENDING

    @pytest.mark.asyncio
    async def test_email_failure(self, invite_service, email_sender):
        created, _ = await _create(invite_service, email_sender)
        email_sender.fail = True

        result = await invite_service.resend_invite(created.user_id, None)

        assert not result.success
        assert result.failure == FailureKind.INFRASTRUCTURE


class TestValidateInviteToken:

    @pytest.mark.asyncio
    async def test_valid(self, invite_service, email_sender):
        created, token = await _create(invite_service, email_sender)
        result = await invite_service.validate_invite_token(token)
        assert result.success
        assert result.invite.user_id == created.user_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, "", "not base64!", "AAAA"])
    async def test_malformed(self, invite_service, token):
        result = await invite_service.validate_invite_token(token)
        assert not result.success
        assert result.message == INVALID_LINK

    @pytest.mark.asyncio
    async def test_unknown_token(self, invite_service, crypto):
        token = crypto.base64url_encode(crypto.generate_random_bytes(32))
        assert not (await invite_service.validate_invite_token(token)).success

    @pytest.mark.asyncio
    async def test_expired_is_marked(self, invite_service, invites, email_sender, clock):
        created, token = await _create(invite_service, email_sender)
        clock.advance(hours=24, seconds=1)

        result = await invite_service.validate_invite_token(token)

        assert result.message == INVALID_LINK
        [invite] = invites.for_user(created.user_id)
        assert invite.status == InviteStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_locked_invite(self, invite_service, invites, email_sender, clock):
        created, token = await _create(invite_service, email_sender)
        [invite] = invites.for_user(created.user_id)
        invites._update(invite.id, locked_until=clock.now().replace(year=2027))

        assert not (await invite_service.validate_invite_token(token)).success


class TestSendOtp:

    @pytest.mark.asyncio
    async def test_sends_code(self, invite_service, invites, email_sender, clock):
        created, token = await _create(invite_service, email_sender)

        result = await invite_service.send_otp(token, "203.0.113.7")

        assert result.success
        assert result.message == OTP_SENT
        assert result.otp_sent
        assert result.invite.last_otp_sent_at == clock.now()
        assert email_sender.last("invite_otp").email == INVITEE

    @pytest.mark.asyncio
    async def test_invalid_token(self, invite_service):
        result = await invite_service.send_otp("bogus")
        assert result.message == INVALID_LINK

    @pytest.mark.asyncio
    async def test_cooldown(self, invite_service, email_sender):
        _, token = await _create(invite_service, email_sender)
        await invite_service.send_otp(token)

        result = await invite_service.send_otp(token)

        assert not result.success
        assert result.message == WAIT_BEFORE_NEW_CODE
        assert result.failure == FailureKind.RATE_LIMITED
        assert result.reason_code == "cooldown"

    @pytest.mark.asyncio
    async def test_hourly_cap(self, invite_service, email_sender, clock):
        _, token = await _create(invite_service, email_sender)
        for _ in range(3):
            await invite_service.send_otp(token)
            clock.advance(seconds=61)

        result = await invite_service.send_otp(token)

        assert result.message == VERIFICATION_UNAVAILABLE
        assert result.reason_code == "max_per_hour_invite"
        assert email_sender.count("invite_otp") == 3

    @pytest.mark.asyncio
    async def test_already_verified(self, invite_service, email_sender):
        _, token = await _verified(invite_service, email_sender)

        result = await invite_service.send_otp(token)

        assert result.success
        assert result.message == ALREADY_VERIFIED
        assert result.otp_verified
        assert email_sender.count("invite_otp") == 1


class TestVerifyOtp:

    @pytest.mark.asyncio
    async def test_success(self, invite_service, email_sender, clock):
        _, token = await _create(invite_service, email_sender)
        await invite_service.send_otp(token)

        result = await invite_service.verify_otp(token, email_sender.last("invite_otp").code)

        assert result.success
        assert result.message == VERIFICATION_SUCCESSFUL
        assert result.invite.otp_verified_at == clock.now()

    @pytest.mark.asyncio
    async def test_verified_is_idempotent(self, invite_service, email_sender):
        _, token = await _verified(invite_service, email_sender)
        result = await invite_service.verify_otp(token, "000000")
        assert result.success
        assert result.otp_verified

    @pytest.mark.asyncio
    async def test_blank_code(self, invite_service, email_sender):
        _, token = await _create(invite_service, email_sender)
        await invite_service.send_otp(token)

        result = await invite_service.verify_otp(token, "  ")

        assert result.message == OTP_FAILED
        assert result.failure == FailureKind.VALIDATION

    @pytest.mark.asyncio
    async def test_mismatch_counts_against_invite(self, invite_service, invites, email_sender):
        created, token = await _create(invite_service, email_sender)
        await invite_service.send_otp(token)

        result = await invite_service.verify_otp(token, _wrong(email_sender.last("invite_otp").code))

        assert result.message == OTP_FAILED
        [invite] = invites.for_user(created.user_id)
        assert invite.attempt_count == 1
        assert invite.otp_verified_at is None

    @pytest.mark.asyncio
    async def test_code_locks_after_five_wrong(self, invite_service, email_sender):
        _, token = await _create(invite_service, email_sender)
        await invite_service.send_otp(token)
        code = email_sender.last("invite_otp").code
        for _ in range(5):
            await invite_service.verify_otp(token, _wrong(code))

        result = await invite_service.verify_otp(token, code)

        assert not result.success
        assert result.message == TOO_MANY_ATTEMPTS

    @pytest.mark.asyncio
    async def test_invite_locks_across_codes(
        self, config, users, invites, otp_engine, rate_limiter, hasher, crypto, email_sender, clock
    ):
        service = InviteService(
            config, users, invites, otp_engine, rate_limiter, hasher, crypto, email_sender,
            StaticSecuritySettingsProvider(SecuritySettings(invite_max_attempts=2)),
            clock,
        )
        _, token = await _create(service, email_sender)
        await service.send_otp(token)
        await service.verify_otp(token, _wrong(email_sender.last("invite_otp").code))
        clock.advance(seconds=61)
        await service.send_otp(token)
        await service.verify_otp(token, _wrong(email_sender.last("invite_otp").code))

        result = await service.verify_otp(token, email_sender.last("invite_otp").code)

        assert result.message == INVALID_LINK


class TestSetPassword:

    @pytest.mark.asyncio
    async def test_requires_verified_email(self, invite_service, email_sender):
        _, token = await _create(invite_service, email_sender)

        result = await invite_service.set_password(token, NEW_PASSWORD, NEW_PASSWORD)

        assert not result.success
        assert result.message == VERIFY_EMAIL_FIRST

    @pytest.mark.asyncio
    async def test_completes_invite(self, invite_service, users, invites, email_sender, hasher, clock):
        created, token = await _verified(invite_service, email_sender)

        result = await invite_service.set_password(token, NEW_PASSWORD, NEW_PASSWORD, use_gravatar=True)

        assert result.success
        assert result.message == PASSWORD_SET
        user = users.users[created.user_id]
        assert user.status == UserStatus.ACTIVE
        assert user.is_active
        assert user.use_gravatar
        assert user.password_last_set_at == clock.now()
        assert hasher.verify_password(user.password_hash, NEW_PASSWORD).matches
        [invite] = invites.for_user(created.user_id)
        assert invite.status == InviteStatus.USED
        assert invite.used_at == clock.now()

    @pytest.mark.asyncio
    async def test_link_is_single_use(self, invite_service, email_sender):
        _, token = await _verified(invite_service, email_sender)
        await invite_service.set_password(token, NEW_PASSWORD, NEW_PASSWORD)

        again = await invite_service.set_password(token, NEW_PASSWORD, NEW_PASSWORD)

        assert again.message == INVALID_LINK

    @pytest.mark.asyncio
    async def test_policy_violation_keeps_invite_open(self, invite_service, invites, email_sender):
        created, token = await _verified(invite_service, email_sender)

        result = await invite_service.set_password(token, "weak", "weak")

        assert result.failure == FailureKind.VALIDATION
        [invite] = invites.for_user(created.user_id)
        assert invite.status == InviteStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_store_rejects_completion(self, invite_service, email_sender):
        _, token = await _verified(invite_service, email_sender)

        async def refuse(*args):
            return False

        invite_service._invites.complete = refuse
        result = await invite_service.set_password(token, NEW_PASSWORD, NEW_PASSWORD)

        assert result.message == INVALID_LINK


class TestMaskEmail:

    def test_masks(self, invite_service):
        masked = invite_service.mask_email_address("jamie.chen@example.com")
        assert masked != "jamie.chen@example.com"
        assert masked.endswith("@example.com")
