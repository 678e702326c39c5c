"""Tests for password hashing and the password policy."""

import bcrypt
import pytest

from identity.config import PasswordPolicy
from identity.passwords import (
    PASSWORD_HASH_VERSION,
    PASSWORD_MISMATCH,
    PASSWORD_REQUIRED,
    PasswordHasher,
    check_new_password,
    validate_password,
)


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


class TestHashPassword:

    def test_hash_then_verify(self, hasher):
        stored = hasher.hash_password("Correct-Horse-42")
        result = hasher.verify_password(stored, "Correct-Horse-42")
        assert result.matches
        assert not result.needs_rehash

    def test_wrong_password_does_not_match(self, hasher):
        stored = hasher.hash_password("Correct-Horse-42")
        assert not hasher.verify_password(stored, "Correct-Horse-43").matches

    def test_fresh_salt_per_call(self, hasher):
        assert hasher.hash_password("same") != hasher.hash_password("same")

    @pytest.mark.parametrize("password", ["", "   "])
    def test_blank_password_raises(self, hasher, password):
        with pytest.raises(ValueError):
            hasher.hash_password(password)

    def test_long_passwords_are_not_truncated(self, hasher):
        """Pre-hash means characters past bcrypt's 72-byte limit still count."""
        base = "x" * 80
        stored = hasher.hash_password(base + "A")
        assert not hasher.verify_password(stored, base + "B").matches

    def test_version_tag(self, hasher):
        assert hasher.version == PASSWORD_HASH_VERSION


class TestVerifyPassword:

    def test_malformed_hash_is_no_match(self, hasher):
        result = hasher.verify_password(b"not-a-bcrypt-hash", "anything")
        assert not result.matches
        assert not result.needs_rehash

    def test_missing_hash_is_no_match(self, hasher):
        assert not hasher.verify_password(None, "anything").matches

    def test_empty_candidate_is_no_match(self, hasher):
        stored = hasher.hash_password("Correct-Horse-42")
        assert not hasher.verify_password(stored, "").matches

    def test_old_version_needs_rehash(self, hasher):
        stored = hasher.hash_password("Correct-Horse-42")
        result = hasher.verify_password(stored, "Correct-Horse-42", hash_version=0)
        assert result.matches
        assert result.needs_rehash

    def test_missing_version_needs_rehash(self, hasher):
        stored = hasher.hash_password("Correct-Horse-42")
        assert hasher.verify_password(stored, "Correct-Horse-42", hash_version=None).needs_rehash

    def test_lower_cost_needs_rehash(self):
        stored = PasswordHasher(rounds=4).hash_password("Correct-Horse-42")
        result = PasswordHasher(rounds=5).verify_password(stored, "Correct-Horse-42")
        assert result.matches
        assert result.needs_rehash

    def test_accepts_memoryview(self, hasher):
        """Postgres hands bytea back as memoryview."""
        stored = memoryview(hasher.hash_password("Correct-Horse-42"))
        assert hasher.verify_password(stored, "Correct-Horse-42").matches

    def test_plain_bcrypt_without_prehash_does_not_match(self, hasher):
        stored = bcrypt.hashpw(b"Correct-Horse-42", bcrypt.gensalt(rounds=4))
        assert not hasher.verify_password(stored, "Correct-Horse-42").matches


class TestValidatePassword:

    def test_strong_password_passes(self):
        result = validate_password("Correct-Horse-42", PasswordPolicy())
        assert result.is_valid
        assert result.missing_requirements == []

    def test_reports_each_missing_requirement(self):
        result = validate_password("short", PasswordPolicy())
        assert not result.is_valid
        assert result.missing_requirements == [
            "at least 12 characters",
            "at least one number",
            "at least one capital letter",
            "at least one special character",
        ]

    def test_guidance_message(self):
        policy = PasswordPolicy(
            requires_capital_letter=False, requires_special_character=False
        )
        result = validate_password("abcdefgh", policy)
        assert result.guidance_message() == (
            "Password must include at least 12 characters, at least one number."
        )

    def test_minimum_length_floor_is_8(self):
        policy = PasswordPolicy.model_construct(
            minimum_length=4,
            requires_number=False,
            requires_capital_letter=False,
            requires_special_character=False,
        )
        assert not validate_password("abcdefg", policy).is_valid
        assert validate_password("abcdefgh", policy).is_valid

    def test_none_is_invalid(self):
        assert not validate_password(None, PasswordPolicy()).is_valid


class TestCheckNewPassword:

    def test_blank(self):
        assert check_new_password("  ", "  ", PasswordPolicy()) == PASSWORD_REQUIRED

    def test_mismatch_checked_before_policy(self):
        assert check_new_password("weak", "other", PasswordPolicy()) == PASSWORD_MISMATCH

    def test_policy_guidance(self):
        message = check_new_password("weakpassword", "weakpassword", PasswordPolicy())
        assert message.startswith("Password must include")

    def test_acceptable(self):
        assert check_new_password("Correct-Horse-42", "Correct-Horse-42", PasswordPolicy()) is None
