"""Tests for CryptoPrimitives."""

import pytest

from identity.crypto import CryptoPrimitives

SECRET = "a" * 32


class TestConstruction:

    def test_rejects_empty_secret(self):
        with pytest.raises(ValueError, match="required"):
            CryptoPrimitives("")

    def test_rejects_short_secret(self):
        with pytest.raises(ValueError, match="at least 32"):
            CryptoPrimitives("x" * 31)

    def test_accepts_32_character_secret(self):
        CryptoPrimitives(SECRET)


class TestRandomBytes:

    def test_returns_requested_length(self):
        crypto = CryptoPrimitives(SECRET)
        assert len(crypto.generate_random_bytes(24)) == 24

    def test_values_differ(self):
        crypto = CryptoPrimitives(SECRET)
        assert crypto.generate_random_bytes(32) != crypto.generate_random_bytes(32)

    @pytest.mark.parametrize("length", [0, -1])
    def test_non_positive_length_raises(self, length):
        with pytest.raises(ValueError):
            CryptoPrimitives(SECRET).generate_random_bytes(length)


class TestHmac:

    def test_digest_is_32_bytes(self):
        assert len(CryptoPrimitives(SECRET).compute_hmac_sha256("payload")) == 32

    def test_str_and_utf8_bytes_hash_the_same(self):
        crypto = CryptoPrimitives(SECRET)
        assert crypto.compute_hmac_sha256("café") == crypto.compute_hmac_sha256("café".encode("utf-8"))

    def test_key_changes_digest(self):
        one = CryptoPrimitives("a" * 32).compute_hmac_sha256("payload")
        two = CryptoPrimitives("b" * 32).compute_hmac_sha256("payload")
        assert one != two

    def test_instance_and_static_forms_agree(self):
        crypto = CryptoPrimitives(SECRET)
        assert crypto.compute_hmac_sha256("x") == CryptoPrimitives.compute_hmac_sha256_with_key(
            SECRET.encode("utf-8"), "x"
        )

    def test_known_vector(self):
        """RFC 4231 test case 2."""
        digest = CryptoPrimitives.compute_hmac_sha256_with_key(
            b"Jefe", b"what do ya want for nothing?"
        )
        assert digest.hex() == (
            "5bdcc146bf60754e6a042426089575c75a003f089d2739839dec58b964ec3843"
        )


class TestFixedTimeEquals:

    def test_equal(self):
        assert CryptoPrimitives.fixed_time_equals(b"abc", b"abc")

    def test_different(self):
        assert not CryptoPrimitives.fixed_time_equals(b"abc", b"abd")

    def test_different_lengths(self):
        assert not CryptoPrimitives.fixed_time_equals(b"abc", b"abcd")


class TestBase64Url:

    def test_encode_uses_url_alphabet_without_padding(self):
        encoded = CryptoPrimitives.base64url_encode(b"\xfb\xff\xfe")
        assert encoded == "-__-"

    def test_encode_strips_padding(self):
        assert CryptoPrimitives.base64url_encode(b"a") == "YQ"

    def test_decode_restores_padding(self):
        assert CryptoPrimitives.try_base64url_decode("YQ") == (True, b"a")

    def test_round_trip_of_token(self):
        crypto = CryptoPrimitives(SECRET)
        token = crypto.generate_random_bytes(32)
        ok, decoded = crypto.try_base64url_decode(crypto.base64url_encode(token))
        assert ok
        assert decoded == token

    @pytest.mark.parametrize("text", ["", "   ", None, "abcde", "ab+c", "ab/c", "ab=c", "a b"])
    def test_malformed_input_fails_without_raising(self, text):
        assert CryptoPrimitives.try_base64url_decode(text) == (False, b"")
