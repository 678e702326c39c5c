"""Tests for ValkeyClient, the session store wrapper."""

import secrets
import time
from unittest.mock import patch

import pytest
import redis

from clients.valkey_client import ValkeyClient


@pytest.fixture
def session_key(valkey):
    """A unique session-shaped key, removed after the test."""
    key = f"session:test-{secrets.token_urlsafe(8)}"
    yield key
    valkey.delete(key)


@pytest.fixture
def mocked_redis():
    with patch("clients.valkey_client.redis.from_url") as from_url:
        yield from_url


class TestConnection:
    def test_live_server_answers_ping(self, valkey):
        assert valkey.ping() is True

    def test_constructor_pings(self, mocked_redis):
        mocked_redis.return_value.ping.side_effect = redis.ConnectionError("refused")

        with pytest.raises(redis.ConnectionError):
            ValkeyClient("redis://unreachable:6379/0")

        mocked_redis.assert_called_once_with("redis://unreachable:6379/0", decode_responses=True)


class TestWrites:
    """Expiring and plain writes map to setex and set."""

    def test_session_payload_uses_setex(self, mocked_redis):
        client = ValkeyClient("redis://localhost:6379/0")
        client.set_json("session:abc", {"user_id": "1", "session_version": 3}, expire_seconds=3600)

        mocked_redis.return_value.setex.assert_called_once_with(
            "session:abc", 3600, '{"user_id": "1", "session_version": 3}'
        )
        mocked_redis.return_value.set.assert_not_called()

    def test_no_expiry_uses_plain_set(self, mocked_redis):
        ValkeyClient("redis://localhost:6379/0").set("flag", "on")

        mocked_redis.return_value.set.assert_called_once_with("flag", "on")

    def test_delete_reports_whether_key_existed(self, mocked_redis):
        mocked_redis.return_value.delete.side_effect = [1, 0]
        client = ValkeyClient("redis://localhost:6379/0")

        assert client.delete("session:a") is True
        assert client.delete("session:a") is False


class TestSessionStorage:
    """Against a live server (IDENTITY_TEST_VALKEY_URL)."""

    def test_session_round_trip(self, valkey, session_key):
        payload = {"user_id": "5b0c", "session_version": 2, "expires_at": "2026-03-02T10:00:00+00:00"}
        valkey.set_json(session_key, payload, expire_seconds=60)

        assert valkey.get_json(session_key) == payload

    def test_unknown_session_is_none(self, valkey, session_key):
        assert valkey.get_json(session_key) is None
        assert valkey.get(session_key) is None

    def test_session_disappears_after_ttl(self, valkey, session_key):
        valkey.set(session_key, "value", expire_seconds=1)
        assert valkey.get(session_key) == "value"

        time.sleep(1.1)

        assert valkey.get(session_key) is None

    def test_revoked_session_is_gone(self, valkey, session_key):
        valkey.set_json(session_key, {"user_id": "1"})

        assert valkey.delete(session_key) is True
        assert valkey.get_json(session_key) is None

    def test_corrupt_payload_raises(self, valkey, session_key):
        valkey.set(session_key, "not valid json {")

        with pytest.raises(ValueError, match="Invalid JSON"):
            valkey.get_json(session_key)
