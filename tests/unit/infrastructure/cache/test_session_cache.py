"""
Tests for the session validity cache.
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import redis

from identity_core.infrastructure.cache.session_cache import (
    CachedSessionState,
    InMemoryCache,
    SessionValidityCache,
)

STATE = CachedSessionState(
    user_id="user-123",
    expires_at=datetime(2030, 1, 1, 12, 0, 0),
    revoked_at=None,
)


class TestCachedSessionState:
    """Test serialization of cache entries."""

    def test_json_round_trip_with_revocation(self):
        state = CachedSessionState("user-123", datetime(2030, 1, 1), datetime(2029, 6, 1, 8, 30))
        assert CachedSessionState.from_json(state.to_json()) == state

    def test_from_bytes(self):
        assert CachedSessionState.from_json(STATE.to_json().encode("utf-8")) == STATE


class TestInMemoryCache:
    """Test the process-local TTL store."""

    def test_entries_expire(self):
        now = [0.0]
        cache = InMemoryCache(clock=lambda: now[0])
        cache.setex("k", 10, "v")

        now[0] = 9.9
        assert cache.get("k") == "v"
        now[0] = 10.0
        assert cache.get("k") is None

    def test_delete_many(self):
        cache = InMemoryCache()
        cache.setex("a", 10, "1")
        cache.setex("b", 10, "2")

        assert cache.delete("a", "b", "c") == 2
        assert cache.get("a") is None


class TestSessionValidityCache:
    """Test cache-aside session state with a redis client."""

    def test_set_uses_prefix_and_ttl(self, redis_client):
        cache = SessionValidityCache(redis_client, ttl_seconds=30, key_prefix="auth:")
        cache.set("s-1", STATE)

        redis_client.setex.assert_called_once_with("auth:session:s-1", 30, STATE.to_json())
        assert cache.get("s-1") == STATE

    def test_miss(self, session_cache):
        assert session_cache.get("unknown") is None

    def test_invalidate(self, session_cache, redis_client):
        session_cache.set("s-1", STATE)
        session_cache.set("s-2", STATE)

        session_cache.invalidate_many(["s-1", "s-2"])

        assert session_cache.get("s-1") is None
        assert redis_client.storage == {}

    def test_corrupt_entry_is_discarded(self, session_cache, redis_client):
        redis_client.storage["session:s-1"] = "{not json"

        assert session_cache.get("s-1") is None
        assert "session:s-1" not in redis_client.storage

    def test_redis_failures_degrade_to_miss(self):
        client = MagicMock(spec=redis.Redis)
        client.get.side_effect = redis.ConnectionError("down")
        client.setex.side_effect = redis.ConnectionError("down")
        client.delete.side_effect = redis.ConnectionError("down")
        cache = SessionValidityCache(client)

        assert cache.get("s-1") is None
        cache.set("s-1", STATE)
        cache.invalidate("s-1")

    @pytest.mark.parametrize("raw", [b'{"user_id": "u"}', '{"expires_at": "2030-01-01"}'])
    def test_incomplete_entry_is_discarded(self, session_cache, redis_client, raw):
        redis_client.storage["session:s-1"] = raw
        assert session_cache.get("s-1") is None
