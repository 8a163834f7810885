"""
Session validity cache.

Cache-aside layer over session state keyed by session id. Entries hold
``{user_id, expires_at, revoked_at}`` for a short TTL, so a session revoked
without invalidating its entry stays usable for at most that TTL.
"""

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import redis

logger = logging.getLogger(__name__)


class CacheClient(Protocol):
    """Subset of the redis client API the cache relies on."""

    def get(self, key: str) -> Any: ...

    def setex(self, key: str, ttl: int, value: str) -> Any: ...

    def delete(self, *keys: str) -> Any: ...


class InMemoryCache:
    """Process-local TTL store with the redis ``get``/``setex``/``delete`` API."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def setex(self, key: str, ttl: int, value: str) -> bool:
        with self._lock:
            self._data[key] = (self._clock() + ttl, value)
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed


@dataclass(frozen=True)
class CachedSessionState:
    """Snapshot of the fields needed to accept or reject a session."""

    user_id: str
    expires_at: datetime
    revoked_at: datetime | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "expires_at": self.expires_at.isoformat(),
                "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CachedSessionState":
        data = json.loads(raw)
        revoked_at = data.get("revoked_at")
        return cls(
            user_id=data["user_id"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            revoked_at=datetime.fromisoformat(revoked_at) if revoked_at else None,
        )


class SessionValidityCache:
    """
    Short-TTL cache of session validity.

    Cache failures never reject a request: reads degrade to a miss so the
    caller falls back to the session registry.
    """

    KEY_PREFIX = "session:"

    def __init__(self, client: CacheClient, ttl_seconds: int = 30, key_prefix: str = ""):
        """
        Initialize the cache.

        Args:
            client: redis client (``decode_responses`` on or off) or ``InMemoryCache``
            ttl_seconds: Lifetime of each entry
            key_prefix: Optional namespace prepended to every key
        """
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{self.KEY_PREFIX}{session_id}"

    def get(self, session_id: str) -> CachedSessionState | None:
        try:
            raw = self.client.get(self._key(session_id))
        except redis.RedisError as e:
            logger.warning(f"Session cache read failed for {session_id}: {e}")
            return None

        if raw is None:
            return None

        try:
            return CachedSessionState.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable session cache entry {session_id}: {e}")
            self.invalidate(session_id)
            return None

    def set(self, session_id: str, state: CachedSessionState) -> None:
        try:
            self.client.setex(self._key(session_id), self.ttl_seconds, state.to_json())
        except redis.RedisError as e:
            logger.warning(f"Session cache write failed for {session_id}: {e}")

    def invalidate(self, session_id: str) -> None:
        try:
            self.client.delete(self._key(session_id))
        except redis.RedisError as e:
            logger.error(f"Session cache invalidation failed for {session_id}: {e}")

    def invalidate_many(self, session_ids: Iterable[str]) -> None:
        for session_id in session_ids:
            self.invalidate(session_id)
