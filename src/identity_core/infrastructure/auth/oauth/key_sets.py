"""
Signing key sets for identity providers that issue signed assertions.

A key set resolves a ``kid`` to a public key. Verifiers receive one
explicitly, so tests substitute a ``StaticKeySet`` for the remote one.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx
import jwt

from ....domain.exceptions import ErrorCode, UnauthorizedError

logger = logging.getLogger(__name__)


class KeySet(Protocol):
    """Resolves signing keys by key id."""

    async def get_key(self, kid: str | None) -> Any: ...


def _unknown_key(kid: str | None) -> UnauthorizedError:
    return UnauthorizedError(
        ErrorCode.OAUTH_TOKEN_INVALID, "Identity token signed with an unknown key", {"kid": kid}
    )


class StaticKeySet:
    """Fixed keys, keyed by key id."""

    def __init__(self, keys: dict[str, Any]):
        self.keys = dict(keys)

    async def get_key(self, kid: str | None) -> Any:
        if kid is None and len(self.keys) == 1:
            return next(iter(self.keys.values()))
        if kid is None or kid not in self.keys:
            raise _unknown_key(kid)
        return self.keys[kid]


class RemoteKeySet:
    """
    JWKS document fetched from a provider and cached in process.

    The document is loaded lazily on first use, reloaded once it is older
    than ``cache_ttl_seconds`` and reloaded early when a token names an
    unknown ``kid``. Early reloads are throttled by
    ``min_refresh_interval_seconds`` so forged key ids cannot make every
    request hit the provider.
    """

    def __init__(
        self,
        jwks_url: str,
        http_client: httpx.AsyncClient,
        cache_ttl_seconds: int = 3600,
        min_refresh_interval_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jwks_url = jwks_url
        self.http_client = http_client
        self.cache_ttl_seconds = cache_ttl_seconds
        self.min_refresh_interval_seconds = min_refresh_interval_seconds
        self._clock = clock
        self._keys: dict[str, Any] = {}
        self._loaded_at: float | None = None
        self._last_attempt_at: float | None = None
        self._lock = asyncio.Lock()

    async def get_key(self, kid: str | None) -> Any:
        """
        Resolve a signing key.

        Raises:
            UnauthorizedError: OAUTH_TOKEN_INVALID for an unknown key id,
                OAUTH_PROVIDER_UNAVAILABLE if the key set cannot be loaded
        """
        async with self._lock:
            if self._loaded_at is None:
                # Never loaded: back off after a failed attempt instead of
                # stalling every login on an unreachable provider
                if not self._may_refresh():
                    logger.warning(f"JWKS load from {self.jwks_url} throttled after failure")
                    raise UnauthorizedError(
                        ErrorCode.OAUTH_PROVIDER_UNAVAILABLE, "Identity provider is unavailable"
                    )
                await self._refresh()
            elif (self._is_stale() or kid not in self._keys) and self._may_refresh():
                await self._refresh()

        if kid is None or kid not in self._keys:
            raise _unknown_key(kid)
        return self._keys[kid]

    def _is_stale(self) -> bool:
        assert self._loaded_at is not None
        return self._clock() - self._loaded_at >= self.cache_ttl_seconds

    def _may_refresh(self) -> bool:
        if self._last_attempt_at is None:
            return True
        return self._clock() - self._last_attempt_at >= self.min_refresh_interval_seconds

    async def _refresh(self) -> None:
        self._last_attempt_at = self._clock()
        try:
            response = await self.http_client.get(self.jwks_url)
            response.raise_for_status()
            jwk_set = jwt.PyJWKSet.from_dict(response.json())
        except (httpx.HTTPError, ValueError, jwt.PyJWKSetError) as e:
            if self._keys:
                logger.warning(
                    f"Keeping cached keys, JWKS refresh from {self.jwks_url} failed: {e}"
                )
                return
            logger.error(f"Failed to load JWKS from {self.jwks_url}: {e}")
            raise UnauthorizedError(
                ErrorCode.OAUTH_PROVIDER_UNAVAILABLE, "Identity provider is unavailable"
            )

        self._keys = {k.key_id: k.key for k in jwk_set.keys if k.key_id}
        self._loaded_at = self._last_attempt_at
        logger.info(f"Loaded {len(self._keys)} signing key(s) from {self.jwks_url}")
