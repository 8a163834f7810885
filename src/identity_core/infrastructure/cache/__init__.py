"""Caching layers."""

from .session_cache import CachedSessionState, InMemoryCache, SessionValidityCache

__all__ = ["CachedSessionState", "InMemoryCache", "SessionValidityCache"]
