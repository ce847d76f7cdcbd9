"""Caching layer for read queries."""

from listenlog.application.cache.base_cache import CacheEntry, InMemoryCache
from listenlog.application.cache.query_cache import QueryCache, user_key

__all__ = [
    "CacheEntry",
    "InMemoryCache",
    "QueryCache",
    "user_key",
]
