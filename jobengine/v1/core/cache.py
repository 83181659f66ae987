"""
Cache collaborator used by administrative actions.

The engine never caches job state; this only backs the invalidation
endpoints for derived configuration.
"""

from typing import Any, Protocol

from fastapi import Depends


class CacheService(Protocol):
    """Minimal cache contract consumed by the admin surface."""

    async def remove_from_cache(self, key: str) -> bool: ...


class LocalCache:
    """In-process cache for development and tests."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})

    def __contains__(self, key: str) -> bool:
        return key in self._data

    async def remove_from_cache(self, key: str) -> bool:
        """Drop a key; returns whether it was present."""
        return self._data.pop(key, None) is not None


_cache: CacheService = LocalCache()


def get_cache() -> CacheService:
    """Dependency injection function for the cache collaborator."""
    return _cache


CacheDep = Depends(get_cache)
