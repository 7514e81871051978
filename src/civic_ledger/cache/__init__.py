"""Cache layer - Read-through entity cache."""

from .entity_cache import ALL_KEY, CacheBackend, EntityCache

__all__ = ["ALL_KEY", "CacheBackend", "EntityCache"]
