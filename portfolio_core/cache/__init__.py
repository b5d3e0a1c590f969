# portfolio_core/cache/__init__.py
"""In-memory TTL cache shared by every read path."""

from .ttl_cache import CacheEntry, TTLCache

__all__ = ["CacheEntry", "TTLCache"]
