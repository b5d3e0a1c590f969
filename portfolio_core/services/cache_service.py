# =============================================================================
# portfolio_core/services/cache_service.py
# Cache Operations Exposed to the Orchestrator
# =============================================================================

from __future__ import annotations
from typing import Any, Dict, Optional

from portfolio_core.cache import TTLCache
from portfolio_core.errors import ValidationError
from portfolio_core.services.base_service import BaseService


class CacheService(BaseService):
    """
    Thin service wrapper around the shared TTLCache.

    The router owns the read-through entries; this service lets callers
    inspect the cache, store their own values and drop prefixes.
    """

    name = "cache"

    def __init__(self, cache: TTLCache):
        super().__init__()
        self.cache = cache

    def get(self, key: str) -> Optional[Any]:
        return self.cache.get(key)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        if not key:
            raise ValidationError("Cache key is required", field="key")
        if value is None:
            raise ValidationError("Cache value cannot be None", field="value")
        if ttl is not None and ttl <= 0:
            raise ValidationError("TTL must be positive", field="ttl", actual=str(ttl))
        self.cache.set(key, value, ttl)
        return True

    def invalidate(self, prefix: str) -> int:
        if not prefix:
            raise ValidationError("Prefix is required; use clear() to drop everything", field="prefix")
        removed = self.cache.invalidate(prefix)
        self.logger.debug(f"Invalidated {removed} cache entries under '{prefix}'")
        return removed

    def clear(self) -> bool:
        self.cache.clear()
        return True

    def stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def sweep(self) -> int:
        removed = self.cache.sweep()
        if removed:
            self.logger.debug(f"Swept {removed} expired cache entries")
        return removed

    async def reset(self) -> None:
        self.cache.clear()
        self.cache.reset_stats()

    def metrics(self) -> Dict[str, Any]:
        return self.cache.stats()
