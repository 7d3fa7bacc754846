# 📂 backend/hostbill/cache.py — in-process TTL cache
# -----------------------------------------------------------------------------
# Plain TTL map used by the mining pool client:
#   • get() logs MISS / EXPIRED / HIT; expired entries are removed on read only.
#   • set() takes an optional per-entry ttl (seconds, must be positive).
#   • invalidate(), invalidate_pattern(regex), clear(), stats().
# Process local: every worker holds its own copy.
# -----------------------------------------------------------------------------

from __future__ import annotations

import re
import time
from typing import Any, Dict, Hashable, Optional, Tuple

from .config import get_settings
from .utils import get_logger

log = get_logger("cache")


class TTLCache:
    def __init__(self, default_ttl: int = 600):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self._store: Dict[Hashable, Tuple[Any, float]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            log.debug("[Cache] MISS %s", key)
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._store[key]
            log.debug("[Cache] EXPIRED %s", key)
            return None
        log.debug("[Cache] HIT %s", key)
        return value

    def set(self, key: Hashable, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._store[key] = (value, time.monotonic() + ttl)

    def invalidate(self, key: Hashable) -> bool:
        return self._store.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str) -> int:
        """Drops every key whose str() matches the regex; returns the count."""
        rx = re.compile(pattern)
        doomed = [k for k in self._store if rx.search(str(k))]
        for k in doomed:
            del self._store[k]
        if doomed:
            log.debug("[Cache] invalidated %d keys for /%s/", len(doomed), pattern)
        return len(doomed)

    def clear(self) -> None:
        self._store.clear()

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self._store), "keys": [str(k) for k in self._store]}


pool_cache = TTLCache(default_ttl=get_settings().CACHE_DEFAULT_TTL)
