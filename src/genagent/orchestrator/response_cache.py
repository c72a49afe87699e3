"""
Response Cache.

LRU cache with TTL for provider responses to tool-free requests, keyed
by the request fingerprint. Requests that offer tools are never cached
since tool results depend on the outside world.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Any, Optional

from ..domain.entities import ProviderResponse

logger = logging.getLogger(__name__)


class ResponseCache:
    """In-memory LRU cache with per-entry TTL."""

    def __init__(self, max_size: int = 128, ttl_seconds: float = 300.0):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._entries: OrderedDict[str, tuple[ProviderResponse, float]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[ProviderResponse]:
        """Return the cached response or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        response, stored_at = entry
        if time.monotonic() - stored_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return response

    def put(self, key: str, response: ProviderResponse) -> None:
        """Store a response, evicting the least recently used entry when full."""
        self._entries[key] = (response, time.monotonic())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cached response {evicted[:12]}")

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
