"""
Short-lived in-process cache for non-streaming completions.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ztoapi.logging_config import logger

CACHE_KEY_PREFIX_CHARS = 100
SWEEP_THRESHOLD = 100


@dataclass
class CacheEntry:
    value: str
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


def build_cache_key(model: str, contents: Iterable[str], stream: bool) -> str:
    """
    model + first 100 chars of the joined message contents + stream flag.

    Conversations sharing the same leading 100 characters collide on purpose;
    the short TTL bounds how stale a wrong hit can be.
    """
    joined = "|".join(contents)[:CACHE_KEY_PREFIX_CHARS]
    return f"{model}:{joined}:{'stream' if stream else 'sync'}"


class ResponseCache:
    def __init__(
        self,
        *,
        ttl: float = 60.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        ttl = self.ttl if ttl is None else ttl
        if ttl <= 0 or not value:
            return
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl)
        if len(self._entries) > SWEEP_THRESHOLD:
            self.sweep()
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("response cache full, evicted %s", evicted[:40])

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["CacheEntry", "ResponseCache", "build_cache_key"]
