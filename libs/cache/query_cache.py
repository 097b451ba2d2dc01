"""In-process query cache addressed by tuple keys.

Keys are tuples so whole families of entries can be addressed by prefix:

    ("members",)                          every member query
    ("members", "list")                   every list view
    ("members", "list", <params>)         one list view
    ("members", "detail", "<id>")         one member

Invalidation marks entries stale instead of dropping them, so a view keeps
showing its last known value until the read path refetches it.

Usage:
    cache = InMemoryQueryCache(stale_after=300)
    cache.set(("members", "detail", "m1"), member)
    cache.invalidate(("members", "list"))
    if cache.is_stale(("members", "list", params)):
        ...  # refetch
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterable, Optional, Protocol

from libs.common.logging import get_logger

logger = get_logger(__name__)

CacheKey = tuple[Hashable, ...]


@dataclass
class CacheEntry:
    value: Any
    stale: bool = False
    updated_at: float = field(default_factory=time.monotonic)


class QueryCache(Protocol):
    """Port the members core depends on; swap in any store that honours it."""

    def get(self, key: CacheKey) -> Optional[Any]: ...

    def get_entry(self, key: CacheKey) -> Optional[CacheEntry]: ...

    def set(self, key: CacheKey, value: Any) -> None: ...

    def patch(self, key: CacheKey, updater: Callable[[Any], Any]) -> bool: ...

    def remove(self, key: CacheKey) -> bool: ...

    def invalidate(self, prefix: CacheKey) -> int: ...

    def entries(self, prefix: CacheKey) -> list[tuple[CacheKey, CacheEntry]]: ...

    def is_stale(self, key: CacheKey) -> bool: ...


def _has_prefix(key: CacheKey, prefix: CacheKey) -> bool:
    return key[: len(prefix)] == prefix


class InMemoryQueryCache:
    """
    Dict-backed ``QueryCache``.

    Args:
        stale_after: Seconds after which an entry counts as stale even if it
            was never invalidated. ``None`` keeps entries fresh until
            invalidated.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        stale_after: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stale_after = stale_after
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}

    def get(self, key: CacheKey) -> Optional[Any]:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def get_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, updated_at=self._clock())

    def patch(self, key: CacheKey, updater: Callable[[Any], Any]) -> bool:
        """Replace an existing value in place. Missing keys are left missing."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.value = updater(entry.value)
        return True

    def remove(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate(self, prefix: CacheKey) -> int:
        count = 0
        for key, entry in self._entries.items():
            if _has_prefix(key, prefix):
                entry.stale = True
                count += 1
        if count:
            logger.debug("Invalidated %d cache entries under %s", count, prefix)
        return count

    def entries(self, prefix: CacheKey) -> list[tuple[CacheKey, CacheEntry]]:
        return [
            (key, entry)
            for key, entry in list(self._entries.items())
            if _has_prefix(key, prefix)
        ]

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.stale:
            return True
        if self.stale_after is None:
            return False
        return self._clock() - entry.updated_at > self.stale_after

    def keys(self) -> Iterable[CacheKey]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()
