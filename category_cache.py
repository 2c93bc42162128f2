import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, List, NamedTuple, Optional

import settings

logger = logging.getLogger(__name__)


class _Entry(NamedTuple):
    value: Any
    stored_at: float


class CategoryCache:
    """
    Time-boxed cache for category reads.

    Holds one "all categories" snapshot and a bounded map of single-category
    lookups keyed by id or slug (least recently used evicted first). Entries
    are fresh while ``clock() - stored_at < ttl``. Any category write must
    call ``invalidate()``, which drops everything regardless of age; a load
    that was already running when it was called is returned but not stored.

    When a refresh fails the last snapshot (or keyed entry) is served even if
    stale; with nothing cached the loader's exception propagates.
    """

    def __init__(self, ttl: float = settings.CATEGORY_CACHE_TTL, max_entries: int = settings.CATEGORY_CACHE_MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._all: Optional[_Entry] = None
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        # bumped by invalidate(); loads started under an older generation are not stored
        self._generation = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def has_snapshot(self) -> bool:
        return self._all is not None

    def _is_fresh(self, entry: Optional[_Entry]) -> bool:
        return entry is not None and self._clock() - entry.stored_at < self.ttl

    def get_all(self, loader: Callable[[], List[Any]]) -> List[Any]:
        with self._lock:
            entry = self._all
            generation = self._generation
        if self._is_fresh(entry):
            return entry.value
        try:
            value = loader()
        except Exception:
            if entry is None:
                raise
            logger.warning("Category list refresh failed, serving snapshot from %.0fs ago",
                           self._clock() - entry.stored_at, exc_info=True)
            return entry.value
        with self._lock:
            if generation == self._generation:
                self._all = _Entry(value, self._clock())
        return value

    def get_one(self, key: str, loader: Callable[[], Optional[Any]]) -> Optional[Any]:
        """Cached single lookup; a loader result of None is returned but not stored."""
        with self._lock:
            entry = self._entries.get(key)
            generation = self._generation
            if self._is_fresh(entry):
                self._entries.move_to_end(key)
                return entry.value
        try:
            value = loader()
        except Exception:
            if entry is None:
                raise
            logger.warning("Category lookup %r failed, serving stale entry", key, exc_info=True)
            return entry.value
        if value is not None:
            with self._lock:
                if generation != self._generation:
                    return value
                self._entries[key] = _Entry(value, self._clock())
                self._entries.move_to_end(key)
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._all = None
            self._entries.clear()
            self._generation += 1
        logger.debug("Category cache invalidated")
