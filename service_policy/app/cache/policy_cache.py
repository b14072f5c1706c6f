"""
Versioned in-memory cache for resolved policy results.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class CacheKey:
    """Entries embed the version of the rule set they were computed from."""
    namespace: str
    version: int
    lookup: Tuple[Hashable, ...]


class PolicyCache:
    """Time-boxed, size-bounded LRU cache keyed by (namespace, version, lookup).

    One instance per process, injected into the policy service. Values are
    treated as immutable by callers; the cache never copies them.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 10000,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.logger = get_logger("policy.cache")
        self.metrics = metrics
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "invalidations": 0}

    def get(self, namespace: str, version: int, lookup: Tuple[Hashable, ...]) -> Optional[Any]:
        key = CacheKey(namespace, version, lookup)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[1] > now:
                self._entries.move_to_end(key)
                self._stats["hits"] += 1
                result = "hit"
                value = entry[0]
            else:
                if entry is not None:
                    del self._entries[key]
                self._stats["misses"] += 1
                result = "miss"
                value = None

        self._record(namespace, result)
        return value

    def set(self, namespace: str, version: int, lookup: Tuple[Hashable, ...], value: Any) -> None:
        key = CacheKey(namespace, version, lookup)
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries[key] = (value, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._stats["evictions"] += 1
            size = len(self._entries)

        if self.metrics:
            self.metrics.set_gauge("policy_cache_entries", size)

    def invalidate_stale(self, namespace: str, current_version: int) -> int:
        """Drop entries of a namespace computed from any other version."""
        return self._drop(lambda key: key.namespace == namespace and key.version != current_version, namespace)

    def invalidate(
        self,
        namespace: str,
        predicate: Optional[Callable[[Tuple[Hashable, ...]], bool]] = None
    ) -> int:
        """Drop entries of a namespace, optionally only those whose lookup matches."""
        return self._drop(
            lambda key: key.namespace == namespace and (predicate is None or predicate(key.lookup)),
            namespace
        )

    def clear(self) -> None:
        with self._lock:
            self._stats["invalidations"] += len(self._entries)
            self._entries.clear()

    def _drop(self, matches: Callable[[CacheKey], bool], namespace: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if matches(key)]
            for key in doomed:
                del self._entries[key]
            self._stats["invalidations"] += len(doomed)

        if doomed:
            self.logger.debug("Cache entries invalidated", namespace=namespace, count=len(doomed))
            if self.metrics:
                self.metrics.record_cache_event(namespace, "invalidated")
        return len(doomed)

    def _record(self, namespace: str, result: str) -> None:
        if self.metrics:
            self.metrics.record_cache_event(namespace, result)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            stats["entries"] = len(self._entries)
        lookups = stats["hits"] + stats["misses"]
        stats["hit_ratio"] = round(stats["hits"] / lookups, 4) if lookups else 0.0
        return stats
