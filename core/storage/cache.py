"""Read-through lookup cache scoped to one job run.

Replaces ad hoc module-level lookup dicts: every lookup goes through a
loader with a batch contract (``loader(keys) -> {key: value}``), results
are kept in a bounded LRU, and keys the loader did not return are cached
as misses so they are not re-queried within the run.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Iterable, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    loads: int = 0
    evictions: int = 0


class CachedLookup(Generic[K, V]):
    """Bounded read-through cache over a batch loader."""

    def __init__(self, loader: Callable[[List[K]], Dict[K, V]], max_size: int = 50_000, name: str = "lookup"):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.name = name
        self._loader = loader
        self._max_size = max_size
        self._entries: "OrderedDict[K, object]" = OrderedDict()
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def _store(self, key: K, value: object) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)
            self.stats.evictions += 1

    def get_many(self, keys: Iterable[K]) -> Dict[K, V]:
        """Values for ``keys``; keys with no value are absent from the result."""
        wanted = list(dict.fromkeys(keys))
        found: Dict[K, V] = {}
        missing: List[K] = []
        for key in wanted:
            if key in self._entries:
                self.stats.hits += 1
                self._entries.move_to_end(key)
                value = self._entries[key]
                if value is not _MISSING:
                    found[key] = value
            else:
                self.stats.misses += 1
                missing.append(key)

        if missing:
            self.stats.loads += 1
            loaded = self._loader(missing)
            for key in missing:
                value = loaded.get(key, _MISSING)
                self._store(key, value)
                if value is not _MISSING:
                    found[key] = value
        return found

    def get(self, key: K) -> Optional[V]:
        return self.get_many([key]).get(key)

    def prime(self, keys: Iterable[K]) -> None:
        """Batch-load keys ahead of per-item lookups."""
        self.get_many(keys)

    def put(self, key: K, value: V) -> None:
        """Record a value learned during the run (e.g. a fresh attribution)."""
        self._store(key, value)

    def clear(self) -> None:
        self._entries.clear()
