"""
Caches.

- TTLCache: in-memory, capacity-bounded LRU where every entry also expires a
  fixed time after insertion. Used for user-id -> display-name lookups.
- DMCache: the persisted DM discovery result. The file is trusted as a whole
  or discarded as a whole once older than its TTL (24h by default).
"""

from __future__ import annotations

import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, Hashable, TypeVar

import aiofiles
from loguru import logger

from slackmirror.files import atomic_write

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: float   # clock() value after which the entry is dead


class TTLCache(Generic[K, V]):
    """LRU cache with per-entry absolute expiry.

    Reads do not extend an entry's lifetime; they only move it to the
    most-recently-used end.
    """

    def __init__(
        self,
        max_size: int = 500,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"[cache] Evicted {evicted!r}")
        self._entries[key] = CacheEntry(value, self._clock() + self.ttl)

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and self._clock() < entry.expires_at

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"TTLCache(size={len(self._entries)}, max_size={self.max_size}, ttl={self.ttl})"


class DMCache:
    """Persisted DM discovery cache.

    File layout::

        {"entries": {"<channel_id>": {...}}, "updatedAt": <epoch-ms>}
    """

    def __init__(
        self,
        path: str | Path = "~/.slack-mcp-dm-cache.json",
        ttl: float = 24 * 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path).expanduser()
        self.ttl = ttl
        self._clock = clock

    async def load(self) -> dict[str, Any] | None:
        """Return the cached entries, or None when missing, malformed or stale."""
        if not self.path.exists():
            return None
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning(f"[cache] Ignoring unreadable DM cache {self.path}: {exc}")
            return None

        if not isinstance(data, dict) or not isinstance(data.get("entries"), dict):
            logger.warning(f"[cache] Ignoring malformed DM cache {self.path}")
            return None

        updated_ms = data.get("updatedAt")
        if not isinstance(updated_ms, (int, float)):
            return None
        age = self._clock() - updated_ms / 1000
        if age > self.ttl:
            logger.info(f"[cache] DM cache is stale ({age / 3600:.1f}h old), discarding")
            return None
        return data["entries"]

    async def save(self, entries: dict[str, Any]) -> None:
        payload = {"entries": entries, "updatedAt": int(self._clock() * 1000)}
        await atomic_write(self.path, json.dumps(payload, indent=2, ensure_ascii=False))
        logger.debug(f"[cache] Saved {len(entries)} DM entries to {self.path}")

    async def age_seconds(self) -> float | None:
        """Age of the cache file contents, or None when absent/unreadable."""
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
            return self._clock() - float(data["updatedAt"]) / 1000
        except (OSError, ValueError, KeyError, TypeError):
            return None
