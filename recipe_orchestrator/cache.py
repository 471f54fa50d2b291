"""In-memory TTL cache for loaded recipes."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    enabled: bool = True
    ttl: float = 3600.0  # Seconds an entry stays valid
    sweep_interval: float = 600.0  # Minimum seconds between expiry sweeps

    def validate(self) -> list[str]:
        errors = []
        if self.ttl <= 0:
            errors.append(f"cache.ttl must be positive, got {self.ttl}")
        if self.sweep_interval < 0:
            errors.append(f"cache.sweep_interval must be >= 0, got {self.sweep_interval}")
        return errors


@dataclass
class _Entry:
    value: Any
    stored_at: float


class RecipeCache:
    """Timestamped map keyed by source cache key.

    Expired entries are dropped when read, and a full sweep runs on access at
    most once per ``sweep_interval``. Scoped to one engine instance.
    """

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._last_sweep = clock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        if not self.config.enabled:
            return None
        self._maybe_sweep()
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._expired(entry):
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any) -> None:
        if not self.config.enabled:
            return
        self._maybe_sweep()
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        expired = [key for key, entry in self._entries.items() if self._expired(entry)]
        for key in expired:
            del self._entries[key]
        self._last_sweep = self._clock()
        if expired:
            logger.debug(f"Swept {len(expired)} expired recipe cache entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry)

    def _expired(self, entry: _Entry) -> bool:
        return self._clock() - entry.stored_at > self.config.ttl

    def _maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep >= self.config.sweep_interval:
            self.sweep()
