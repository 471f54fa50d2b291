"""Pooled tool instances keyed by (kind, name)."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import ToolNotFoundError
from .base import Tool

logger = logging.getLogger(__name__)

ToolFactory = Callable[[str], Tool]


@dataclass
class ToolRegistryConfig:
    max_cache_size: int = 100  # Pooled instances across all keys
    idle_ttl: float = 1800.0  # Seconds an idle instance is kept

    def validate(self) -> list[str]:
        errors = []
        if self.max_cache_size < 1:
            errors.append(f"tools.max_cache_size must be >= 1, got {self.max_cache_size}")
        if self.idle_ttl <= 0:
            errors.append(f"tools.idle_ttl must be positive, got {self.idle_ttl}")
        return errors


@dataclass
class _PoolEntry:
    key: tuple[str, str]
    tool: Tool
    in_use: bool
    last_used: float


class ToolRegistry:
    """Resolves and pools tool instances.

    ``resolve`` hands out an idle instance for the key (creating and
    initializing one when none is idle) and marks it in use; ``release``
    returns it. An instance is never handed to two callers at once. Idle
    instances expire after ``idle_ttl`` and the oldest idle ones are evicted
    when the pool grows past ``max_cache_size``. Expiry is swept on access.
    """

    def __init__(self, config: ToolRegistryConfig | None = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or ToolRegistryConfig()
        self._clock = clock
        self._factories: dict[tuple[str, str], ToolFactory] = {}
        self._pool: list[_PoolEntry] = []
        self.created = 0
        self.reused = 0

    def register(self, kind: str, factory: ToolFactory, name: str = "default") -> None:
        """Register a factory (usually a Tool subclass) for ``(kind, name)``."""
        self._factories[(kind, name)] = factory
        logger.debug(f"Registered tool {kind}:{name}")

    def unregister(self, kind: str, name: str = "default") -> None:
        self._factories.pop((kind, name), None)

    def is_registered(self, kind: str, name: str = "default") -> bool:
        return (kind, name) in self._factories or (kind, "default") in self._factories

    def registered(self) -> list[tuple[str, str]]:
        return sorted(self._factories)

    async def resolve(self, kind: str, name: str = "default") -> Tool:
        """
        Acquire a tool instance for exclusive use.

        Falls back to the ``(kind, "default")`` factory when no factory is
        registered under ``name``.

        Raises:
            ToolNotFoundError: If neither key has a factory
        """
        await self.sweep()

        key = (kind, name)
        for entry in self._pool:
            if entry.key == key and not entry.in_use:
                entry.in_use = True
                entry.last_used = self._clock()
                self.reused += 1
                return entry.tool

        factory = self._factories.get(key) or self._factories.get((kind, "default"))
        if factory is None:
            raise ToolNotFoundError(kind, name)

        await self._evict_idle(reserve=1)

        tool = factory(name)
        entry = _PoolEntry(key=key, tool=tool, in_use=True, last_used=self._clock())
        self._pool.append(entry)
        try:
            await tool.initialize()
        except Exception:
            self._pool.remove(entry)
            raise
        self.created += 1
        logger.debug(f"Created tool instance {kind}:{name} (pool size {len(self._pool)})")
        return tool

    async def release(self, tool: Tool) -> None:
        """Return an instance to the pool. Cleaned-up instances are dropped."""
        entry = next((e for e in self._pool if e.tool is tool), None)
        if entry is None:
            if not tool.is_cleaned_up:
                await tool.cleanup()
            return

        if tool.is_cleaned_up:
            self._pool.remove(entry)
            return

        entry.in_use = False
        entry.last_used = self._clock()
        await self._evict_idle()

    async def sweep(self) -> int:
        """Clean up idle instances older than ``idle_ttl``. Returns how many."""
        now = self._clock()
        expired = [e for e in self._pool if not e.in_use and now - e.last_used > self.config.idle_ttl]
        for entry in expired:
            await self._discard(entry)
        if expired:
            logger.debug(f"Swept {len(expired)} idle tool instances")
        return len(expired)

    async def clear(self) -> None:
        """Clean up every pooled instance, including ones in use."""
        for entry in list(self._pool):
            await self._discard(entry)

    def stats(self) -> dict[str, int]:
        in_use = sum(1 for e in self._pool if e.in_use)
        return {
            "registered": len(self._factories),
            "pooled": len(self._pool),
            "in_use": in_use,
            "idle": len(self._pool) - in_use,
            "created": self.created,
            "reused": self.reused,
        }

    async def _evict_idle(self, reserve: int = 0) -> None:
        # Instances in use are never evicted; the pool may briefly exceed its size
        overflow = len(self._pool) + reserve - self.config.max_cache_size
        if overflow <= 0:
            return
        idle = sorted((e for e in self._pool if not e.in_use), key=lambda e: e.last_used)
        for entry in idle[:overflow]:
            await self._discard(entry)

    async def _discard(self, entry: _PoolEntry) -> None:
        if entry in self._pool:
            self._pool.remove(entry)
        if not entry.tool.is_cleaned_up:
            try:
                await entry.tool.cleanup()
            except Exception:
                logger.warning(f"Cleanup failed for {entry.tool!r}", exc_info=True)
