"""
ReplGuard — Delta Cache

Remembers when each node was last checked and how it looked, so that
repeated runs can skip nodes recently confirmed healthy.

Rules:
  1. Skip a node only if it was HEALTHY and was checked less than
     threshold_minutes ago.
  2. DEGRADED and UNREACHABLE nodes are always due. A known problem is
     never hidden by the cache.
  3. force_full bypasses the cache for one run without discarding entries.
  4. Unreadable or corrupt persisted state degrades to "everything due".
  5. Entries older than the retention horizon are purged on load.

Each node's entry is written only by the task processing that node, so
in-run updates need no locking. The whole map is persisted once, at end
of run, inside a single critical section.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from replguard.core.errors import CacheCorruptionError, CacheStoreError
from replguard.primitives.common import utc_now
from replguard.primitives.fleet import Node, NodeStatus
from replguard.systems.delta.types import CacheEntry, FilterResult

if TYPE_CHECKING:
    from replguard.clients.interfaces import CacheStore

logger = structlog.get_logger("replguard.systems.delta")

Clock = Callable[[], datetime]


class DeltaCache:
    """Injected store behind a narrow get / set / prune interface."""

    def __init__(
        self,
        store: CacheStore,
        retention_days: int = 90,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._retention = timedelta(days=retention_days)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._loaded: bool = False
        self._degraded: bool = False
        self._dirty: bool = False
        self._flush_lock = asyncio.Lock()
        self._logger = logger.bind(component="delta_cache")

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def load(self) -> None:
        """Load persisted entries, purging those past retention."""
        try:
            entries = await self._store.load()
        except (CacheCorruptionError, OSError) as exc:
            self._entries = {}
            self._degraded = True
            self._logger.warning("cache_unreadable_full_scan", error=str(exc))
        else:
            self._entries = dict(entries)
            self._degraded = False
            purged = self._purge_expired()
            if purged:
                self._dirty = True
                self._logger.info("cache_entries_purged", count=purged)
        self._loaded = True
        self._logger.debug("cache_loaded", entries=len(self._entries), degraded=self._degraded)

    async def flush(self) -> None:
        """
        Persist the whole map atomically.

        Raises CacheStoreError if the store cannot be written.
        """
        async with self._flush_lock:
            if not self._dirty and not self._degraded:
                return
            try:
                await self._store.save(dict(self._entries))
            except CacheStoreError:
                raise
            except OSError as exc:
                raise CacheStoreError(f"Cache store unavailable: {exc}") from exc
            self._dirty = False
            self._degraded = False
            self._logger.debug("cache_flushed", entries=len(self._entries))

    # ─── Narrow Interface ────────────────────────────────────────────

    def get(self, node: str) -> CacheEntry | None:
        return self._entries.get(_key(node))

    def set(self, entry: CacheEntry) -> None:
        self._entries[_key(entry.node)] = entry
        self._dirty = True

    def prune(self, active_nodes: Iterable[str] | None = None) -> int:
        """
        Drop expired entries and, when the current topology is given,
        entries for nodes that no longer exist. Returns count removed.
        """
        removed = self._purge_expired()
        if active_nodes is not None:
            keep = {_key(n) for n in active_nodes}
            gone = [k for k in self._entries if k not in keep]
            for k in gone:
                del self._entries[k]
            removed += len(gone)
        if removed:
            self._dirty = True
        return removed

    # ─── Operations ──────────────────────────────────────────────────

    def filter_due(
        self,
        nodes: list[Node],
        threshold_minutes: float,
        force_full: bool = False,
    ) -> FilterResult:
        """Split nodes into those due for a check and those safely skipped."""
        if force_full or self._degraded or not self._loaded:
            if force_full:
                self._logger.info("cache_bypassed_force_full", nodes=len(nodes))
            return FilterResult(due=list(nodes), cache_degraded=self._degraded)

        now = self._clock()
        threshold = timedelta(minutes=threshold_minutes)
        result = FilterResult()

        for node in nodes:
            entry = self.get(node.name)
            if (
                entry is not None
                and entry.status == NodeStatus.HEALTHY
                and now - entry.last_check < threshold
            ):
                result.skipped.append(node)
            else:
                result.due.append(node)

        self._logger.info(
            "delta_filter_applied",
            due=len(result.due),
            skipped=len(result.skipped),
            threshold_minutes=threshold_minutes,
        )
        return result

    def update(self, node: str, status: NodeStatus) -> CacheEntry:
        """Record the outcome of checking one node."""
        previous = self.get(node)
        streak = 0
        if status == NodeStatus.HEALTHY:
            streak = (previous.consecutive_healthy if previous else 0) + 1
        entry = CacheEntry(
            node=node,
            last_check=self._clock(),
            status=status,
            consecutive_healthy=streak,
        )
        self.set(entry)
        return entry

    # ─── Internals ───────────────────────────────────────────────────

    def _purge_expired(self) -> int:
        cutoff = self._clock() - self._retention
        expired = [k for k, e in self._entries.items() if e.last_check < cutoff]
        for k in expired:
            del self._entries[k]
        return len(expired)

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def size(self) -> int:
        return len(self._entries)


def _key(node: str) -> str:
    return node.lower()
