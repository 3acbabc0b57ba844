"""
ReplGuard — Delta Cache

Skip-if-recently-healthy bookkeeping persisted across runs.
"""

from replguard.systems.delta.cache import DeltaCache
from replguard.systems.delta.types import CacheEntry, FilterResult

__all__ = ["CacheEntry", "DeltaCache", "FilterResult"]
