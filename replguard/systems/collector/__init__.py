"""
ReplGuard — Snapshot Collector

Bounded-concurrency node polling with retry/backoff.
"""

from replguard.systems.collector.service import SnapshotCollector
from replguard.systems.collector.types import (
    CollectionError,
    CollectionFailure,
    CollectionResult,
)

__all__ = [
    "CollectionError",
    "CollectionFailure",
    "CollectionResult",
    "SnapshotCollector",
]
