"""
ReplGuard — Collaborator Interfaces

The core talks to the outside world only through these protocols.
Adapters in this package implement them; tests substitute fakes.

Not enforced at runtime (duck typing).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from replguard.primitives.fleet import Node, ScopeSelector, Snapshot
    from replguard.systems.delta.types import CacheEntry
    from replguard.systems.healing.types import Remedy
    from replguard.systems.orchestrator.types import RunSummary
    from replguard.systems.scoring.types import HealthScore


class TopologyResolver(Protocol):
    """Enumerates the nodes in scope. Raises TopologyResolutionError on failure."""

    async def resolve(self, scope: ScopeSelector) -> list[Node]: ...


class ReplicationDataSource(Protocol):
    """
    Reads one node's replication metadata.

    Must classify its own failures by raising TransientRemoteError or
    PermanentRemoteError so the backoff executor applies the right policy.
    """

    async def query(self, node: Node) -> Snapshot: ...


class RepairActuator(Protocol):
    """
    Performs remedies and round-trips opaque pre-action state.

    The state blob returned by capture_state() is never inspected by the
    core; it is handed back unchanged to restore().
    """

    async def capture_state(self, node: Node) -> Any: ...

    async def apply(self, node: Node, remedy: Remedy, detail: dict[str, Any]) -> None: ...

    async def restore(self, node: Node, state: Any) -> None: ...


class CacheStore(Protocol):
    """Durable per-node persistence surviving process restarts."""

    async def load(self) -> dict[str, CacheEntry]: ...

    async def save(self, entries: dict[str, CacheEntry]) -> None: ...


class Reporter(Protocol):
    """Renders a run summary somewhere (file, stdout, ...)."""

    name: str

    async def publish(self, summary: RunSummary) -> None: ...


class Notifier(Protocol):
    """Delivers a run summary to people (chat, mail, ...)."""

    name: str

    async def notify(self, summary: RunSummary) -> None: ...


class ScoreHistory(Protocol):
    """Append-only record of every run's health score."""

    async def append_score(self, run_id: str, mode: str, score: HealthScore) -> None: ...

    async def write_metrics(self, batch: list[dict[str, Any]]) -> None: ...
