"""
ReplGuard — Fleet Primitives

Nodes under observation and the point-in-time snapshots read from them.
Snapshots are the stable data contract at the core boundary: all
collaborator-specific parsing happens in an adapter before one is built.
"""

from __future__ import annotations

from datetime import datetime
import enum

from pydantic import Field

from replguard.primitives.common import FrozenModel, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class NodeStatus(enum.StrEnum):
    """Last-known health of a node, as remembered by the delta cache."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class ScopeKind(enum.StrEnum):
    """Which part of the fleet a run targets."""

    EXPLICIT = "explicit"  # Named nodes only
    SITE = "site"  # Every node in one site
    FLEET = "fleet"  # Every known node


# ─── Topology ─────────────────────────────────────────────────────


class Node(FrozenModel):
    """One replicated directory server instance. Immutable per run."""

    name: str
    site: str = ""
    is_global_catalog: bool = False
    is_read_only: bool = False
    is_pdc_emulator: bool = False


class ScopeSelector(FrozenModel):
    """Scope handed to the topology resolver."""

    kind: ScopeKind = ScopeKind.FLEET
    nodes: tuple[str, ...] = ()
    site: str = ""

    @classmethod
    def explicit(cls, names: list[str] | tuple[str, ...]) -> ScopeSelector:
        return cls(kind=ScopeKind.EXPLICIT, nodes=tuple(names))

    @classmethod
    def for_site(cls, site: str) -> ScopeSelector:
        return cls(kind=ScopeKind.SITE, site=site)

    @classmethod
    def fleet(cls) -> ScopeSelector:
        return cls(kind=ScopeKind.FLEET)


# ─── Snapshot ─────────────────────────────────────────────────────


class PartnerLink(FrozenModel):
    """Inbound replication state from one partner for one naming context."""

    partner: str
    naming_context: str = ""
    last_success: datetime | None = None
    last_attempt: datetime | None = None
    consecutive_failures: int = Field(default=0, ge=0)
    last_error_code: int = 0
    queue_depth: int = Field(default=0, ge=0)
    latency_s: float | None = None


class Snapshot(FrozenModel):
    """
    Result of querying one node at one point in time.

    Owned by the run that produced it and never mutated after creation.
    An unreachable snapshot carries the raw error codes instead of
    partner data.
    """

    node: str
    reachable: bool = True
    captured_at: datetime = Field(default_factory=utc_now)
    partners: tuple[PartnerLink, ...] = ()
    error_codes: tuple[int, ...] = ()
    error_message: str = ""

    @classmethod
    def unreachable(
        cls,
        node: str,
        error_codes: tuple[int, ...] | list[int] = (),
        error_message: str = "",
    ) -> Snapshot:
        return cls(
            node=node,
            reachable=False,
            error_codes=tuple(error_codes),
            error_message=error_message,
        )

    @property
    def oldest_success(self) -> datetime | None:
        """Oldest last-successful-sync across partners that ever succeeded."""
        stamps = [p.last_success for p in self.partners if p.last_success is not None]
        return min(stamps) if stamps else None
