"""
ReplGuard — Inventory Topology Resolver

Resolves scope selectors against a YAML inventory file:

    nodes:
      - name: dc01
        site: HQ
        global_catalog: true
        pdc_emulator: true
      - name: dc02
        site: Branch
        read_only: true
      - dc03            # bare names are allowed

Explicit node lists may name hosts that are not in the inventory; they
are resolved as bare nodes so ad-hoc targets still work.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from replguard.core.errors import TopologyResolutionError
from replguard.primitives.fleet import Node, ScopeKind, ScopeSelector

logger = structlog.get_logger("replguard.clients.topology")


def _to_node(raw: Any) -> Node:
    if isinstance(raw, str):
        return Node(name=raw)
    if not isinstance(raw, dict):
        raise TopologyResolutionError(f"Inventory entry is not a name or mapping: {raw!r}")
    name = str(raw.get("name", "") or "").strip()
    if not name:
        raise TopologyResolutionError(f"Inventory entry has no name: {raw!r}")
    return Node(
        name=name,
        site=raw.get("site", "") or "",
        is_global_catalog=bool(raw.get("global_catalog", False)),
        is_read_only=bool(raw.get("read_only", False)),
        is_pdc_emulator=bool(raw.get("pdc_emulator", False)),
    )


class InventoryTopologyResolver:
    """TopologyResolver backed by a YAML file, re-read on every resolve."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._logger = logger.bind(component="inventory_resolver", path=str(self._path))

    async def resolve(self, scope: ScopeSelector) -> list[Node]:
        if scope.kind == ScopeKind.EXPLICIT and not self._path.exists():
            # Explicit targets need no inventory
            nodes = [Node(name=n) for n in scope.nodes]
        else:
            inventory = await asyncio.to_thread(self._load)
            nodes = self._select(inventory, scope)

        if not nodes:
            raise TopologyResolutionError(
                f"No nodes matched {scope.kind.value} scope",
                site=scope.site,
                nodes=list(scope.nodes),
            )
        self._logger.info("topology_resolved", scope=scope.kind.value, nodes=len(nodes))
        return nodes

    def _load(self) -> list[Node]:
        try:
            with open(self._path) as f:
                doc = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise TopologyResolutionError(f"Cannot read inventory: {exc}") from exc

        entries = doc.get("nodes", []) if isinstance(doc, dict) else doc
        if not isinstance(entries, list):
            raise TopologyResolutionError("Inventory 'nodes' must be a list")
        try:
            return [_to_node(e) for e in entries]
        except ValidationError as exc:
            raise TopologyResolutionError(f"Invalid inventory entry: {exc}") from exc

    @staticmethod
    def _select(inventory: list[Node], scope: ScopeSelector) -> list[Node]:
        if scope.kind == ScopeKind.FLEET:
            return inventory
        if scope.kind == ScopeKind.SITE:
            site = scope.site.lower()
            return [n for n in inventory if n.site.lower() == site]

        known = {n.name.lower(): n for n in inventory}
        return [known.get(name.lower(), Node(name=name)) for name in scope.nodes]
