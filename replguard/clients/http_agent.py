"""
ReplGuard — HTTP Agent Adapters

Talks to a small replication agent on each node:

  GET  /status              — replication metadata (one Snapshot)
  GET  /state               — opaque pre-action state blob
  POST /remedies/{remedy}   — apply one remedy
  POST /state/restore       — hand a captured blob back

All agent-specific parsing happens here; the engine only sees
Snapshots and classified remote errors.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from replguard.core.errors import PermanentRemoteError, TransientRemoteError
from replguard.primitives.fleet import Node, PartnerLink, Snapshot
from replguard.systems.healing.types import Remedy

logger = structlog.get_logger("replguard.clients.http_agent")

# Worth retrying: the agent or something in front of it is busy or restarting
_TRANSIENT_STATUS: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})


class _AgentClient:
    """Shared connection handling and error classification."""

    def __init__(
        self,
        base_url_template: str,
        *,
        token: str = "",
        verify_tls: bool = True,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._template = base_url_template
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=5.0),
            verify=verify_tls,
            headers=headers,
        )

    def url(self, node: Node, path: str) -> str:
        base = self._template.format(node=node.name, site=node.site)
        return f"{base.rstrip('/')}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        node: Node,
        path: str,
        *,
        json: Any = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, self.url(node, path), json=json)
        except httpx.TransportError as exc:
            # Connect errors, read timeouts, dropped connections
            raise TransientRemoteError(f"{node.name}: {type(exc).__name__}: {exc}") from exc

        if resp.is_success:
            return resp

        code = _error_code(resp)
        message = f"{node.name}: {method} {path} returned HTTP {resp.status_code}"
        if resp.status_code in _TRANSIENT_STATUS or resp.status_code >= 500:
            raise TransientRemoteError(message, code=code, status=resp.status_code)
        raise PermanentRemoteError(message, code=code, status=resp.status_code)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_code(resp: httpx.Response) -> int:
    """Directory error code from an agent error body, if it sent one."""
    try:
        body = resp.json()
    except ValueError:
        return 0
    if isinstance(body, dict):
        try:
            return int(body.get("error_code", 0) or 0)
        except (TypeError, ValueError):
            return 0
    return 0


class HttpReplicationDataSource(_AgentClient):
    """ReplicationDataSource over the agent's /status endpoint."""

    async def query(self, node: Node) -> Snapshot:
        resp = await self.request("GET", node, "/status")
        try:
            body = resp.json()
        except ValueError as exc:
            raise PermanentRemoteError(f"{node.name}: status body is not JSON") from exc
        return parse_status(node, body)


def parse_status(node: Node, body: Any) -> Snapshot:
    """Agent /status payload → Snapshot."""
    if not isinstance(body, dict):
        raise PermanentRemoteError(f"{node.name}: status body is not an object")

    # The agent answered, but the directory service behind it did not
    if body.get("reachable") is False:
        return Snapshot.unreachable(
            node.name,
            [int(c) for c in body.get("error_codes", [])],
            str(body.get("error", "")),
        )

    try:
        partners = tuple(PartnerLink.model_validate(p) for p in body.get("partners", []))
    except ValidationError as exc:
        raise PermanentRemoteError(f"{node.name}: malformed partner data: {exc}") from exc
    return Snapshot(node=node.name, partners=partners)


class HttpRepairActuator(_AgentClient):
    """RepairActuator over the agent's remedy and state endpoints."""

    async def capture_state(self, node: Node) -> Any:
        resp = await self.request("GET", node, "/state")
        try:
            return resp.json()
        except ValueError:
            # Not JSON: keep the raw text, restore() sends it back as-is
            return resp.text

    async def apply(self, node: Node, remedy: Remedy, detail: dict[str, Any]) -> None:
        logger.info("remedy_requested", node=node.name, remedy=remedy.value)
        await self.request("POST", node, f"/remedies/{remedy.value}", json=detail)

    async def restore(self, node: Node, state: Any) -> None:
        logger.info("restore_requested", node=node.name)
        await self.request("POST", node, "/state/restore", json={"state": state})
