"""
Tests for the HTTP agent adapters, against an in-process mock transport.
"""

from __future__ import annotations

import httpx
import orjson
import pytest

from fakes import make_node
from replguard.clients.http_agent import (
    HttpReplicationDataSource,
    HttpRepairActuator,
    parse_status,
)
from replguard.core.errors import PermanentRemoteError, TransientRemoteError
from replguard.systems.healing.types import Remedy

_TEMPLATE = "https://{node}.corp.example:8443/replication"

_STATUS = {
    "partners": [
        {
            "partner": "dc02",
            "naming_context": "DC=corp,DC=example",
            "last_success": "2026-10-17T08:00:00+00:00",
            "last_attempt": "2026-10-17T08:05:00+00:00",
            "consecutive_failures": 0,
            "last_error_code": 0,
        }
    ]
}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestDataSource:
    @pytest.mark.asyncio
    async def test_query_parses_status(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=_STATUS)

        source = HttpReplicationDataSource(_TEMPLATE, client=_client(handler))
        snap = await source.query(make_node("dc01"))

        assert seen == ["https://dc01.corp.example:8443/replication/status"]
        assert snap.node == "dc01"
        assert snap.reachable
        assert snap.partners[0].partner == "dc02"
        assert snap.partners[0].last_success.hour == 8

    @pytest.mark.asyncio
    async def test_service_unavailable_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error_code": 1722})

        source = HttpReplicationDataSource(_TEMPLATE, client=_client(handler))
        with pytest.raises(TransientRemoteError) as exc_info:
            await source.query(make_node("dc01"))
        assert exc_info.value.code == 1722

    @pytest.mark.asyncio
    async def test_forbidden_is_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, text="denied")

        source = HttpReplicationDataSource(_TEMPLATE, client=_client(handler))
        with pytest.raises(PermanentRemoteError):
            await source.query(make_node("dc01"))

    @pytest.mark.asyncio
    async def test_connect_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        source = HttpReplicationDataSource(_TEMPLATE, client=_client(handler))
        with pytest.raises(TransientRemoteError):
            await source.query(make_node("dc01"))


class TestParseStatus:
    def test_directory_down_behind_agent(self):
        snap = parse_status(make_node("dc01"), {"reachable": False, "error_codes": [1722], "error": "rpc"})
        assert not snap.reachable
        assert snap.error_codes == (1722,)
        assert snap.error_message == "rpc"

    def test_malformed_partners(self):
        with pytest.raises(PermanentRemoteError):
            parse_status(make_node("dc01"), {"partners": [{"consecutive_failures": -1}]})

    def test_not_an_object(self):
        with pytest.raises(PermanentRemoteError):
            parse_status(make_node("dc01"), ["nope"])


class TestActuator:
    @pytest.mark.asyncio
    async def test_state_round_trips_unchanged(self):
        blob = {"schedule": "always", "flags": [1, 2, 3]}
        restored = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/state") and request.method == "GET":
                return httpx.Response(200, json=blob)
            if request.url.path.endswith("/state/restore"):
                restored.append(orjson.loads(request.content)["state"])
                return httpx.Response(204)
            return httpx.Response(404)

        actuator = HttpRepairActuator(_TEMPLATE, client=_client(handler))
        node = make_node("dc01")

        state = await actuator.capture_state(node)
        await actuator.restore(node, state)

        assert restored == [blob]

    @pytest.mark.asyncio
    async def test_apply_posts_remedy(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append((request.method, request.url.path))
            return httpx.Response(202)

        actuator = HttpRepairActuator(_TEMPLATE, client=_client(handler))
        await actuator.apply(make_node("dc01"), Remedy.FORCE_SYNC_PARTNER, {"partner": "dc02"})

        assert paths == [("POST", "/replication/remedies/force_sync_partner")]
