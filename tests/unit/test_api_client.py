from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio

from neemee_mcp.api_client import BackendError, NeemeeApiClient, RemoteNotesService
from neemee_mcp.errors import BACKEND_ERROR, NOT_FOUND, NeemeeError


class FakeRemote:
    """Answers JSON-RPC requests the way a Neemee MCP endpoint would."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.tool_results: dict[str, dict] = {}
        self.resources: dict[str, dict] = {}
        self.rpc_error: dict | None = None
        self.status_code = 200
        self.use_sse = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"detail": "nope"})
        body = json.loads(request.content)
        if "id" not in body:
            return httpx.Response(202)
        if self.rpc_error is not None and body["method"] not in ("initialize",):
            return self._reply(body["id"], error=self.rpc_error)
        method = body["method"]
        if method == "initialize":
            return self._reply(body["id"], result={"protocolVersion": "2025-06-18"}, session="sess-1")
        if method == "tools/call":
            name = body["params"]["name"]
            payload = self.tool_results[name]
            return self._reply(body["id"], result={"content": [], "structuredContent": payload})
        if method == "resources/read":
            uri = body["params"]["uri"]
            text = json.dumps(self.resources[uri])
            return self._reply(body["id"], result={"contents": [{"uri": uri, "text": text}]})
        return self._reply(body["id"], error={"code": -32601, "message": "Method not found"})

    def _reply(self, request_id, *, result=None, error=None, session: str | None = None) -> httpx.Response:
        message = {"jsonrpc": "2.0", "id": request_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result
        headers = {"mcp-session-id": session} if session else {}
        if self.use_sse:
            headers["content-type"] = "text/event-stream"
            return httpx.Response(200, text=f"event: message\ndata: {json.dumps(message)}\n\n", headers=headers)
        return httpx.Response(200, json=message, headers=headers)

    def rpc_bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def remote():
    return FakeRemote()


@pytest_asyncio.fixture
async def client(remote):
    client = NeemeeApiClient("https://remote.test/mcp", "nmk_remote", transport=httpx.MockTransport(remote))
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_tool_call_initialises_session_and_unwraps_payload(client, remote) -> None:
    remote.tool_results["create_note"] = {"ok": True, "note": {"id": "cmabc", "content": "hi"}}
    payload = await client.call_tool("create_note", {"content": "hi"})
    assert payload == {"note": {"id": "cmabc", "content": "hi"}}

    methods = [body["method"] for body in remote.rpc_bodies()]
    assert methods == ["initialize", "notifications/initialized", "tools/call"]
    ids = [body["id"] for body in remote.rpc_bodies() if "id" in body]
    assert ids == sorted(ids) and len(set(ids)) == len(ids)

    last = remote.requests[-1]
    assert last.headers["authorization"] == "Bearer nmk_remote"
    assert last.headers["mcp-protocol-version"] == "2025-06-18"
    assert last.headers["mcp-session-id"] == "sess-1"


@pytest.mark.asyncio
async def test_event_stream_responses_are_decoded(client, remote) -> None:
    remote.use_sse = True
    remote.resources["stats://overview"] = {"ok": True, "total_notes": 3}
    assert await client.read_resource("stats://overview") == {"total_notes": 3}


@pytest.mark.asyncio
async def test_remote_failure_payload_keeps_its_code(client, remote) -> None:
    remote.tool_results["delete_note"] = {"ok": False, "error": {"code": NOT_FOUND, "message": "Note x not found"}}
    with pytest.raises(BackendError) as excinfo:
        await client.call_tool("delete_note", {"id": "x", "confirm": True})
    assert excinfo.value.code == NOT_FOUND
    assert excinfo.value.message == "Note x not found"


@pytest.mark.asyncio
async def test_json_rpc_error_becomes_backend_error(client, remote) -> None:
    remote.rpc_error = {"code": -32602, "message": "Invalid params"}
    with pytest.raises(BackendError) as excinfo:
        await client.call_tool("search_notes", {})
    assert excinfo.value.code == BACKEND_ERROR
    assert excinfo.value.details["rpc_code"] == -32602


@pytest.mark.asyncio
async def test_http_failure_becomes_backend_error(client, remote) -> None:
    remote.status_code = 502
    with pytest.raises(BackendError) as excinfo:
        await client.read_resource("system://health")
    assert excinfo.value.code == BACKEND_ERROR
    assert excinfo.value.details["status"] == 502


@pytest.mark.asyncio
async def test_validate_auth_is_cached(client, remote) -> None:
    remote.resources["auth://context"] = {"ok": True, "tenant_id": "tenant-r", "scopes": ["read"], "key_id": "k1"}
    first = await client.validate_auth()
    second = await client.validate_auth()
    assert first is second
    assert first.tenant_id == "tenant-r"
    assert first.scopes == frozenset({"read"})
    reads = [body for body in remote.rpc_bodies() if body.get("method") == "resources/read"]
    assert len(reads) == 1


@pytest.mark.asyncio
async def test_remote_service_forwards_arguments(client, remote) -> None:
    remote.tool_results["search_notes"] = {"ok": True, "notes": [], "pagination": {"total": 0}}
    service = RemoteNotesService(client)
    await service.search_notes(
        "ignored-tenant",
        query="llm",
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        tags=["a", "b"],
        limit=5,
    )
    call = [body for body in remote.rpc_bodies() if body.get("method") == "tools/call"][-1]
    assert call["params"] == {
        "name": "search_notes",
        "arguments": {
            "query": "llm",
            "start_date": "2024-01-01T00:00:00Z",
            "tags": ["a", "b"],
            "limit": 5,
            "page": 1,
        },
    }


@pytest.mark.asyncio
async def test_remote_deletes_always_confirm(client, remote) -> None:
    remote.tool_results["delete_notebook"] = {"ok": True, "deleted": True, "notebook": {"id": "nb"}, "unassigned_notes": 0}
    service = RemoteNotesService(client)
    await service.delete_notebook("t", "nb")
    call = [body for body in remote.rpc_bodies() if body.get("method") == "tools/call"][-1]
    assert call["params"]["arguments"] == {"id": "nb", "confirm": True}


@pytest.mark.asyncio
async def test_remote_health_requires_healthy_status(client, remote) -> None:
    service = RemoteNotesService(client)
    remote.resources["system://health"] = {"ok": True, "status": "healthy"}
    health = await service.health()
    assert health["backend"] == {"type": "api", "base_url": "https://remote.test/mcp"}

    remote.resources["system://health"] = {"ok": True, "status": "unhealthy"}
    with pytest.raises(BackendError):
        await service.health()


def test_client_requires_api_key() -> None:
    with pytest.raises(NeemeeError):
        NeemeeApiClient("https://remote.test/mcp", "")
