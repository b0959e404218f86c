from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Tuple

import httpx
import pytest

from neemee_mcp import load_config
from neemee_mcp.auth import hash_api_key
from neemee_mcp.server import SERVER, initialize_app, shutdown_app
from neemee_mcp.storage import Storage
from neemee_mcp.transports.http import HttpTransportConfig, build_http_app

API_KEY = "nmk_http_secret"


def _parse_sse_json(body: str) -> dict[str, object]:
    for line in body.splitlines():
        if line.startswith("data: "):
            return json.loads(line[6:])
    raise AssertionError(f"No data line found in SSE payload: {body!r}")


@asynccontextmanager
async def _http_test_client(tmp_path) -> AsyncIterator[Tuple[httpx.AsyncClient, HttpTransportConfig]]:
    storage_dir = tmp_path / "storage"
    Storage(storage_dir).add_api_key("tenant-http", hash_api_key(API_KEY, rounds=4), ["read", "write"])
    argv = [
        "--transport",
        "http",
        "--enable-metrics",
        "true",
        "--enable-auth",
        "true",
        "--storage-dir",
        str(storage_dir),
    ]
    config = load_config(argv=argv, environ={})
    initialize_app(config)
    try:
        http_config = HttpTransportConfig(
            host="127.0.0.1",
            port=0,
            path=config.http_path,
            transport=config.transport,
            metrics_path=config.metrics_path,
        )
        app = build_http_app(SERVER, http_config)
        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                yield client, http_config
    finally:
        shutdown_app()


async def _initialize(client: httpx.AsyncClient, path: str, headers: dict[str, str]) -> str:
    init_payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": "2025-06-18",
            "capabilities": {},
            "clientInfo": {"name": "test-client", "version": "0.0.0"},
        },
    }
    response = await client.post(path, json=init_payload, headers=headers)
    assert response.status_code == 200
    assert _parse_sse_json(response.text)["id"] == 1
    return response.headers["mcp-session-id"]


@pytest.mark.anyio
async def test_http_initialize_and_call_tool(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        base_headers = {
            "Authorization": f"Bearer {API_KEY}",
            "Accept": "application/json, text/event-stream",
        }
        session_id = await _initialize(client, config.path, base_headers)

        call_headers = dict(base_headers)
        call_headers.update({"Content-Type": "application/json", "mcp-session-id": session_id})

        create = {
            "jsonrpc": "2.0",
            "id": 2,
            "method": "tools/call",
            "params": {"name": "create_notebook", "arguments": {"name": "Over HTTP"}},
        }
        response = await client.post(config.path, json=create, headers=call_headers)
        assert response.status_code == 200
        payload = _parse_sse_json(response.text)["result"]["structuredContent"]
        assert payload["ok"] is True
        assert payload["notebook"]["name"] == "Over HTTP"

        search = {
            "jsonrpc": "2.0",
            "id": 3,
            "method": "tools/call",
            "params": {"name": "search_notebooks", "arguments": {}},
        }
        response = await client.post(config.path, json=search, headers=call_headers)
        payload = _parse_sse_json(response.text)["result"]["structuredContent"]
        assert [nb["name"] for nb in payload["notebooks"]] == ["Over HTTP"]


@pytest.mark.anyio
async def test_http_auth_rejects_missing_and_unknown_tokens(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        body = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}
        missing = await client.post(config.path, json=body)
        assert missing.status_code == 401
        assert missing.json()["error"] == "invalid_token"

        unknown = await client.post(config.path, json=body, headers={"Authorization": "Bearer nmk_nope"})
        assert unknown.status_code == 401


@pytest.mark.anyio
async def test_metrics_endpoint_exposes_prometheus(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        headers = {
            "Authorization": f"Bearer {API_KEY}",
            "Accept": "application/json, text/event-stream",
        }
        await _initialize(client, config.path, headers)
        response = await client.get(config.metrics_path)
        assert response.status_code == 200
        body = response.text
        assert "neemee_mcp_ops_total" in body
        assert "neemee_mcp_notes_current 0" in body
        assert 'neemee_mcp_auth_total{outcome="miss"}' in body
