"""JSON-RPC client for a remote Neemee MCP endpoint."""

from __future__ import annotations

import itertools
import json
from datetime import datetime
from typing import Any, Mapping, Sequence

import httpx

from .auth import AuthContext
from .errors import BACKEND_ERROR, NeemeeError
from .logging import get_logger
from .models import format_timestamp

LOGGER = get_logger(__name__)

PROTOCOL_VERSION = "2025-06-18"
CLIENT_INFO = {"name": "neemee-mcp-client", "version": "0.1.0"}
_SESSION_HEADER = "mcp-session-id"


class BackendError(NeemeeError):
    """Raised when the remote backend fails or reports an error."""


def _drop_none(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _parse_event_stream(text: str) -> dict[str, Any] | None:
    message: dict[str, Any] | None = None
    for line in text.splitlines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if not data:
            continue
        try:
            candidate = json.loads(data)
        except json.JSONDecodeError:
            continue
        if isinstance(candidate, dict) and ("result" in candidate or "error" in candidate):
            message = candidate
    return message


def _unwrap_payload(payload: Any, *, source: str) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise BackendError(BACKEND_ERROR, f"Unexpected response shape from {source}")
    if payload.get("ok") is False:
        error = payload.get("error") or {}
        raise BackendError(
            str(error.get("code") or BACKEND_ERROR),
            str(error.get("message") or f"{source} failed"),
            details=error.get("details"),
        )
    return {key: value for key, value in payload.items() if key != "ok"}


class NeemeeApiClient:
    """Minimal MCP-over-HTTP client.

    Every request is a JSON-RPC 2.0 ``POST`` to ``base_url`` carrying the API
    key as a bearer token. The session is initialised lazily on first use and
    the server's session id, when it issues one, is echoed on later requests.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise NeemeeError(BACKEND_ERROR, "An API key is required for the remote backend")
        self._base_url = base_url
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._initialized = False
        self._auth_context: AuthContext | None = None
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "MCP-Protocol-Version": PROTOCOL_VERSION,
                "Accept": "application/json, text/event-stream",
            },
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._http.aclose()

    async def request(self, method: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        if not self._initialized and method != "initialize":
            await self._initialize()
        return await self._post(method, params)

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> dict[str, Any]:
        result = await self.request("tools/call", {"name": name, "arguments": dict(arguments)})
        payload = result.get("structuredContent")
        if payload is None:
            payload = self._first_text_json(result.get("content"), source=name)
        if result.get("isError") and not (isinstance(payload, Mapping) and payload.get("ok") is False):
            raise BackendError(BACKEND_ERROR, f"Remote tool {name} failed", details={"result": payload})
        return _unwrap_payload(payload, source=name)

    async def read_resource(self, uri: str) -> dict[str, Any]:
        result = await self.request("resources/read", {"uri": uri})
        contents = result.get("contents") or []
        if not contents:
            raise BackendError(BACKEND_ERROR, f"Remote resource {uri} returned no contents")
        text = contents[0].get("text")
        try:
            payload = json.loads(text or "")
        except json.JSONDecodeError as exc:
            raise BackendError(BACKEND_ERROR, f"Remote resource {uri} is not JSON") from exc
        return _unwrap_payload(payload, source=uri)

    async def validate_auth(self) -> AuthContext:
        """Return the identity the remote endpoint associates with our key."""

        if self._auth_context is None:
            payload = await self.read_resource("auth://context")
            self._auth_context = AuthContext.build(
                str(payload.get("tenant_id") or ""),
                payload.get("scopes") or [],
                payload.get("key_id"),
            )
        return self._auth_context

    async def _initialize(self) -> None:
        await self._post(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        await self._notify("notifications/initialized")
        self._initialized = True

    def _session_headers(self) -> dict[str, str]:
        return {_SESSION_HEADER: self._session_id} if self._session_id else {}

    async def _notify(self, method: str) -> None:
        try:
            await self._http.post(
                self._base_url,
                json={"jsonrpc": "2.0", "method": method},
                headers=self._session_headers(),
            )
        except httpx.HTTPError:
            LOGGER.warning("api.notify.failed", exc_info=True, extra={"context": {"method": method}})

    async def _post(self, method: str, params: Mapping[str, Any] | None) -> dict[str, Any]:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": dict(params or {})}
        context = {"method": method, "id": request_id}
        try:
            response = await self._http.post(self._base_url, json=body, headers=self._session_headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            LOGGER.warning("api.request.http_error", extra={"context": {**context, "status": exc.response.status_code}})
            raise BackendError(
                BACKEND_ERROR,
                f"JSON-RPC request failed: {exc.response.status_code}",
                details={"status": exc.response.status_code, "method": method},
            ) from exc
        except httpx.HTTPError as exc:
            LOGGER.warning("api.request.transport_error", exc_info=True, extra={"context": context})
            raise BackendError(BACKEND_ERROR, f"JSON-RPC request failed: {exc}", details={"method": method}) from exc

        session_id = response.headers.get(_SESSION_HEADER)
        if session_id:
            self._session_id = session_id

        message = self._decode(response)
        error = message.get("error")
        if error:
            raise BackendError(
                BACKEND_ERROR,
                str(error.get("message") or "JSON-RPC error"),
                details=_drop_none({"rpc_code": error.get("code"), "data": error.get("data"), "method": method}),
            )
        result = message.get("result")
        if not isinstance(result, dict):
            raise BackendError(BACKEND_ERROR, "JSON-RPC response carried no result", details={"method": method})
        return result

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            message = _parse_event_stream(response.text)
            if message is None:
                raise BackendError(BACKEND_ERROR, "Event stream carried no JSON-RPC response")
            return message
        try:
            message = response.json()
        except ValueError as exc:
            raise BackendError(BACKEND_ERROR, "Response body is not JSON") from exc
        if not isinstance(message, dict):
            raise BackendError(BACKEND_ERROR, "Unexpected JSON-RPC response shape")
        return message

    @staticmethod
    def _first_text_json(content: Any, *, source: str) -> Any:
        for item in content or []:
            if isinstance(item, Mapping) and item.get("type") == "text":
                try:
                    return json.loads(item.get("text") or "")
                except json.JSONDecodeError as exc:
                    raise BackendError(BACKEND_ERROR, f"Remote tool {source} returned non-JSON text") from exc
        raise BackendError(BACKEND_ERROR, f"Remote tool {source} returned no content")


class RemoteNotesService:
    """Backend that forwards every operation to a remote endpoint.

    The remote side derives the tenant from our API key, so the ``tenant_id``
    arguments are accepted for interface parity and otherwise ignored.
    """

    def __init__(self, client: NeemeeApiClient) -> None:
        self._client = client

    @property
    def client(self) -> NeemeeApiClient:
        return self._client

    async def create_note(
        self,
        tenant_id: str,
        *,
        content: str,
        title: str | None = None,
        url: str | None = None,
        notebook: str | None = None,
        frontmatter: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        arguments = _drop_none(
            {"content": content, "title": title, "url": url, "notebook": notebook, "frontmatter": frontmatter}
        )
        return await self._client.call_tool("create_note", arguments)

    async def update_note(
        self,
        tenant_id: str,
        note_id: str,
        *,
        content: str | None = None,
        title: str | None = None,
        frontmatter: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        arguments = _drop_none({"id": note_id, "content": content, "title": title, "frontmatter": frontmatter})
        return await self._client.call_tool("update_note", arguments)

    async def delete_note(self, tenant_id: str, note_id: str) -> dict[str, Any]:
        return await self._client.call_tool("delete_note", {"id": note_id, "confirm": True})

    async def search_notes(
        self,
        tenant_id: str,
        *,
        query: str | None = None,
        notebook: str | None = None,
        domain: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        tags: Sequence[str] | None = None,
        limit: int = 20,
        page: int = 1,
    ) -> dict[str, Any]:
        arguments = _drop_none(
            {
                "query": query,
                "notebook": notebook,
                "domain": domain,
                "start_date": format_timestamp(start_date),
                "end_date": format_timestamp(end_date),
                "tags": list(tags) if tags else None,
                "limit": limit,
                "page": page,
            }
        )
        return await self._client.call_tool("search_notes", arguments)

    async def search_notebooks(self, tenant_id: str, *, query: str | None = None, limit: int = 20, page: int = 1) -> dict[str, Any]:
        return await self._client.call_tool("search_notebooks", _drop_none({"query": query, "limit": limit, "page": page}))

    async def create_notebook(self, tenant_id: str, *, name: str, description: str | None = None) -> dict[str, Any]:
        return await self._client.call_tool("create_notebook", _drop_none({"name": name, "description": description}))

    async def update_notebook(
        self,
        tenant_id: str,
        notebook_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        arguments = _drop_none({"id": notebook_id, "name": name, "description": description})
        return await self._client.call_tool("update_notebook", arguments)

    async def delete_notebook(self, tenant_id: str, notebook_id: str) -> dict[str, Any]:
        return await self._client.call_tool("delete_notebook", {"id": notebook_id, "confirm": True})

    async def get_note(self, tenant_id: str, note_id: str) -> dict[str, Any]:
        return await self._client.read_resource(f"notes://{note_id}")

    async def get_notebook(self, tenant_id: str, notebook_id: str) -> dict[str, Any]:
        return await self._client.read_resource(f"notebooks://{notebook_id}")

    async def stats(self, tenant_id: str) -> dict[str, Any]:
        return await self._client.read_resource("stats://overview")

    async def recent_activity(self, tenant_id: str) -> dict[str, Any]:
        return await self._client.read_resource("collections://recent")

    async def health(self) -> dict[str, Any]:
        payload = await self._client.read_resource("system://health")
        if payload.get("status") != "healthy":
            raise BackendError(BACKEND_ERROR, "Remote backend reports unhealthy", details=payload)
        return {**payload, "backend": {"type": "api", "base_url": self._client.base_url}}

    async def close(self) -> None:
        await self._client.close()
