"""FastMCP server entrypoint for the Neemee notes bridge."""

from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Mapping, Sequence

from fastmcp import Context, FastMCP
from mcp.server.auth.middleware.auth_context import (
    AuthenticatedUser,
    auth_context_var,
)
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from . import metrics
from .api_client import NeemeeApiClient, RemoteNotesService
from .auth import ApiKeyAuthenticator, AuthContext, NeemeeApiKeyAuthProvider, has_scope
from .config import Config, ConfigError, load_config
from .errors import (
    CONFIG_ERROR,
    FORBIDDEN,
    INTERNAL_ERROR,
    UNAUTHORIZED,
    VALIDATION_ERROR,
    NeemeeError,
)
from .logging import configure_logging, get_logger
from .models import SCOPE_ADMIN, SCOPE_READ, SCOPE_WRITE, format_timestamp, normalize_tags, parse_timestamp, utcnow
from .service import LocalNotesService, NotesBackend
from .storage import Storage, StorageError
from .transports import HttpTransportConfig, run_http, run_stdio
from .transports.http import normalise_path

LOGGER = get_logger(__name__)
SERVER = FastMCP(name="neemee-notes")

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
SERVER_VERSION = "0.1.0"


@dataclass(slots=True)
class AppState:
    config: Config
    backend: NotesBackend
    storage: Storage | None = None
    authenticator: ApiKeyAuthenticator | None = None
    api_client: NeemeeApiClient | None = None


APP_STATE: AppState | None = None
_METRICS_ROUTE_NAME = "__neemee_mcp_metrics__"


class ShutdownManager:
    """Count in-flight tool calls so shutdown can wait for them."""

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.RLock())
        self._active = 0
        self._closing = False
        self._timeout = timedelta(seconds=5)

    def configure(self, timeout: timedelta) -> None:
        with self._condition:
            self._timeout = max(timeout, timedelta(0))
            self._active = 0
            self._closing = False

    def try_enter(self) -> Callable[[], None] | None:
        """Register a call and return its release callback, or ``None`` while closing."""

        with self._condition:
            if self._closing:
                return None
            self._active += 1

        def release() -> None:
            with self._condition:
                self._active = max(self._active - 1, 0)
                self._condition.notify_all()

        return release

    def close_and_drain(self, timeout: timedelta | None = None) -> bool:
        """Reject new calls, then wait for running ones. False when the deadline passed first."""

        with self._condition:
            self._closing = True
            limit = self._timeout if timeout is None else max(timeout, timedelta(0))
            deadline = time.monotonic() + limit.total_seconds()
            while self._active > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(timeout=remaining)
            return True

    @property
    def active_requests(self) -> int:
        with self._condition:
            return self._active


_SHUTDOWN_MANAGER = ShutdownManager()


# ---------------------------------------------------------------------------
# Metrics endpoint
# ---------------------------------------------------------------------------


def _normalise_metrics_path(path: str) -> str:
    return normalise_path(path or "/metrics")


def _remove_metrics_route() -> None:
    routes = getattr(SERVER, "_additional_http_routes", None)
    if not routes:
        return
    routes[:] = [route for route in routes if getattr(route, "name", None) != _METRICS_ROUTE_NAME]


def _register_metrics_route(path: str) -> None:
    cleaned = _normalise_metrics_path(path)
    _remove_metrics_route()

    @SERVER.custom_route(cleaned, methods=["GET"], name=_METRICS_ROUTE_NAME, include_in_schema=False)
    async def metrics_endpoint(_request: Request) -> Response:
        registry = metrics.get_registry_optional()
        if registry is None or APP_STATE is None:
            return PlainTextResponse("metrics unavailable\n", status_code=503)
        counts: Mapping[str, int] = {}
        if APP_STATE.storage is not None:
            counts = APP_STATE.storage.snapshot_counts()
        body = metrics.format_prometheus(
            registry.snapshot(),
            notes_current=counts.get("notes"),
            notebooks_current=counts.get("notebooks"),
        )
        return PlainTextResponse(body, media_type="text/plain; version=0.0.4")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def initialize_app(config: Config) -> None:
    """Build the backend, authenticator and auth provider for tool handlers."""

    global APP_STATE
    _SHUTDOWN_MANAGER.configure(config.shutdown_timeout)
    metrics.install_registry(metrics.MetricsRegistry())

    storage: Storage | None = None
    authenticator: ApiKeyAuthenticator | None = None
    api_client: NeemeeApiClient | None = None
    backend: NotesBackend
    if config.backend == "local":
        storage = Storage(config.storage_dir)
        backend = LocalNotesService(storage)
        if config.enable_auth:
            authenticator = ApiKeyAuthenticator(storage, ttl=config.auth_cache_ttl)
    else:
        if not (config.api_base_url and config.api_key):
            raise NeemeeError(CONFIG_ERROR, "The api backend needs api_base_url and api_key")
        api_client = NeemeeApiClient(
            config.api_base_url,
            config.api_key,
            timeout=config.api_timeout.total_seconds(),
        )
        backend = RemoteNotesService(api_client)

    if authenticator is not None and config.transport != "stdio":
        SERVER.auth = NeemeeApiKeyAuthProvider(authenticator)
    else:
        SERVER.auth = None

    if config.enable_metrics:
        _register_metrics_route(config.metrics_path)
    else:
        _remove_metrics_route()

    APP_STATE = AppState(
        config=config,
        backend=backend,
        storage=storage,
        authenticator=authenticator,
        api_client=api_client,
    )
    LOGGER.info(
        "app.initialized",
        extra={"context": {"backend": config.backend, "transport": config.transport, "auth": config.enable_auth}},
    )


def shutdown_app() -> None:
    """Drain in-flight calls, stop background workers and clear application state."""

    global APP_STATE
    if APP_STATE is None:
        return
    state = APP_STATE
    drained = _SHUTDOWN_MANAGER.close_and_drain(state.config.shutdown_timeout)
    if not drained:
        LOGGER.warning(
            "shutdown.timeout",
            extra={
                "context": {
                    "active_requests": _SHUTDOWN_MANAGER.active_requests,
                    "timeout_seconds": state.config.shutdown_timeout.total_seconds(),
                }
            },
        )
    if state.authenticator is not None:
        state.authenticator.close()
    _close_backend(state.backend)
    metrics.install_registry(None)
    _remove_metrics_route()
    SERVER.auth = None
    APP_STATE = None


_PENDING_CLOSES: set[asyncio.Task[None]] = set()


def _close_backend(backend: NotesBackend) -> asyncio.Task[None] | None:
    """Close ``backend`` now, or schedule it when called from inside a running loop."""

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(backend.close())
        return None
    task = loop.create_task(backend.close())
    _PENDING_CLOSES.add(task)
    task.add_done_callback(_on_backend_closed)
    return task


def _on_backend_closed(task: asyncio.Task[None]) -> None:
    _PENDING_CLOSES.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("backend.close.failed", exc_info=exc)


def get_state() -> AppState:
    if APP_STATE is None:
        raise NeemeeError(CONFIG_ERROR, "Server is not initialised")
    return APP_STATE


def get_backend() -> NotesBackend:
    return get_state().backend


# ---------------------------------------------------------------------------
# Authentication and scopes
# ---------------------------------------------------------------------------


def _context_from_access_token() -> AuthContext | None:
    user = auth_context_var.get()
    if not isinstance(user, AuthenticatedUser):
        return None
    token = user.access_token
    claims = getattr(token, "claims", None) or {}
    tenant = claims.get("tenant_id") or token.client_id
    return AuthContext.build(str(tenant), token.scopes or [], claims.get("key_id"))


async def resolve_auth_context(context: Context | None = None) -> AuthContext:
    """Identify the caller.

    HTTP requests carry a verified access token. Stdio sessions authenticate
    the configured API key, locally or against the remote backend.
    """

    state = get_state()
    config = state.config
    if not config.enable_auth:
        return AuthContext.build(config.default_tenant, [SCOPE_ADMIN])

    from_token = _context_from_access_token()
    if from_token is not None:
        return from_token

    if state.authenticator is not None and config.api_key:
        resolved = await asyncio.to_thread(state.authenticator.authenticate, config.api_key)
        if resolved is not None:
            return resolved
    elif state.api_client is not None:
        return await state.api_client.validate_auth()

    raise NeemeeError(UNAUTHORIZED, "A valid API key is required")


def require_scope(auth: AuthContext, scope: str) -> None:
    if not has_scope(auth, scope):
        raise NeemeeError(
            FORBIDDEN,
            f"Insufficient permissions. {scope.capitalize()} scope required.",
            details={"required": scope, "granted": sorted(auth.scopes)},
        )


# ---------------------------------------------------------------------------
# Payload helpers and guards
# ---------------------------------------------------------------------------


def success(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {"ok": True, **payload}


def failure(error: NeemeeError) -> dict[str, Any]:
    metrics.record_error(error.code)
    return {"ok": False, "error": error.to_dict()}


def _shutdown_protected(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        release = _SHUTDOWN_MANAGER.try_enter()
        if release is None:
            return failure(NeemeeError(CONFIG_ERROR, "Server is shutting down"))
        try:
            return await func(*args, **kwargs)
        finally:
            release()

    return wrapper


def _error_guard(func):
    """Turn domain errors into failure payloads and log anything unexpected."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except StorageError as exc:
            LOGGER.warning("storage.error", extra={"context": {"code": exc.code, "operation": func.__name__}})
            return failure(exc)
        except NeemeeError as exc:
            return failure(exc)
        except Exception:
            LOGGER.exception("tool.failed", extra={"context": {"operation": func.__name__}})
            return failure(NeemeeError(INTERNAL_ERROR, "Unexpected server error"))

    return wrapper


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise NeemeeError(VALIDATION_ERROR, f"{field} is required", details={"field": field})
    return value.strip()


def _optional_text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise NeemeeError(VALIDATION_ERROR, f"{field} must be a string", details={"field": field})
    return value.strip()


def _parse_date(value: Any, field: str) -> datetime | None:
    text = _optional_text(value, field)
    if not text:
        return None
    try:
        return parse_timestamp(text)
    except ValueError as exc:
        raise NeemeeError(
            VALIDATION_ERROR,
            f"{field} must be an ISO-8601 date or timestamp",
            details={"field": field, "value": text},
        ) from exc


def _clamp_limit(limit: Any) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    try:
        value = int(limit)
    except (TypeError, ValueError) as exc:
        raise NeemeeError(VALIDATION_ERROR, "limit must be an integer") from exc
    return min(MAX_LIMIT, max(1, value))


def _normalize_page(page: Any) -> int:
    if page is None:
        return 1
    try:
        value = int(page)
    except (TypeError, ValueError) as exc:
        raise NeemeeError(VALIDATION_ERROR, "page must be an integer") from exc
    return max(1, value)


def _coerce_frontmatter(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise NeemeeError(VALIDATION_ERROR, "frontmatter must be an object")
    return dict(value)


def _require_confirm(confirm: Any, target: str) -> None:
    if confirm is not True:
        raise NeemeeError(VALIDATION_ERROR, f"Confirmation required to delete {target}")


def _require_id(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise NeemeeError(VALIDATION_ERROR, f"{what} ID is required")
    return value.strip()


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@_error_guard
@_shutdown_protected
async def _create_note_impl(
    content: str,
    title: str | None = None,
    url: str | None = None,
    notebook: str | None = None,
    frontmatter: dict[str, Any] | None = None,
    *,
    context: Context | None = None,
) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_WRITE)
    body = _require_text(content, "content")
    notebook_ref = _optional_text(notebook, "notebook") or None
    payload = await get_backend().create_note(
        auth.tenant_id,
        content=body,
        title=_optional_text(title, "title") or None,
        url=_optional_text(url, "url") or None,
        notebook=notebook_ref,
        frontmatter=_coerce_frontmatter(frontmatter),
    )
    metrics.record_operation("create_note")
    return success(payload)


@_error_guard
@_shutdown_protected
async def _update_note_impl(
    id: str,
    content: str | None = None,
    title: str | None = None,
    frontmatter: dict[str, Any] | None = None,
    *,
    context: Context | None = None,
) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_WRITE)
    note_id = _require_id(id, "Note")
    if content is None and title is None and frontmatter is None:
        raise NeemeeError(VALIDATION_ERROR, "At least one field must be provided for update")
    new_content = _optional_text(content, "content")
    if new_content is not None and not new_content:
        raise NeemeeError(VALIDATION_ERROR, "content must not be empty")
    payload = await get_backend().update_note(
        auth.tenant_id,
        note_id,
        content=new_content,
        title=_optional_text(title, "title"),
        frontmatter=_coerce_frontmatter(frontmatter),
    )
    metrics.record_operation("update_note")
    return success(payload)


@_error_guard
@_shutdown_protected
async def _delete_note_impl(id: str, confirm: bool = False, *, context: Context | None = None) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_ADMIN)
    note_id = _require_id(id, "Note")
    _require_confirm(confirm, "note")
    payload = await get_backend().delete_note(auth.tenant_id, note_id)
    metrics.record_operation("delete_note")
    return success(payload)


@_error_guard
@_shutdown_protected
async def _search_notes_impl(
    query: str | None = None,
    notebook: str | None = None,
    domain: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    tags: str | list[str] | None = None,
    limit: int | None = None,
    page: int | None = None,
    *,
    context: Context | None = None,
) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_READ)
    payload = await get_backend().search_notes(
        auth.tenant_id,
        query=_optional_text(query, "query") or None,
        notebook=_optional_text(notebook, "notebook") or None,
        domain=_optional_text(domain, "domain") or None,
        start_date=_parse_date(start_date, "start_date"),
        end_date=_parse_date(end_date, "end_date"),
        tags=normalize_tags(tags) or None,
        limit=_clamp_limit(limit),
        page=_normalize_page(page),
    )
    metrics.record_operation("search_notes")
    return success(payload)


@_error_guard
@_shutdown_protected
async def _search_notebooks_impl(
    query: str | None = None,
    limit: int | None = None,
    page: int | None = None,
    *,
    context: Context | None = None,
) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_READ)
    payload = await get_backend().search_notebooks(
        auth.tenant_id,
        query=_optional_text(query, "query") or None,
        limit=_clamp_limit(limit),
        page=_normalize_page(page),
    )
    metrics.record_operation("search_notebooks")
    return success(payload)


@_error_guard
@_shutdown_protected
async def _create_notebook_impl(
    name: str,
    description: str | None = None,
    *,
    context: Context | None = None,
) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_WRITE)
    payload = await get_backend().create_notebook(
        auth.tenant_id,
        name=_require_text(name, "name"),
        description=_optional_text(description, "description") or None,
    )
    metrics.record_operation("create_notebook")
    return success(payload)


@_error_guard
@_shutdown_protected
async def _update_notebook_impl(
    id: str,
    name: str | None = None,
    description: str | None = None,
    *,
    context: Context | None = None,
) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_WRITE)
    notebook_id = _require_id(id, "Notebook")
    if name is None and description is None:
        raise NeemeeError(VALIDATION_ERROR, "At least one field must be provided for update")
    new_name = _require_text(name, "name") if name is not None else None
    payload = await get_backend().update_notebook(
        auth.tenant_id,
        notebook_id,
        name=new_name,
        description=_optional_text(description, "description"),
    )
    metrics.record_operation("update_notebook")
    return success(payload)


@_error_guard
@_shutdown_protected
async def _delete_notebook_impl(id: str, confirm: bool = False, *, context: Context | None = None) -> dict[str, Any]:
    auth = await resolve_auth_context(context)
    require_scope(auth, SCOPE_ADMIN)
    notebook_id = _require_id(id, "Notebook")
    _require_confirm(confirm, "notebook")
    payload = await get_backend().delete_notebook(auth.tenant_id, notebook_id)
    metrics.record_operation("delete_notebook")
    return success(payload)


create_note = SERVER.tool(
    name="create_note",
    description=(
        "Create a new note with markdown content.\n\n"
        "- title: optional; defaults to the first non-empty line of content.\n"
        "- url: optional source URL; its domain becomes searchable.\n"
        "- notebook: optional notebook name, partial name, description fragment, or ID. "
        "When several notebooks match, the first by name is used.\n"
        "- frontmatter: optional key-value metadata; put tags under 'tags'."
    ),
)(_create_note_impl)

update_note = SERVER.tool(
    name="update_note",
    description="Update an existing note. Provide at least one of content, title, or frontmatter.",
)(_update_note_impl)

delete_note = SERVER.tool(
    name="delete_note",
    description="Delete a note by ID. Requires admin scope and confirm=true.",
)(_delete_note_impl)

search_notes = SERVER.tool(
    name="search_notes",
    description=(
        "Search notes with optional filters. Empty query lists all notes, newest first.\n\n"
        "- notebook: name, partial name, or ID; every matching notebook is searched.\n"
        "- domain: substring of the source URL.\n"
        "- start_date / end_date: inclusive ISO-8601 bounds on creation time.\n"
        "- tags: comma-separated string or array; matches notes sharing any tag."
    ),
)(_search_notes_impl)

search_notebooks = SERVER.tool(
    name="search_notebooks",
    description="Search notebooks by name and description. Empty query lists all notebooks.",
)(_search_notebooks_impl)

create_notebook = SERVER.tool(
    name="create_notebook",
    description="Create a new notebook for organizing notes.",
)(_create_notebook_impl)

update_notebook = SERVER.tool(
    name="update_notebook",
    description="Rename a notebook or change its description.",
)(_update_notebook_impl)

delete_notebook = SERVER.tool(
    name="delete_notebook",
    description="Delete a notebook by ID. Its notes are unassigned, not deleted. Requires admin scope and confirm=true.",
)(_delete_notebook_impl)


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_ERROR_SCHEMA = {
    "type": "object",
    "properties": {
        "code": {"type": "string"},
        "message": {"type": "string"},
        "details": {"type": "object"},
    },
    "required": ["code", "message"],
}

_NOTEBOOK_REF_SCHEMA = {
    "type": ["object", "null"],
    "properties": {"id": {"type": "string"}, "name": {"type": "string"}},
}

_NOTE_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "title": {"type": ["string", "null"]},
        "content": {"type": "string"},
        "page_url": {"type": ["string", "null"]},
        "domain": {"type": ["string", "null"]},
        "notebook_id": {"type": ["string", "null"]},
        "notebook": _NOTEBOOK_REF_SCHEMA,
        "frontmatter": {"type": "object"},
        "created_at": {"type": "string"},
        "updated_at": {"type": "string"},
    },
    "required": ["id", "content"],
}

_NOTEBOOK_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "note_count": {"type": "integer", "minimum": 0},
        "created_at": {"type": "string"},
        "updated_at": {"type": "string"},
    },
    "required": ["id", "name"],
}

_PAGINATION_SCHEMA = {
    "type": "object",
    "properties": {
        "total": {"type": "integer", "minimum": 0},
        "page": {"type": "integer", "minimum": 1},
        "limit": {"type": "integer", "minimum": 1},
        "pages": {"type": "integer", "minimum": 0},
    },
    "required": ["total", "page", "limit"],
}

_CONFIRM_SCHEMA = {"type": "boolean", "description": "Must be true to confirm the deletion."}


def _result_schema(fields: Mapping[str, Any], required: Sequence[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "ok": {"type": "boolean"},
            "error": _ERROR_SCHEMA,
            **fields,
        },
        "required": ["ok"],
        "allOf": [
            {
                "if": {"properties": {"ok": {"const": True}}},
                "then": {"required": list(required)},
                "else": {"required": ["error"]},
            }
        ],
    }


create_note.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "content": {"type": "string", "minLength": 1, "description": "The note content in markdown format."},
        "title": {"type": "string", "description": "Optional title for the note."},
        "url": {"type": "string", "description": "Optional source URL for the note."},
        "notebook": {
            "type": "string",
            "description": "Optional notebook name, partial name, or ID to assign the note to.",
        },
        "frontmatter": {"type": "object", "description": "Optional frontmatter fields as key-value pairs."},
    },
    "required": ["content"],
}
create_note.output_schema = _result_schema({"note": _NOTE_SCHEMA}, ["note"])

update_note.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "id": {"type": "string", "minLength": 1, "description": "The ID of the note to update."},
        "content": {"type": "string", "description": "Updated note content."},
        "title": {"type": "string", "description": "Updated note title."},
        "frontmatter": {"type": "object", "description": "Replacement frontmatter fields."},
    },
    "required": ["id"],
}
update_note.output_schema = _result_schema({"note": _NOTE_SCHEMA}, ["note"])

delete_note.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "id": {"type": "string", "minLength": 1, "description": "The ID of the note to delete."},
        "confirm": _CONFIRM_SCHEMA,
    },
    "required": ["id", "confirm"],
}
delete_note.output_schema = _result_schema(
    {"deleted": {"type": "boolean"}, "note": {"type": "object"}},
    ["deleted", "note"],
)

search_notes.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "query": {
            "type": "string",
            "description": "Text matched against note content and titles. Leave empty to list all notes.",
        },
        "notebook": {"type": "string", "description": "Filter by notebook name, partial name, or ID."},
        "domain": {"type": "string", "description": "Filter by source domain."},
        "start_date": {"type": "string", "description": "Only notes created at or after this ISO-8601 date."},
        "end_date": {"type": "string", "description": "Only notes created at or before this ISO-8601 date."},
        "tags": {
            "anyOf": [
                {"type": "string"},
                {"type": "array", "items": {"type": "string", "minLength": 1}},
            ],
            "description": 'Tags to match, e.g. "GenAI,productivity".',
        },
        "limit": {
            "type": "integer",
            "minimum": 1,
            "maximum": MAX_LIMIT,
            "description": f"Maximum number of results (default {DEFAULT_LIMIT}, max {MAX_LIMIT}).",
        },
        "page": {"type": "integer", "minimum": 1, "description": "1-based page number."},
    },
    "required": [],
}
search_notes.output_schema = _result_schema(
    {
        "notes": {"type": "array", "items": _NOTE_SCHEMA},
        "pagination": _PAGINATION_SCHEMA,
        "filters": {"type": "object"},
        "message": {"type": "string"},
    },
    ["notes", "pagination"],
)

search_notebooks.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "query": {
            "type": "string",
            "description": "Text matched against notebook names and descriptions. Leave empty to list all.",
        },
        "limit": {"type": "integer", "minimum": 1, "maximum": MAX_LIMIT},
        "page": {"type": "integer", "minimum": 1},
    },
    "required": [],
}
search_notebooks.output_schema = _result_schema(
    {
        "notebooks": {"type": "array", "items": _NOTEBOOK_SCHEMA},
        "pagination": _PAGINATION_SCHEMA,
        "filters": {"type": "object"},
    },
    ["notebooks", "pagination"],
)

create_notebook.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "name": {"type": "string", "minLength": 1, "description": "The name of the notebook."},
        "description": {"type": "string", "description": "Optional description for the notebook."},
    },
    "required": ["name"],
}
create_notebook.output_schema = _result_schema({"notebook": _NOTEBOOK_SCHEMA}, ["notebook"])

update_notebook.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "id": {"type": "string", "minLength": 1, "description": "The ID of the notebook to update."},
        "name": {"type": "string", "minLength": 1, "description": "Updated notebook name."},
        "description": {"type": "string", "description": "Updated notebook description; empty clears it."},
    },
    "required": ["id"],
}
update_notebook.output_schema = _result_schema({"notebook": _NOTEBOOK_SCHEMA}, ["notebook"])

delete_notebook.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "id": {"type": "string", "minLength": 1, "description": "The ID of the notebook to delete."},
        "confirm": _CONFIRM_SCHEMA,
    },
    "required": ["id", "confirm"],
}
delete_notebook.output_schema = _result_schema(
    {
        "deleted": {"type": "boolean"},
        "notebook": _NOTEBOOK_REF_SCHEMA,
        "unassigned_notes": {"type": "integer", "minimum": 0},
    },
    ["deleted", "notebook", "unassigned_notes"],
)


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


def _dump(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)


async def _read_guarded(
    operation: Callable[[NotesBackend, AuthContext], Any],
    context: Context | None,
    *,
    scope: str = SCOPE_READ,
) -> str:
    try:
        auth = await resolve_auth_context(context)
        require_scope(auth, scope)
        payload = await operation(get_backend(), auth)
    except NeemeeError as exc:
        return _dump(failure(exc))
    except Exception:
        LOGGER.exception("resource.failed")
        return _dump(failure(NeemeeError(INTERNAL_ERROR, "Unexpected server error")))
    return _dump(success(payload))


async def _notes_list_resource(context: Context | None = None) -> str:
    return await _read_guarded(
        lambda backend, auth: backend.search_notes(auth.tenant_id, limit=DEFAULT_LIMIT, page=1),
        context,
    )


async def _notebooks_list_resource(context: Context | None = None) -> str:
    return await _read_guarded(
        lambda backend, auth: backend.search_notebooks(auth.tenant_id, limit=DEFAULT_LIMIT, page=1),
        context,
    )


async def _stats_resource(context: Context | None = None) -> str:
    return await _read_guarded(lambda backend, auth: backend.stats(auth.tenant_id), context)


async def _recent_resource(context: Context | None = None) -> str:
    return await _read_guarded(lambda backend, auth: backend.recent_activity(auth.tenant_id), context)


async def _note_resource(note_id: str, context: Context | None = None) -> str:
    return await _read_guarded(lambda backend, auth: backend.get_note(auth.tenant_id, note_id), context)


async def _notebook_resource(notebook_id: str, context: Context | None = None) -> str:
    return await _read_guarded(lambda backend, auth: backend.get_notebook(auth.tenant_id, notebook_id), context)


async def _auth_context_resource(context: Context | None = None) -> str:
    try:
        auth = await resolve_auth_context(context)
    except NeemeeError as exc:
        return _dump(failure(exc))
    return _dump(success(auth.to_dict()))


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, NeemeeError):
        return exc.message
    return str(exc) or exc.__class__.__name__


async def _health_resource(context: Context | None = None) -> str:
    """Report backend connectivity. Always answers, with ``unhealthy`` on failure."""

    server_info = {"name": SERVER.name, "version": SERVER_VERSION, "capabilities": ["resources", "tools"]}
    try:
        payload = await get_backend().health()
    except Exception as exc:
        LOGGER.warning("health.unhealthy", exc_info=True)
        payload = {
            "status": "unhealthy",
            "timestamp": format_timestamp(utcnow()),
            "storage": {"status": "disconnected", "error": _describe_failure(exc)},
        }
    return _dump(success({**payload, "mcp_server": server_info}))


SERVER.resource(
    "notes://list",
    name="Notes List",
    description="First page of notes, newest first. Use search_notes for filters.",
    mime_type="application/json",
)(_notes_list_resource)

SERVER.resource(
    "notebooks://list",
    name="Notebooks List",
    description="First page of notebooks with note counts.",
    mime_type="application/json",
)(_notebooks_list_resource)

SERVER.resource(
    "stats://overview",
    name="Statistics Overview",
    description="Total notes, notes created in the last 7 days and the top source domains.",
    mime_type="application/json",
)(_stats_resource)

SERVER.resource(
    "system://health",
    name="System Health",
    description="Backend connectivity and server information.",
    mime_type="application/json",
)(_health_resource)

SERVER.resource(
    "collections://recent",
    name="Recent Activity",
    description="Notes and notebooks updated in the last 7 days.",
    mime_type="application/json",
)(_recent_resource)

SERVER.resource(
    "auth://context",
    name="Auth Context",
    description="Tenant and scopes associated with the caller's API key.",
    mime_type="application/json",
)(_auth_context_resource)

SERVER.resource(
    "notes://{note_id}",
    name="Individual Note",
    description="A single note by ID.",
    mime_type="application/json",
)(_note_resource)

SERVER.resource(
    "notebooks://{notebook_id}",
    name="Individual Notebook",
    description="A single notebook by ID, with its note count.",
    mime_type="application/json",
)(_notebook_resource)


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for running the Neemee MCP bridge."""

    configure_logging()
    try:
        config = load_config(argv)
    except ConfigError as exc:
        LOGGER.error("config.invalid", extra={"context": {"error": str(exc)}})
        raise SystemExit(2) from exc

    LOGGER.info(
        "Configuration loaded",
        extra={
            "context": {
                "storage_dir": str(config.storage_dir),
                "backend": config.backend,
                "transport": config.transport,
                "enable_auth": config.enable_auth,
                "enable_metrics": config.enable_metrics,
            }
        },
    )

    try:
        initialize_app(config)
    except (StorageError, NeemeeError) as exc:
        LOGGER.error(
            "Failed to initialize backend",
            exc_info=exc,
            extra={"context": dict(exc.details or {})},
        )
        raise SystemExit(1) from exc

    try:
        if config.transport == "stdio":
            run_stdio(SERVER)
        else:
            http_config = HttpTransportConfig(
                host=config.http_host,
                port=config.http_port,
                path=config.http_path,
                transport=config.transport,
                metrics_path=config.metrics_path if config.enable_metrics else None,
            )
            run_http(SERVER, http_config)
    finally:
        shutdown_app()


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    main()
