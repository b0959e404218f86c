"""Note and notebook operations shared by the MCP tools and resources.

Two backends satisfy :class:`NotesBackend`: :class:`LocalNotesService` runs
against LanceDB in-process, and :class:`~neemee_mcp.api_client.RemoteNotesService`
forwards every call to a remote Neemee MCP endpoint.
"""

from __future__ import annotations

import math
import secrets
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Mapping, Protocol, Sequence

from .auth import hash_api_key
from .errors import NOT_FOUND, VALIDATION_ERROR, NeemeeError
from .filters import build_note_filter, build_notebook_filter
from .logging import get_logger
from .models import KNOWN_SCOPES, ApiKeyRecord, Note, Notebook, derive_title, format_timestamp, utcnow
from .resolver import NotebookResolver
from .storage import Storage

LOGGER = get_logger(__name__)

RECENT_WINDOW = timedelta(days=7)
RECENT_LIMIT = 10
TOP_DOMAIN_LIMIT = 10
API_KEY_PREFIX = "nmk_"


class NotesBackend(Protocol):
    async def create_note(
        self,
        tenant_id: str,
        *,
        content: str,
        title: str | None = None,
        url: str | None = None,
        notebook: str | None = None,
        frontmatter: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]: ...

    async def update_note(
        self,
        tenant_id: str,
        note_id: str,
        *,
        content: str | None = None,
        title: str | None = None,
        frontmatter: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]: ...

    async def delete_note(self, tenant_id: str, note_id: str) -> dict[str, Any]: ...

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
    ) -> dict[str, Any]: ...

    async def search_notebooks(self, tenant_id: str, *, query: str | None = None, limit: int = 20, page: int = 1) -> dict[str, Any]: ...

    async def create_notebook(self, tenant_id: str, *, name: str, description: str | None = None) -> dict[str, Any]: ...

    async def update_notebook(
        self,
        tenant_id: str,
        notebook_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]: ...

    async def delete_notebook(self, tenant_id: str, notebook_id: str) -> dict[str, Any]: ...

    async def get_note(self, tenant_id: str, note_id: str) -> dict[str, Any]: ...

    async def get_notebook(self, tenant_id: str, notebook_id: str) -> dict[str, Any]: ...

    async def stats(self, tenant_id: str) -> dict[str, Any]: ...

    async def recent_activity(self, tenant_id: str) -> dict[str, Any]: ...

    async def health(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def paginate(items: Sequence[Any], *, limit: int, page: int) -> tuple[list[Any], dict[str, int]]:
    total = len(items)
    offset = (page - 1) * limit
    window = list(items[offset : offset + limit])
    pagination = {
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }
    return window, pagination


class LocalNotesService:
    """Backend that reads and writes the local LanceDB store."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._resolver = NotebookResolver(storage)

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def resolver(self) -> NotebookResolver:
        return self._resolver

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

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
        target: Notebook | None = None
        if notebook:
            target = self._pick_notebook(tenant_id, notebook)
        note = self._storage.create_note(
            tenant_id,
            content=content,
            title=title or derive_title(content),
            page_url=url or None,
            notebook_id=target.id if target else None,
            frontmatter=frontmatter,
        )
        LOGGER.info(
            "note.created",
            extra={"context": {"tenant_id": tenant_id, "note_id": note.id, "notebook_id": note.notebook_id}},
        )
        return {"note": note.to_dict(notebook=target)}

    async def update_note(
        self,
        tenant_id: str,
        note_id: str,
        *,
        content: str | None = None,
        title: str | None = None,
        frontmatter: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        note = self._storage.update_note(tenant_id, note_id, content=content, title=title, frontmatter=frontmatter)
        return {"note": self._note_payload(tenant_id, note)}

    async def delete_note(self, tenant_id: str, note_id: str) -> dict[str, Any]:
        note = self._storage.delete_note(tenant_id, note_id)
        LOGGER.info("note.deleted", extra={"context": {"tenant_id": tenant_id, "note_id": note_id}})
        return {"deleted": True, "note": {"id": note.id, "title": note.title}}

    async def get_note(self, tenant_id: str, note_id: str) -> dict[str, Any]:
        note = self._storage.get_note(tenant_id, note_id)
        return {"note": self._note_payload(tenant_id, note)}

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
        filters = {
            "query": query,
            "notebook": notebook,
            "domain": domain,
            "start_date": format_timestamp(start_date),
            "end_date": format_timestamp(end_date),
            "tags": list(tags) if tags else None,
        }
        notebook_ids: set[str] | None = None
        if notebook:
            notebook_ids = self._resolver.resolve(tenant_id, notebook)
            if not notebook_ids:
                _, pagination = paginate([], limit=limit, page=page)
                return {
                    "notes": [],
                    "pagination": pagination,
                    "filters": filters,
                    "message": f"No notebook found matching '{notebook}'",
                }

        note_filter = build_note_filter(
            tenant_id,
            search=query,
            domain=domain,
            start_date=start_date,
            end_date=end_date,
            notebook_ids=notebook_ids,
            tags=tags,
        )
        matches = self._storage.search_notes(note_filter)
        window, pagination = paginate(matches, limit=limit, page=page)
        notebooks = self._storage.notebooks_by_id(tenant_id, (note.notebook_id for note in window if note.notebook_id))
        return {
            "notes": [note.to_dict(notebook=notebooks.get(note.notebook_id or "")) for note in window],
            "pagination": pagination,
            "filters": filters,
        }

    # ------------------------------------------------------------------
    # Notebooks
    # ------------------------------------------------------------------

    async def search_notebooks(self, tenant_id: str, *, query: str | None = None, limit: int = 20, page: int = 1) -> dict[str, Any]:
        notebooks = self._storage.list_notebooks(build_notebook_filter(tenant_id, search=query))
        window, pagination = paginate(notebooks, limit=limit, page=page)
        return {
            "notebooks": [notebook.to_dict() for notebook in window],
            "pagination": pagination,
            "filters": {"query": query},
        }

    async def get_notebook(self, tenant_id: str, notebook_id: str) -> dict[str, Any]:
        return {"notebook": self._storage.get_notebook(tenant_id, notebook_id).to_dict()}

    async def create_notebook(self, tenant_id: str, *, name: str, description: str | None = None) -> dict[str, Any]:
        notebook = self._storage.create_notebook(tenant_id, name, description or None)
        LOGGER.info("notebook.created", extra={"context": {"tenant_id": tenant_id, "notebook_id": notebook.id}})
        return {"notebook": notebook.to_dict()}

    async def update_notebook(
        self,
        tenant_id: str,
        notebook_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description or None
        notebook = self._storage.update_notebook(tenant_id, notebook_id, **changes)
        return {"notebook": self._storage.get_notebook(tenant_id, notebook.id).to_dict()}

    async def delete_notebook(self, tenant_id: str, notebook_id: str) -> dict[str, Any]:
        notebook, detached = self._storage.delete_notebook(tenant_id, notebook_id)
        LOGGER.info(
            "notebook.deleted",
            extra={"context": {"tenant_id": tenant_id, "notebook_id": notebook_id, "unassigned_notes": detached}},
        )
        return {
            "deleted": True,
            "notebook": {"id": notebook.id, "name": notebook.name},
            "unassigned_notes": detached,
        }

    # ------------------------------------------------------------------
    # Overviews
    # ------------------------------------------------------------------

    async def stats(self, tenant_id: str) -> dict[str, Any]:
        notes = self._storage.search_notes(build_note_filter(tenant_id))
        cutoff = utcnow() - RECENT_WINDOW
        domains: Counter[str] = Counter(note.domain for note in notes if note.domain)
        return {
            "total_notes": len(notes),
            "recent_notes": sum(1 for note in notes if note.created_at >= cutoff),
            "total_notebooks": len(self._storage.find_all_notebooks(tenant_id)),
            "top_domains": [{"domain": domain, "count": count} for domain, count in domains.most_common(TOP_DOMAIN_LIMIT)],
            "generated_at": format_timestamp(utcnow()),
        }

    async def recent_activity(self, tenant_id: str) -> dict[str, Any]:
        cutoff = utcnow() - RECENT_WINDOW
        notes = [note for note in self._storage.search_notes(build_note_filter(tenant_id)) if note.updated_at >= cutoff]
        notes.sort(key=lambda note: note.updated_at, reverse=True)
        notebooks = [nb for nb in self._storage.list_notebooks(build_notebook_filter(tenant_id)) if nb.updated_at >= cutoff]
        notebooks.sort(key=lambda nb: nb.updated_at, reverse=True)
        return {
            "summary": {
                "timeframe": "7 days",
                "note_count": len(notes),
                "notebook_count": len(notebooks),
            },
            "recent_notes": [note.to_dict() for note in notes[:RECENT_LIMIT]],
            "recent_notebooks": [notebook.to_dict() for notebook in notebooks[:RECENT_LIMIT]],
        }

    async def health(self) -> dict[str, Any]:
        self._storage.ping()
        return {
            "status": "healthy",
            "timestamp": format_timestamp(utcnow()),
            "storage": {"status": "connected", "type": "lancedb", "path": str(self._storage.root)},
        }

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def issue_api_key(
        self,
        tenant_id: str,
        scopes: Sequence[str],
        expires_at: datetime | None = None,
    ) -> tuple[str, ApiKeyRecord]:
        """Create a key for ``tenant_id``. The raw secret is returned once and never stored."""

        tenant = (tenant_id or "").strip()
        if not tenant:
            raise NeemeeError(VALIDATION_ERROR, "Tenant id must not be empty")
        requested = [scope.strip().lower() for scope in scopes if scope and scope.strip()]
        unknown = sorted(set(requested) - set(KNOWN_SCOPES))
        if unknown:
            raise NeemeeError(VALIDATION_ERROR, "Unknown scopes", details={"scopes": unknown})
        if not requested:
            raise NeemeeError(VALIDATION_ERROR, "At least one scope is required")
        raw_key = API_KEY_PREFIX + secrets.token_urlsafe(32)
        record = self._storage.add_api_key(tenant, hash_api_key(raw_key), sorted(set(requested)), expires_at)
        LOGGER.info("auth.key.issued", extra={"context": {"tenant_id": tenant, "key_id": record.id, "scopes": record.scopes}})
        return raw_key, record

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pick_notebook(self, tenant_id: str, reference: str) -> Notebook:
        ids = self._resolver.resolve(tenant_id, reference)
        if not ids:
            raise NeemeeError(NOT_FOUND, f"No notebook found matching '{reference}'", details={"notebook": reference})
        candidates = self._storage.notebooks_by_id(tenant_id, ids)
        ordered = sorted(candidates.values(), key=lambda nb: (nb.name.casefold(), nb.id))
        if not ordered:
            raise NeemeeError(NOT_FOUND, f"No notebook found matching '{reference}'", details={"notebook": reference})
        if len(ordered) > 1:
            LOGGER.info(
                "resolver.ambiguous",
                extra={"context": {"tenant_id": tenant_id, "query": reference, "candidates": [nb.id for nb in ordered]}},
            )
        return ordered[0]

    def _note_payload(self, tenant_id: str, note: Note) -> dict[str, Any]:
        notebook = None
        if note.notebook_id:
            notebook = self._storage.find_notebook_by_id(tenant_id, note.notebook_id)
        return note.to_dict(notebook=notebook)
