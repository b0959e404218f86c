"""LanceDB-backed storage for notes, notebooks, and API keys."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, Mapping, Sequence

import lancedb
import pyarrow as pa

from .errors import CONFIG_ERROR, NOT_FOUND, VALIDATION_ERROR, NeemeeError
from .filters import NoteFilter, NotebookFilter
from .logging import get_logger
from .models import ApiKeyRecord, Note, Notebook, generate_id, utcnow

logger = get_logger(__name__)

_NOTEBOOKS_TABLE_NAME = "notebooks"
_NOTES_TABLE_NAME = "notes"
_API_KEYS_TABLE_NAME = "api_keys"

_NOTEBOOKS_SCHEMA = pa.schema(
    [
        pa.field("notebook_id", pa.string()),
        pa.field("tenant_id", pa.string()),
        pa.field("name", pa.string()),
        pa.field("description", pa.string()),
        pa.field("created_at", pa.timestamp("us", tz="UTC")),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)

_NOTES_SCHEMA = pa.schema(
    [
        pa.field("note_id", pa.string()),
        pa.field("tenant_id", pa.string()),
        pa.field("notebook_id", pa.string()),
        pa.field("title", pa.string()),
        pa.field("content", pa.large_string()),
        pa.field("page_url", pa.string()),
        pa.field("frontmatter_json", pa.large_string()),
        pa.field("created_at", pa.timestamp("us", tz="UTC")),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)

_API_KEYS_SCHEMA = pa.schema(
    [
        pa.field("key_id", pa.string()),
        pa.field("tenant_id", pa.string()),
        pa.field("key_hash", pa.string()),
        pa.field("scopes", pa.list_(pa.string())),
        pa.field("expires_at", pa.timestamp("us", tz="UTC")),
        pa.field("last_used_at", pa.timestamp("us", tz="UTC")),
        pa.field("created_at", pa.timestamp("us", tz="UTC")),
    ]
)

_UNSET: Any = object()


class StorageError(NeemeeError):
    """Raised when storage operations fail."""


def _coerce_timestamp(value: Any, *, default: datetime | None) -> datetime | None:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return default


def _encode_json(payload: Any, *, context: str) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise StorageError(VALIDATION_ERROR, f"Unable to serialize {context}") from exc


def _decode_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Stored frontmatter is not valid JSON; ignoring")
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _format_filter(field: str, value: str) -> str:
    escaped = value.replace("'", "''")
    return f"{field} = '{escaped}'"


def _contains_casefold(haystack: str | None, needle: str) -> bool:
    return bool(haystack) and needle.casefold() in haystack.casefold()


def synchronized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class Storage:
    """LanceDB persistence shared by every tenant.

    Tenant scoping is explicit: every query takes the tenant id and rows owned
    by other tenants behave as if they do not exist.
    """

    def __init__(self, storage_dir: Path) -> None:
        self._root = Path(storage_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()

        try:
            self._db = lancedb.connect(str(self._root))
        except Exception as exc:  # pragma: no cover - environment specific
            raise StorageError(CONFIG_ERROR, "Unable to open LanceDB database", details={"path": str(self._root)}) from exc

        self._notebooks = self._ensure_table(_NOTEBOOKS_TABLE_NAME, _NOTEBOOKS_SCHEMA)
        self._notes = self._ensure_table(_NOTES_TABLE_NAME, _NOTES_SCHEMA)
        self._api_keys = self._ensure_table(_API_KEYS_TABLE_NAME, _API_KEYS_SCHEMA)

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Notebook lookups
    # ------------------------------------------------------------------

    @synchronized
    def find_notebook_by_id(self, tenant_id: str, notebook_id: str) -> Notebook | None:
        row = self._fetch_notebook_row(tenant_id, notebook_id)
        return self._notebook_from_row(row) if row is not None else None

    @synchronized
    def find_notebooks_by_text(self, tenant_id: str, text: str) -> list[Notebook]:
        """Case-insensitive substring match on name or description, ordered by name."""

        matches = [
            notebook
            for notebook in self._tenant_notebooks(tenant_id)
            if _contains_casefold(notebook.name, text) or _contains_casefold(notebook.description, text)
        ]
        return _sort_by_name(matches)

    @synchronized
    def find_all_notebooks(self, tenant_id: str) -> list[Notebook]:
        return _sort_by_name(self._tenant_notebooks(tenant_id))

    @synchronized
    def list_notebooks(self, notebook_filter: NotebookFilter) -> list[Notebook]:
        counts = self._note_counts(notebook_filter.tenant_id)
        notebooks = [nb for nb in self._tenant_notebooks(notebook_filter.tenant_id) if notebook_filter.matches(nb)]
        for notebook in notebooks:
            notebook.note_count = counts.get(notebook.id, 0)
        return _sort_by_name(notebooks)

    @synchronized
    def get_notebook(self, tenant_id: str, notebook_id: str) -> Notebook:
        row = self._fetch_notebook_row(tenant_id, notebook_id)
        if row is None:
            raise StorageError(NOT_FOUND, f"Notebook {notebook_id} not found", details={"id": notebook_id})
        notebook = self._notebook_from_row(row)
        notebook.note_count = self._note_counts(tenant_id).get(notebook.id, 0)
        return notebook

    # ------------------------------------------------------------------
    # Notebook CRUD
    # ------------------------------------------------------------------

    @synchronized
    def create_notebook(self, tenant_id: str, name: str, description: str | None = None) -> Notebook:
        now = utcnow()
        notebook = Notebook(
            id=self._unused_id(self._notebooks, "notebook_id"),
            tenant_id=tenant_id,
            name=name,
            description=description,
            created_at=now,
            updated_at=now,
            note_count=0,
        )
        self._notebooks.add([self._serialize_notebook(notebook)])
        return notebook

    @synchronized
    def update_notebook(
        self,
        tenant_id: str,
        notebook_id: str,
        *,
        name: str | None = _UNSET,
        description: str | None = _UNSET,
    ) -> Notebook:
        notebook = self.get_notebook(tenant_id, notebook_id)
        if name is not _UNSET:
            notebook.name = name
        if description is not _UNSET:
            notebook.description = description
        notebook.updated_at = utcnow()
        self._notebooks.delete(where=_format_filter("notebook_id", notebook_id))
        self._notebooks.add([self._serialize_notebook(notebook)])
        return notebook

    @synchronized
    def delete_notebook(self, tenant_id: str, notebook_id: str) -> tuple[Notebook, int]:
        """Delete a notebook and detach its notes. Returns the notebook and detached count."""

        notebook = self.get_notebook(tenant_id, notebook_id)
        detached = 0
        now = utcnow()
        for note in self._tenant_notes(tenant_id):
            if note.notebook_id != notebook_id:
                continue
            note.notebook_id = None
            note.updated_at = now
            self._replace_note(note)
            detached += 1
        self._notebooks.delete(where=_format_filter("notebook_id", notebook_id))
        notebook.note_count = 0
        return notebook, detached

    # ------------------------------------------------------------------
    # Note CRUD
    # ------------------------------------------------------------------

    @synchronized
    def get_note(self, tenant_id: str, note_id: str) -> Note:
        row = self._fetch_note_row(tenant_id, note_id)
        if row is None:
            raise StorageError(NOT_FOUND, f"Note {note_id} not found", details={"id": note_id})
        return self._note_from_row(row)

    @synchronized
    def create_note(
        self,
        tenant_id: str,
        *,
        content: str,
        title: str | None = None,
        page_url: str | None = None,
        notebook_id: str | None = None,
        frontmatter: Mapping[str, Any] | None = None,
    ) -> Note:
        if notebook_id is not None and self._fetch_notebook_row(tenant_id, notebook_id) is None:
            raise StorageError(NOT_FOUND, f"Notebook {notebook_id} not found", details={"id": notebook_id})
        now = utcnow()
        note = Note(
            id=self._unused_id(self._notes, "note_id"),
            tenant_id=tenant_id,
            content=content,
            title=title,
            page_url=page_url,
            notebook_id=notebook_id,
            frontmatter=dict(frontmatter or {}),
            created_at=now,
            updated_at=now,
        )
        self._notes.add([self._serialize_note(note)])
        return note

    @synchronized
    def update_note(
        self,
        tenant_id: str,
        note_id: str,
        *,
        content: str | None = None,
        title: str | None = None,
        frontmatter: Mapping[str, Any] | None = None,
    ) -> Note:
        note = self.get_note(tenant_id, note_id)
        if content is not None:
            note.content = content
        if title is not None:
            note.title = title
        if frontmatter is not None:
            note.frontmatter = dict(frontmatter)
        note.updated_at = utcnow()
        self._replace_note(note)
        return note

    @synchronized
    def delete_note(self, tenant_id: str, note_id: str) -> Note:
        note = self.get_note(tenant_id, note_id)
        self._notes.delete(where=_format_filter("note_id", note_id))
        return note

    @synchronized
    def search_notes(self, note_filter: NoteFilter) -> list[Note]:
        """Return every note matching ``note_filter``, newest first."""

        matches = [note for note in self._tenant_notes(note_filter.tenant_id) if note_filter.matches(note)]
        matches.sort(key=lambda note: note.created_at, reverse=True)
        return matches

    @synchronized
    def notebooks_by_id(self, tenant_id: str, notebook_ids: Iterable[str]) -> dict[str, Notebook]:
        wanted = {nid for nid in notebook_ids if nid}
        if not wanted:
            return {}
        return {nb.id: nb for nb in self._tenant_notebooks(tenant_id) if nb.id in wanted}

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    @synchronized
    def add_api_key(self, tenant_id: str, key_hash: str, scopes: Sequence[str], expires_at: datetime | None = None) -> ApiKeyRecord:
        record = ApiKeyRecord(
            id=self._unused_id(self._api_keys, "key_id"),
            tenant_id=tenant_id,
            key_hash=key_hash,
            scopes=list(scopes),
            expires_at=expires_at,
        )
        self._api_keys.add([self._serialize_api_key(record)])
        return record

    @synchronized
    def list_api_keys(self, tenant_id: str | None = None) -> list[ApiKeyRecord]:
        records = [self._api_key_from_row(row) for row in self._api_keys.to_arrow().to_pylist()]
        if tenant_id is not None:
            records = [record for record in records if record.tenant_id == tenant_id]
        records.sort(key=lambda record: (record.created_at, record.id))
        return records

    @synchronized
    def find_active_api_keys(self) -> list[ApiKeyRecord]:
        """Keys without an expiry or expiring in the future, oldest first."""

        now = utcnow()
        return [record for record in self.list_api_keys() if record.is_active(now)]

    @synchronized
    def touch_api_key_last_used(self, key_id: str) -> None:
        rows = [row for row in self._api_keys.to_arrow().to_pylist() if row.get("key_id") == key_id]
        if not rows:
            return
        record = self._api_key_from_row(rows[0])
        record.last_used_at = utcnow()
        self._api_keys.delete(where=_format_filter("key_id", key_id))
        self._api_keys.add([self._serialize_api_key(record)])

    @synchronized
    def revoke_api_key(self, key_id: str) -> bool:
        exists = any(row.get("key_id") == key_id for row in self._api_keys.to_arrow().to_pylist())
        if exists:
            self._api_keys.delete(where=_format_filter("key_id", key_id))
        return exists

    # ------------------------------------------------------------------
    # Health and gauges
    # ------------------------------------------------------------------

    @synchronized
    def ping(self) -> None:
        self._notes.count_rows()

    @synchronized
    def snapshot_counts(self) -> dict[str, int]:
        """Return note and notebook counts for Prometheus gauges."""

        return {"notes": self._notes.count_rows(), "notebooks": self._notebooks.count_rows()}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_table(self, name: str, schema: pa.Schema):
        table_names = set(self._db.table_names())
        if name in table_names:
            table = self._db.open_table(name)
            missing = [field.name for field in schema if field.name not in table.schema.names]
            if missing:
                raise StorageError(
                    CONFIG_ERROR,
                    f"Existing LanceDB table '{name}' missing required columns",
                    details={"missing": missing},
                )
            return table
        return self._db.create_table(name, schema=schema)

    def _unused_id(self, table, column: str) -> str:
        existing = {row.get(column) for row in table.to_arrow().select([column]).to_pylist()}
        for _ in range(100):
            candidate = generate_id()
            if candidate not in existing:
                return candidate
        raise StorageError(CONFIG_ERROR, "Unable to generate a unique identifier")  # pragma: no cover

    def _tenant_notebooks(self, tenant_id: str) -> list[Notebook]:
        return [
            self._notebook_from_row(row)
            for row in self._notebooks.to_arrow().to_pylist()
            if row.get("tenant_id") == tenant_id
        ]

    def _tenant_notes(self, tenant_id: str) -> list[Note]:
        return [self._note_from_row(row) for row in self._notes.to_arrow().to_pylist() if row.get("tenant_id") == tenant_id]

    def _note_counts(self, tenant_id: str) -> Counter[str]:
        counts: Counter[str] = Counter()
        for row in self._notes.to_arrow().select(["tenant_id", "notebook_id"]).to_pylist():
            if row.get("tenant_id") == tenant_id and row.get("notebook_id"):
                counts[row["notebook_id"]] += 1
        return counts

    def _fetch_notebook_row(self, tenant_id: str, notebook_id: str) -> dict[str, Any] | None:
        for row in self._notebooks.to_arrow().to_pylist():
            if row.get("notebook_id") == notebook_id and row.get("tenant_id") == tenant_id:
                return row
        return None

    def _fetch_note_row(self, tenant_id: str, note_id: str) -> dict[str, Any] | None:
        for row in self._notes.to_arrow().to_pylist():
            if row.get("note_id") == note_id and row.get("tenant_id") == tenant_id:
                return row
        return None

    def _replace_note(self, note: Note) -> None:
        self._notes.delete(where=_format_filter("note_id", note.id))
        self._notes.add([self._serialize_note(note)])

    @staticmethod
    def _serialize_notebook(notebook: Notebook) -> dict[str, Any]:
        return {
            "notebook_id": notebook.id,
            "tenant_id": notebook.tenant_id,
            "name": notebook.name,
            "description": notebook.description,
            "created_at": notebook.created_at,
            "updated_at": notebook.updated_at,
        }

    @staticmethod
    def _notebook_from_row(row: Mapping[str, Any]) -> Notebook:
        now = utcnow()
        return Notebook(
            id=str(row["notebook_id"]),
            tenant_id=str(row.get("tenant_id") or ""),
            name=str(row.get("name") or ""),
            description=row.get("description"),
            created_at=_coerce_timestamp(row.get("created_at"), default=now),
            updated_at=_coerce_timestamp(row.get("updated_at"), default=now),
        )

    @staticmethod
    def _serialize_note(note: Note) -> dict[str, Any]:
        return {
            "note_id": note.id,
            "tenant_id": note.tenant_id,
            "notebook_id": note.notebook_id,
            "title": note.title,
            "content": note.content,
            "page_url": note.page_url,
            "frontmatter_json": _encode_json(note.frontmatter, context="frontmatter"),
            "created_at": note.created_at,
            "updated_at": note.updated_at,
        }

    @staticmethod
    def _note_from_row(row: Mapping[str, Any]) -> Note:
        now = utcnow()
        return Note(
            id=str(row["note_id"]),
            tenant_id=str(row.get("tenant_id") or ""),
            content=str(row.get("content") or ""),
            title=row.get("title"),
            page_url=row.get("page_url"),
            notebook_id=row.get("notebook_id"),
            frontmatter=_decode_json(row.get("frontmatter_json")),
            created_at=_coerce_timestamp(row.get("created_at"), default=now),
            updated_at=_coerce_timestamp(row.get("updated_at"), default=now),
        )

    @staticmethod
    def _serialize_api_key(record: ApiKeyRecord) -> dict[str, Any]:
        return {
            "key_id": record.id,
            "tenant_id": record.tenant_id,
            "key_hash": record.key_hash,
            "scopes": list(record.scopes),
            "expires_at": record.expires_at,
            "last_used_at": record.last_used_at,
            "created_at": record.created_at,
        }

    @staticmethod
    def _api_key_from_row(row: Mapping[str, Any]) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=str(row["key_id"]),
            tenant_id=str(row.get("tenant_id") or ""),
            key_hash=str(row.get("key_hash") or ""),
            scopes=[str(scope) for scope in (row.get("scopes") or [])],
            expires_at=_coerce_timestamp(row.get("expires_at"), default=None),
            last_used_at=_coerce_timestamp(row.get("last_used_at"), default=None),
            created_at=_coerce_timestamp(row.get("created_at"), default=utcnow()),
        )


def _sort_by_name(notebooks: list[Notebook]) -> list[Notebook]:
    return sorted(notebooks, key=lambda nb: (nb.name.casefold(), nb.created_at, nb.id))
