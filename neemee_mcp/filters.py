"""Structured note and notebook filters.

Builders are pure: they never touch storage and never check that a notebook
or tenant exists. A filter nobody can satisfy simply matches no rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from .models import Note, Notebook, ensure_utc


def _contains_casefold(haystack: str | None, needle: str) -> bool:
    if not haystack:
        return False
    return needle.casefold() in haystack.casefold()


@dataclass(frozen=True, slots=True)
class NoteFilter:
    """Conjunction of predicates over notes. Only ``tenant_id`` is mandatory."""

    tenant_id: str
    search: str | None = None
    domain: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    notebook_ids: frozenset[str] | None = None
    tags: frozenset[str] | None = None

    def matches(self, note: Note) -> bool:
        if note.tenant_id != self.tenant_id:
            return False
        if self.search is not None:
            if not (_contains_casefold(note.content, self.search) or _contains_casefold(note.title, self.search)):
                return False
        if self.domain is not None:
            # Plain containment on the URL, not anchored to the hostname.
            if not note.page_url or self.domain not in note.page_url:
                return False
        created_at = ensure_utc(note.created_at)
        if self.start_date is not None and created_at < self.start_date:
            return False
        if self.end_date is not None and created_at > self.end_date:
            return False
        if self.notebook_ids is not None and note.notebook_id not in self.notebook_ids:
            return False
        if self.tags is not None:
            note_tags = {tag.casefold() for tag in note.tags}
            if not note_tags & self.tags:
                return False
        return True


@dataclass(frozen=True, slots=True)
class NotebookFilter:
    tenant_id: str
    search: str | None = None

    def matches(self, notebook: Notebook) -> bool:
        if notebook.tenant_id != self.tenant_id:
            return False
        if self.search is None:
            return True
        return _contains_casefold(notebook.name, self.search) or _contains_casefold(notebook.description, self.search)


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def build_note_filter(
    tenant_id: str,
    *,
    search: str | None = None,
    domain: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    notebook_id: str | None = None,
    notebook_ids: Iterable[str] | None = None,
    tags: Iterable[str] | None = None,
) -> NoteFilter:
    """Assemble a :class:`NoteFilter` from optional criteria.

    ``notebook_id`` wins over ``notebook_ids`` when both are supplied, and an
    empty ``notebook_ids`` collection adds no notebook predicate at all.
    """

    membership: frozenset[str] | None = None
    if notebook_id:
        membership = frozenset({notebook_id})
    elif notebook_ids is not None:
        ids = frozenset(notebook_ids)
        if ids:
            membership = ids

    tag_set: frozenset[str] | None = None
    if tags is not None:
        folded = frozenset(tag.strip().casefold() for tag in tags if tag and tag.strip())
        if folded:
            tag_set = folded

    return NoteFilter(
        tenant_id=tenant_id,
        search=_clean_text(search),
        domain=_clean_text(domain),
        start_date=ensure_utc(start_date) if start_date is not None else None,
        end_date=ensure_utc(end_date) if end_date is not None else None,
        notebook_ids=membership,
        tags=tag_set,
    )


def build_notebook_filter(tenant_id: str, *, search: str | None = None) -> NotebookFilter:
    return NotebookFilter(tenant_id=tenant_id, search=_clean_text(search))
